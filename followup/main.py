from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session
from starlette.middleware.base import BaseHTTPMiddleware

from followup.core.config import settings
from followup.db.session import get_db
from followup.logging_utils import (
    _appointment_id_ctx_var,
    _reminder_id_ctx_var,
    _request_id_ctx_var,
    configure_logging,
)
from followup.metrics import REQUEST_COUNTER, REQUEST_LATENCY
from followup.models import Appointment, Patient, Reminder, ReminderChannel, ReminderStatus
from followup.services import (
    AppointmentNotFound,
    CallbackEvent,
    DeliveryCallback,
    InvalidAppointment,
    ReminderEngine,
    ReminderNotFound,
    get_engine,
    on_appointment_cancelled,
    on_appointment_changed,
    on_appointment_created,
)
from followup.services.channels.whatsapp import extract_message_id
from followup.services.errors import (
    DeliveryError,
    TemplateNotFound,
    TemplateRenderError,
    TransientDeliveryError,
)
from followup.services.planner import PlanResult
from followup.services.store import (
    delete_template,
    record_opt_event,
    upsert_preference,
    upsert_template,
)

configure_logging()

app = FastAPI(title=settings.app_name, version="0.1.0")

logger = logging.getLogger(__name__)

# Evolution API message statuses mapped onto tracker events.
EVOLUTION_STATUS_EVENTS: dict[str, CallbackEvent] = {
    "DELIVERY_ACK": CallbackEvent.DELIVERED,
    "READ": CallbackEvent.READ,
    "PLAYED": CallbackEvent.READ,
    "ERROR": CallbackEvent.FAILED,
}


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Populate request and appointment context for logging."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        request.state.request_id = request_id
        request_id_token = _request_id_ctx_var.set(request_id)
        appointment_token = _appointment_id_ctx_var.set(None)
        reminder_token = _reminder_id_ctx_var.set(None)

        try:
            response = await call_next(request)
        finally:
            _request_id_ctx_var.reset(request_id_token)
            _appointment_id_ctx_var.reset(appointment_token)
            _reminder_id_ctx_var.reset(reminder_token)

        response.headers["X-Request-ID"] = request_id
        return response


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Emit structured access logs and feed metrics."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        start_time = time.perf_counter()
        path = request.scope.get("root_path", "") + request.scope.get("path", request.url.path)
        method = request.method

        try:
            response = await call_next(request)
        except Exception:
            elapsed = time.perf_counter() - start_time
            REQUEST_COUNTER.labels(method=method, path=path, status="500").inc()
            REQUEST_LATENCY.labels(method=method, path=path).observe(elapsed)
            logger.exception(
                "request failed",
                extra={
                    "method": method,
                    "path": path,
                    "duration_ms": round(elapsed * 1000, 2),
                },
            )
            raise

        elapsed = time.perf_counter() - start_time
        status_code = response.status_code

        REQUEST_COUNTER.labels(method=method, path=path, status=str(status_code)).inc()
        REQUEST_LATENCY.labels(method=method, path=path).observe(elapsed)

        logger.info(
            "request completed",
            extra={
                "method": method,
                "path": path,
                "status_code": status_code,
                "duration_ms": round(elapsed * 1000, 2),
            },
        )

        return response


app.add_middleware(RequestContextMiddleware)
app.add_middleware(AccessLogMiddleware)


class AppointmentChange(BaseModel):
    previous_start_time: datetime | None = None


class CallbackPayload(BaseModel):
    event: CallbackEvent
    reminder_id: UUID | None = None
    external_id: str | None = None
    response_text: str | None = None
    timestamp: datetime | None = None
    error_message: str | None = None


class AdHocMessage(BaseModel):
    channel: ReminderChannel
    destination: str
    body: str
    subject: str | None = None


class ConsentPayload(BaseModel):
    channel: ReminderChannel
    opted_in: bool


class PreferencePayload(BaseModel):
    is_enabled: bool = True
    priority: int = Field(default=1, ge=1)
    time_before_appointment_minutes: int | None = Field(default=None, ge=0)


class TemplatePayload(BaseModel):
    name: str
    channel: ReminderChannel
    body: str
    subject: str | None = None
    appointment_type: str | None = None


def request_actor(request: Request) -> str | None:
    return request.headers.get("X-Actor")


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def serialize_reminder(reminder: Reminder) -> dict[str, Any]:
    return {
        "id": str(reminder.id),
        "appointment_id": str(reminder.appointment_id),
        "channel": reminder.channel.value,
        "status": reminder.status.value,
        "scheduled_time": serialize_datetime(reminder.scheduled_time),
        "next_attempt_time": serialize_datetime(reminder.next_attempt_time),
        "sent_time": serialize_datetime(reminder.sent_time),
        "delivered_time": serialize_datetime(reminder.delivered_time),
        "read_time": serialize_datetime(reminder.read_time),
        "response_time": serialize_datetime(reminder.response_time),
        "retry_count": reminder.retry_count,
        "error_message": reminder.error_message,
        "external_id": reminder.external_id,
        "response": reminder.response,
        "escalated_from_id": str(reminder.escalated_from_id) if reminder.escalated_from_id else None,
    }


def serialize_plan(result: PlanResult) -> dict[str, Any]:
    return {
        "appointment_id": str(result.appointment_id),
        "reminders": [serialize_reminder(reminder) for reminder in result.reminders],
        "skipped": [
            {"channel": skipped.channel.value, "reason": skipped.reason}
            for skipped in result.skipped
        ],
        "superseded": [str(reminder.id) for reminder in result.superseded],
        "no_channels": result.no_channels,
    }


def run_hook(hook, *args, **kwargs) -> dict[str, Any]:
    try:
        result = hook(*args, **kwargs)
    except AppointmentNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidAppointment as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return serialize_plan(result)


@app.get("/metrics")
def metrics() -> Response:
    """Expose Prometheus metrics for scraping."""

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health() -> dict[str, str]:
    """Health check endpoint used by infrastructure probes."""

    return {"status": "ok"}


@app.post("/api/v1/appointments/{appointment_id}/created")
def appointment_created(
    appointment_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
    engine: ReminderEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Plan reminders for a newly booked appointment."""

    return run_hook(
        on_appointment_created, db, appointment_id, engine=engine, actor=request_actor(request)
    )


@app.post("/api/v1/appointments/{appointment_id}/changed")
def appointment_changed(
    appointment_id: UUID,
    request: Request,
    payload: AppointmentChange | None = None,
    db: Session = Depends(get_db),
    engine: ReminderEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Supersede and re-plan reminders after a reschedule."""

    previous_start_time = payload.previous_start_time if payload else None
    return run_hook(
        on_appointment_changed,
        db,
        appointment_id,
        previous_start_time,
        engine=engine,
        actor=request_actor(request),
    )


@app.post("/api/v1/appointments/{appointment_id}/cancelled")
def appointment_cancelled(
    appointment_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
    engine: ReminderEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Invalidate every outstanding reminder of a cancelled appointment."""

    return run_hook(
        on_appointment_cancelled, db, appointment_id, engine=engine, actor=request_actor(request)
    )


@app.get("/api/v1/appointments/{appointment_id}/reminders")
def list_appointment_reminders(
    appointment_id: UUID,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Report every reminder of an appointment with its status and error."""

    if db.get(Appointment, appointment_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found")

    stmt = (
        select(Reminder)
        .where(Reminder.appointment_id == appointment_id)
        .order_by(Reminder.scheduled_time, Reminder.channel)
    )
    reminders = db.execute(stmt).scalars().all()
    return {"items": [serialize_reminder(reminder) for reminder in reminders]}


@app.post("/api/v1/reminders/callbacks")
def reminder_callback(
    payload: CallbackPayload,
    request: Request,
    db: Session = Depends(get_db),
    engine: ReminderEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Apply a provider delivery/read/response/failure callback."""

    if payload.reminder_id is None and not payload.external_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="reminder_id or external_id is required",
        )

    callback = DeliveryCallback(
        event=payload.event,
        reminder_id=payload.reminder_id,
        external_id=payload.external_id,
        timestamp=payload.timestamp,
        response_text=payload.response_text,
        error_message=payload.error_message,
    )
    try:
        result = engine.tracker.apply_callback(db, callback, actor=request_actor(request))
    except ReminderNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return {
        "reminder_id": str(result.reminder_id),
        "applied": result.applied,
        "status": result.status.value,
        "reason": result.reason,
        "escalated_to": str(result.escalated_to) if result.escalated_to else None,
        "appointment_confirmed": result.appointment_confirmed,
    }


@app.post("/api/v1/reminders/{reminder_id}/send-now")
def send_reminder_now(
    reminder_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
    engine: ReminderEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Make a pending reminder due immediately; the next dispatch sweep sends it."""

    reminder = db.get(Reminder, reminder_id)
    if reminder is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Reminder not found")

    if not engine.worker.expedite(db, reminder_id, actor=request_actor(request)):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Reminder is {reminder.status.value}, only pending reminders can be sent now",
        )
    reminder = db.get(Reminder, reminder_id, populate_existing=True)
    return {"reminder": serialize_reminder(reminder)}


@app.post("/api/v1/reminders/{reminder_id}/retry", status_code=status.HTTP_201_CREATED)
def retry_reminder(
    reminder_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
    engine: ReminderEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Re-issue a failed reminder as a new pending one on the same channel."""

    reminder = db.get(Reminder, reminder_id)
    if reminder is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Reminder not found")
    if reminder.status != ReminderStatus.FAILED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Only failed reminders can be retried",
        )

    try:
        reissued = engine.planner.reissue(db, reminder, actor=request_actor(request))
    except (TemplateNotFound, TemplateRenderError) as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    if reissued is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Appointment is closed or the channel already has an active reminder",
        )
    return {"reminder": serialize_reminder(reissued)}


@app.post("/api/v1/messages/test")
def send_test_message(
    payload: AdHocMessage,
    engine: ReminderEngine = Depends(get_engine),
) -> Any:
    """Send an ad-hoc message through one channel adapter."""

    adapter = engine.adapters.get(payload.channel)
    if adapter is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Channel {payload.channel.value} is not configured",
        )

    try:
        result = adapter.send(payload.destination, payload.subject, payload.body)
    except DeliveryError as exc:
        logger.warning(
            "test message failed",
            extra={"channel": payload.channel.value, "error": str(exc)},
        )
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={
                "success": False,
                "error": str(exc),
                "retryable": isinstance(exc, TransientDeliveryError),
            },
        )

    return {"success": True, "external_id": result.external_id}


@app.post("/api/v1/patients/{patient_id}/consents", status_code=status.HTTP_201_CREATED)
def record_consent(
    patient_id: UUID,
    payload: ConsentPayload,
    request: Request,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Record an opt-in or opt-out decision with client metadata."""

    if db.get(Patient, patient_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")

    entry = record_opt_event(
        db,
        patient_id=patient_id,
        channel=payload.channel,
        opted_in=payload.opted_in,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
        actor=request_actor(request),
    )
    return {
        "id": str(entry.id),
        "channel": entry.channel.value,
        "opted_in": entry.opted_in,
        "created_at": serialize_datetime(entry.created_at),
    }


@app.put("/api/v1/patients/{patient_id}/preferences/{channel}")
def put_preference(
    patient_id: UUID,
    channel: ReminderChannel,
    payload: PreferencePayload,
    request: Request,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Create or update a patient's preference for one channel."""

    if db.get(Patient, patient_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")

    lead_time = (
        timedelta(minutes=payload.time_before_appointment_minutes)
        if payload.time_before_appointment_minutes is not None
        else None
    )
    preference = upsert_preference(
        db,
        patient_id=patient_id,
        channel=channel,
        is_enabled=payload.is_enabled,
        priority=payload.priority,
        time_before_appointment=lead_time,
        actor=request_actor(request),
    )
    return {
        "id": str(preference.id),
        "channel": preference.channel.value,
        "is_enabled": preference.is_enabled,
        "priority": preference.priority,
        "time_before_appointment_minutes": payload.time_before_appointment_minutes,
    }


@app.get("/api/v1/patients/{patient_id}/inbox")
def patient_inbox(
    patient_id: UUID,
    limit: int = Query(default=20, ge=1, le=100),
    engine: ReminderEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Return the newest in-app reminders of a patient."""

    adapter = engine.adapters.get(ReminderChannel.APP)
    if adapter is None or not hasattr(adapter, "messages"):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="In-app channel is not configured"
        )
    try:
        messages = adapter.messages(str(patient_id), limit=limit)
    except TransientDeliveryError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc
    return {"items": messages}


@app.put("/api/v1/templates")
def put_template(
    payload: TemplatePayload,
    request: Request,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Create or replace the live template for a channel and appointment type."""

    if payload.channel == ReminderChannel.EMAIL and not payload.subject:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email templates require a subject",
        )
    template = upsert_template(
        db,
        name=payload.name,
        channel=payload.channel,
        body=payload.body,
        appointment_type=payload.appointment_type,
        subject=payload.subject,
        actor=request_actor(request),
    )
    return {
        "id": str(template.id),
        "name": template.name,
        "channel": template.channel.value,
        "appointment_type": template.appointment_type,
    }


@app.delete("/api/v1/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_template(
    template_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
) -> Response:
    if not delete_template(db, template_id, actor=request_actor(request)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Template not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def parse_timestamp(raw_timestamp: Any) -> datetime | None:
    """Convert WhatsApp timestamps (seconds or milliseconds since epoch) to datetimes."""

    if raw_timestamp in (None, ""):
        return None
    try:
        value = int(raw_timestamp)
    except (TypeError, ValueError):
        logger.debug("Invalid timestamp payload received: %s", raw_timestamp)
        return None
    if value > 10**12:
        value //= 1000
    return datetime.fromtimestamp(value, tz=timezone.utc)


def extract_reply(raw_message: dict[str, Any]) -> tuple[str | None, str]:
    """Return the quoted message id and the text of an inbound WhatsApp message."""

    message_body = raw_message.get("message", {}) or {}
    if "extendedTextMessage" in message_body:
        extended = message_body.get("extendedTextMessage", {}) or {}
        context = extended.get("contextInfo", {}) or {}
        return context.get("stanzaId"), extended.get("text", "")
    context = raw_message.get("contextInfo", {}) or {}
    return context.get("stanzaId"), message_body.get("conversation", "")


def handle_status_update(
    db: Session, engine: ReminderEngine, status_payload: dict[str, Any]
) -> dict[str, Any] | None:
    """Apply an Evolution delivery status to the matching reminder."""

    message_id = (
        status_payload.get("keyId")
        or status_payload.get("id")
        or status_payload.get("message_id")
        or status_payload.get("messageId")
    )
    status_value = str(status_payload.get("status") or "").upper()
    event = EVOLUTION_STATUS_EVENTS.get(status_value)
    if not message_id or event is None:
        return None

    callback = DeliveryCallback(
        event=event,
        external_id=message_id,
        timestamp=parse_timestamp(status_payload.get("timestamp")),
        error_message=f"whatsapp status {status_value}" if event == CallbackEvent.FAILED else None,
    )
    try:
        result = engine.tracker.apply_callback(db, callback)
    except ReminderNotFound:
        logger.debug("Received status for unknown message id %s", message_id)
        return None
    return {"reminder_id": str(result.reminder_id), "applied": result.applied}


def handle_inbound_reply(
    db: Session, engine: ReminderEngine, raw_message: dict[str, Any]
) -> dict[str, Any] | None:
    """Record a patient reply that quotes a reminder message."""

    key = raw_message.get("key", {}) or {}
    if key.get("fromMe"):
        return None

    quoted_id, text = extract_reply(raw_message)
    if not quoted_id:
        logger.debug("Inbound message %s does not quote a reminder", extract_message_id(raw_message))
        return None

    callback = DeliveryCallback(
        event=CallbackEvent.RESPONDED,
        external_id=quoted_id,
        timestamp=parse_timestamp(raw_message.get("messageTimestamp")),
        response_text=text,
    )
    try:
        result = engine.tracker.apply_callback(db, callback)
    except ReminderNotFound:
        logger.debug("Inbound reply quotes unknown message id %s", quoted_id)
        return None
    return {
        "reminder_id": str(result.reminder_id),
        "applied": result.applied,
        "appointment_confirmed": result.appointment_confirmed,
    }


@app.get("/api/v1/wa/webhook")
def whatsapp_webhook_verification(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
):
    """Handle the WhatsApp webhook verification handshake."""

    if (
        hub_mode == "subscribe"
        and hub_verify_token
        and hub_verify_token == settings.webhook_verify_token
    ):
        if not hub_challenge:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Missing hub.challenge",
            )
        return PlainTextResponse(content=hub_challenge)

    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@app.post("/api/v1/wa/webhook")
def whatsapp_webhook(
    payload: dict[str, Any],
    db: Session = Depends(get_db),
    engine: ReminderEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Ingest Evolution events (delivery statuses and patient replies)."""

    if not payload:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payload required",
        )

    processed: list[dict[str, Any]] = []
    event_name = payload.get("event")
    event_key = str(event_name or "").upper().replace(".", "_")
    event_data = payload.get("data")
    items = event_data if isinstance(event_data, list) else [event_data]

    if event_key == "MESSAGES_UPDATE":
        handler = handle_status_update
    elif event_key == "MESSAGES_UPSERT":
        handler = handle_inbound_reply
    else:
        logger.debug("Unhandled Evolution webhook event: %s", event_name)
        return {"status": "ok", "processed": processed, "event": event_name}

    for item in items:
        if not isinstance(item, dict):
            continue
        result = handler(db, engine, item)
        if result:
            processed.append(result)

    return {"status": "ok", "processed": processed, "event": event_name}
