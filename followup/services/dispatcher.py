"""Dispatch worker: claim due reminders, hand them to channel adapters, and
apply the retry and escalation policy."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from followup.core.policy import ReminderPolicy
from followup.logging_utils import set_reminder_context
from followup.metrics import DISPATCH_LATENCY, DISPATCH_OUTCOMES
from followup.models import (
    APPOINTMENT_CANCELLED,
    CLOSED_APPOINTMENT_STATUSES,
    SUPERSEDED,
    Appointment,
    Patient,
    Reminder,
    ReminderStatus,
)
from followup.services.audit import record_audit
from followup.services.channels import AdapterRegistry, SendResult, destination_for
from followup.services.clock import Clock, system_clock
from followup.services.errors import (
    DeliveryError,
    NoEnabledChannel,
    PermanentDeliveryError,
    TemplateNotFound,
    TemplateRenderError,
    TransientDeliveryError,
)
from followup.services.planner import SchedulingPlanner
from followup.services.preferences import resolve_channels
from followup.services.state_machine import ACTIVE_STATUSES

logger = logging.getLogger(__name__)

# Failures caused by re-planning; they never trigger escalation.
SUPERSESSION_REASONS = frozenset({SUPERSEDED, APPOINTMENT_CANCELLED})


@dataclass(frozen=True)
class DispatchOutcome:
    reminder_id: UUID
    outcome: str
    error: str | None = None
    external_id: str | None = None
    escalated_to: UUID | None = None


class Escalator:
    """Moves an appointment on to its next channel after a terminal failure."""

    def __init__(self, planner: SchedulingPlanner) -> None:
        self.planner = planner

    def escalate(
        self, db: Session, failed: Reminder, *, actor: str | None = None
    ) -> Reminder | None:
        if failed.status != ReminderStatus.FAILED or failed.error_message in SUPERSESSION_REASONS:
            return None

        appointment = self.planner.lock_appointment(db, failed.appointment_id)
        if appointment is None or appointment.status in CLOSED_APPOINTMENT_STATUSES:
            return None

        try:
            plans = resolve_channels(
                db,
                appointment.patient_id,
                appointment.appointment_type,
                policy=self.planner.policy,
            )
        except NoEnabledChannel:
            self._audit(db, failed, "escalation_exhausted", actor, {"reason": "no_enabled_channel"})
            return None

        channels = [plan.channel for plan in plans]
        if failed.channel in channels:
            plans = plans[channels.index(failed.channel) + 1 :]

        history = db.execute(
            select(Reminder)
            .where(Reminder.appointment_id == appointment.id)
            .execution_options(populate_existing=True)
        ).scalars().all()
        attempted = [
            reminder
            for reminder in history
            if reminder.error_message not in SUPERSESSION_REASONS
            or reminder.status != ReminderStatus.FAILED
        ]

        for plan in plans:
            on_channel = [reminder for reminder in attempted if reminder.channel == plan.channel]
            if any(reminder.status in ACTIVE_STATUSES for reminder in on_channel):
                self._audit(
                    db,
                    failed,
                    "escalation_not_needed",
                    actor,
                    {"channel": plan.channel.value, "reason": "channel_already_active"},
                )
                return None
            if on_channel:
                continue

            try:
                escalated = self.planner.build_reminder(
                    db,
                    appointment,
                    plan.channel,
                    self.planner.clock(),
                    escalated_from=failed,
                )
            except (TemplateNotFound, TemplateRenderError) as exc:
                self._audit(
                    db,
                    failed,
                    "escalation_channel_skipped",
                    actor,
                    {"channel": plan.channel.value, "error": str(exc)},
                    level=logging.WARNING,
                )
                continue

            self._audit(
                db,
                failed,
                "reminder_escalated",
                actor,
                {
                    "from_channel": failed.channel.value,
                    "to_channel": plan.channel.value,
                    "escalated_reminder_id": str(escalated.id),
                },
            )
            return escalated

        self._audit(db, failed, "escalation_exhausted", actor, {"reason": "no_untried_channel"})
        return None

    @staticmethod
    def _audit(
        db: Session,
        failed: Reminder,
        action: str,
        actor: str | None,
        details: dict,
        level: int = logging.INFO,
    ) -> None:
        record_audit(
            db,
            entity_type="appointment",
            entity_id=failed.appointment_id,
            action=action,
            actor=actor,
            details={"failed_reminder_id": str(failed.id), **details},
            level=level,
        )


class DispatchWorker:
    def __init__(
        self,
        policy: ReminderPolicy,
        adapters: AdapterRegistry,
        escalator: Escalator,
        *,
        clock: Clock = system_clock,
        max_concurrent_sends: int = 8,
    ) -> None:
        self.policy = policy
        self.adapters = adapters
        self.escalator = escalator
        self.clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_sends, thread_name_prefix="reminder-send"
        )
        # Provider calls that outlived their deadline. A running thread cannot be
        # interrupted, so the adapter's own client timeout is what finally ends it.
        self._overdue: dict[UUID, Future] = {}
        self._overdue_lock = threading.Lock()

    @staticmethod
    def _due_at():
        return func.coalesce(Reminder.next_attempt_time, Reminder.scheduled_time)

    def due_reminder_ids(self, db: Session, limit: int = 100) -> list[UUID]:
        """Return pending reminders whose due time has passed, oldest first."""

        stmt = (
            select(Reminder.id)
            .where(Reminder.status == ReminderStatus.PENDING, self._due_at() <= self.clock())
            .order_by(self._due_at())
            .limit(limit)
        )
        return list(db.execute(stmt).scalars())

    def claim(self, db: Session, reminder_id: UUID) -> bool:
        """Atomically move a due reminder from ``pending`` to ``dispatching``."""

        now = self.clock()
        stmt = (
            update(Reminder)
            .where(
                Reminder.id == reminder_id,
                Reminder.status == ReminderStatus.PENDING,
                self._due_at() <= now,
            )
            .values(status=ReminderStatus.DISPATCHING, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        return db.execute(stmt).rowcount == 1

    def _transition(self, db: Session, reminder_id: UUID, **values) -> bool:
        """Compare-and-set out of ``dispatching``; False if someone else moved the row."""

        stmt = (
            update(Reminder)
            .where(Reminder.id == reminder_id, Reminder.status == ReminderStatus.DISPATCHING)
            .values(claimed_at=None, **values)
            .execution_options(synchronize_session=False)
        )
        return db.execute(stmt).rowcount == 1

    def _send(self, reminder: Reminder, destination: str | None) -> SendResult:
        adapter = self.adapters.get(reminder.channel)
        if adapter is None:
            raise PermanentDeliveryError(f"no adapter for channel {reminder.channel.value}")

        started = time.perf_counter()
        future = self._executor.submit(
            adapter.send, destination, reminder.rendered_subject, reminder.rendered_body
        )
        try:
            return future.result(timeout=self.policy.provider_timeout)
        except FutureTimeout as exc:
            if not future.cancel():
                self._track_overdue(reminder, future)
            raise TransientDeliveryError(
                f"provider timeout after {self.policy.provider_timeout}s"
            ) from exc
        finally:
            DISPATCH_LATENCY.labels(channel=reminder.channel.value).observe(
                time.perf_counter() - started
            )

    def dispatch(
        self, db: Session, reminder_id: UUID, *, actor: str | None = None
    ) -> DispatchOutcome:
        """Claim and deliver one reminder."""

        if self.send_in_flight(reminder_id):
            return DispatchOutcome(reminder_id, "send_in_flight")
        if not self.claim(db, reminder_id):
            return DispatchOutcome(reminder_id, "not_claimed")
        db.commit()

        reminder = db.get(Reminder, reminder_id, populate_existing=True)
        appointment = db.get(Appointment, reminder.appointment_id)
        set_reminder_context(reminder.id, reminder.appointment_id)

        if appointment is None or appointment.status in CLOSED_APPOINTMENT_STATUSES:
            self._transition(
                db,
                reminder_id,
                status=ReminderStatus.FAILED,
                error_message=APPOINTMENT_CANCELLED,
            )
            self._audit(db, reminder, "reminder_failed", actor, {"error": APPOINTMENT_CANCELLED})
            return DispatchOutcome(reminder_id, "failed", error=APPOINTMENT_CANCELLED)

        patient = db.get(Patient, appointment.patient_id)
        destination = destination_for(patient, reminder.channel) if patient else None

        try:
            result = self._send(reminder, destination)
        except TransientDeliveryError as exc:
            return self._handle_transient(db, reminder, str(exc), actor)
        except PermanentDeliveryError as exc:
            return self._fail(db, reminder, str(exc), actor, outcome="permanent_failure")
        except DeliveryError as exc:
            return self._handle_transient(db, reminder, str(exc), actor)
        except Exception as exc:
            logger.exception(
                "channel adapter raised unexpectedly",
                extra={"reminder_id": str(reminder_id), "channel": reminder.channel.value},
            )
            return self._handle_transient(db, reminder, f"{type(exc).__name__}: {exc}", actor)

        return self._mark_sent(db, reminder, result, actor)

    def _mark_sent(
        self, db: Session, reminder: Reminder, result: SendResult, actor: str | None
    ) -> DispatchOutcome:
        now = self.clock()
        moved = self._transition(
            db,
            reminder.id,
            status=ReminderStatus.SENT,
            sent_time=now,
            external_id=result.external_id,
            error_message=None,
        )
        DISPATCH_OUTCOMES.labels(channel=reminder.channel.value, outcome="sent").inc()
        if moved:
            self._audit(
                db, reminder, "reminder_sent", actor, {"external_id": result.external_id}
            )
            return DispatchOutcome(reminder.id, "sent", external_id=result.external_id)

        # A callback or a supersession moved the row while the provider was busy.
        db.execute(
            update(Reminder)
            .where(Reminder.id == reminder.id, Reminder.external_id.is_(None))
            .values(external_id=result.external_id)
            .execution_options(synchronize_session=False)
        )
        db.execute(
            update(Reminder)
            .where(Reminder.id == reminder.id, Reminder.sent_time.is_(None))
            .values(sent_time=now)
            .execution_options(synchronize_session=False)
        )
        current = db.get(Reminder, reminder.id, populate_existing=True)
        self._audit(
            db,
            current,
            "reminder_sent_after_transition",
            actor,
            {"external_id": result.external_id, "status": current.status.value},
            level=logging.WARNING,
        )
        return DispatchOutcome(reminder.id, "sent", external_id=result.external_id)

    def _handle_transient(
        self, db: Session, reminder: Reminder, error: str, actor: str | None
    ) -> DispatchOutcome:
        retry_count = reminder.retry_count + 1
        if retry_count >= self.policy.max_attempts:
            return self._fail(
                db, reminder, error, actor, outcome="retries_exhausted", retry_count=retry_count
            )

        next_attempt = self.clock() + self.policy.backoff_for(retry_count)
        moved = self._transition(
            db,
            reminder.id,
            status=ReminderStatus.PENDING,
            retry_count=retry_count,
            next_attempt_time=next_attempt,
            error_message=error,
        )
        DISPATCH_OUTCOMES.labels(channel=reminder.channel.value, outcome="retry_scheduled").inc()
        if not moved:
            return DispatchOutcome(reminder.id, "superseded", error=error)

        self._audit(
            db,
            reminder,
            "reminder_retry_scheduled",
            actor,
            {
                "error": error,
                "retry_count": retry_count,
                "next_attempt_time": next_attempt.isoformat(),
            },
            level=logging.WARNING,
        )
        return DispatchOutcome(reminder.id, "retry_scheduled", error=error)

    def _fail(
        self,
        db: Session,
        reminder: Reminder,
        error: str,
        actor: str | None,
        *,
        outcome: str,
        retry_count: int | None = None,
    ) -> DispatchOutcome:
        values: dict = {"status": ReminderStatus.FAILED, "error_message": error}
        if retry_count is not None:
            values["retry_count"] = retry_count
        moved = self._transition(db, reminder.id, **values)
        DISPATCH_OUTCOMES.labels(channel=reminder.channel.value, outcome=outcome).inc()
        if not moved:
            return DispatchOutcome(reminder.id, "superseded", error=error)

        failed = db.get(Reminder, reminder.id, populate_existing=True)
        self._audit(
            db,
            failed,
            "reminder_failed",
            actor,
            {"error": error, "reason": outcome, "retry_count": failed.retry_count},
            level=logging.WARNING,
        )
        escalated = self.escalator.escalate(db, failed, actor=actor)
        return DispatchOutcome(
            reminder.id,
            "failed",
            error=error,
            escalated_to=escalated.id if escalated else None,
        )

    def run_due(self, db: Session, limit: int = 100) -> list[DispatchOutcome]:
        """Dispatch every reminder that is currently due."""

        outcomes = []
        for reminder_id in self.due_reminder_ids(db, limit=limit):
            outcomes.append(self.dispatch(db, reminder_id))
            db.commit()
        return outcomes

    def expedite(self, db: Session, reminder_id: UUID, *, actor: str | None = None) -> bool:
        """Make a pending reminder due immediately."""

        now = self.clock()
        stmt = (
            update(Reminder)
            .where(Reminder.id == reminder_id, Reminder.status == ReminderStatus.PENDING)
            .values(scheduled_time=now, next_attempt_time=None)
            .execution_options(synchronize_session=False)
        )
        if db.execute(stmt).rowcount != 1:
            return False
        reminder = db.get(Reminder, reminder_id, populate_existing=True)
        self._audit(db, reminder, "reminder_expedited", actor, {"due_at": now.isoformat()})
        return True

    def release_stale_claims(self, db: Session) -> int:
        """Return reminders whose worker vanished mid-dispatch to the queue."""

        cutoff = self.clock() - self.policy.stale_claim_after
        stale_ids = db.execute(
            select(Reminder.id).where(
                Reminder.status == ReminderStatus.DISPATCHING,
                Reminder.claimed_at < cutoff,
            )
        ).scalars().all()

        released = 0
        for reminder_id in stale_ids:
            stmt = (
                update(Reminder)
                .where(
                    Reminder.id == reminder_id,
                    Reminder.status == ReminderStatus.DISPATCHING,
                    Reminder.claimed_at < cutoff,
                )
                .values(status=ReminderStatus.PENDING, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            if db.execute(stmt).rowcount == 1:
                released += 1
                reminder = db.get(Reminder, reminder_id, populate_existing=True)
                self._audit(db, reminder, "reminder_claim_released", None, {})
        return released

    @staticmethod
    def _audit(
        db: Session,
        reminder: Reminder,
        action: str,
        actor: str | None,
        details: dict,
        level: int = logging.INFO,
    ) -> None:
        record_audit(
            db,
            entity_type="reminder",
            entity_id=reminder.id,
            action=action,
            actor=actor,
            details={
                "appointment_id": str(reminder.appointment_id),
                "channel": reminder.channel.value,
                **details,
            },
            level=level,
        )

    def send_in_flight(self, reminder_id: UUID) -> bool:
        """Whether an earlier, timed-out provider call for this reminder is still running."""

        with self._overdue_lock:
            return reminder_id in self._overdue

    def _track_overdue(self, reminder: Reminder, future: Future) -> None:
        reminder_id, channel = reminder.id, reminder.channel.value
        with self._overdue_lock:
            self._overdue[reminder_id] = future

        def _finished(done: Future) -> None:
            with self._overdue_lock:
                self._overdue.pop(reminder_id, None)
            error = done.exception()
            logger.warning(
                "provider call finished after its deadline",
                extra={
                    "reminder_id": str(reminder_id),
                    "channel": channel,
                    "delivered": error is None,
                    "error": str(error) if error else None,
                },
            )

        future.add_done_callback(_finished)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
