"""Status tracker: apply provider delivery callbacks to reminders."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Final
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from followup.core.policy import ReminderPolicy
from followup.logging_utils import set_reminder_context
from followup.metrics import CALLBACKS
from followup.models import Appointment, AppointmentStatus, Reminder, ReminderStatus
from followup.services.audit import record_audit
from followup.services.clock import Clock, ensure_utc, system_clock
from followup.services.dispatcher import Escalator
from followup.services.errors import InvalidTransition, ReminderNotFound, StaleCallback
from followup.services.state_machine import TIMESTAMP_FIELDS, ensure_forward

logger = logging.getLogger(__name__)

# Concurrent callbacks for one reminder are resolved by re-reading and retrying the CAS.
MAX_CAS_ATTEMPTS: Final[int] = 3


class CallbackEvent(str, Enum):
    DELIVERED = "delivered"
    READ = "read"
    RESPONDED = "responded"
    FAILED = "failed"


EVENT_STATUS: Final[dict[CallbackEvent, ReminderStatus]] = {
    CallbackEvent.DELIVERED: ReminderStatus.DELIVERED,
    CallbackEvent.READ: ReminderStatus.READ,
    CallbackEvent.RESPONDED: ReminderStatus.RESPONDED,
    CallbackEvent.FAILED: ReminderStatus.FAILED,
}


def check_event(current: ReminderStatus, event: CallbackEvent) -> None:
    """Raise :class:`StaleCallback` if ``event`` cannot advance a reminder in ``current``."""

    try:
        ensure_forward(current, EVENT_STATUS[event])
    except InvalidTransition as exc:
        raise StaleCallback(f"{event.value} event ignored: {exc}") from exc


@dataclass(frozen=True)
class DeliveryCallback:
    event: CallbackEvent
    reminder_id: UUID | None = None
    external_id: str | None = None
    timestamp: datetime | None = None
    response_text: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class CallbackResult:
    reminder_id: UUID
    applied: bool
    status: ReminderStatus
    reason: str | None = None
    escalated_to: UUID | None = None
    appointment_confirmed: bool = False


class StatusTracker:
    def __init__(
        self,
        policy: ReminderPolicy,
        escalator: Escalator,
        clock: Clock = system_clock,
    ) -> None:
        self.policy = policy
        self.escalator = escalator
        self.clock = clock

    def find(self, db: Session, callback: DeliveryCallback) -> Reminder:
        """Locate the reminder a callback refers to by id or provider message id."""

        reminder = None
        if callback.reminder_id is not None:
            reminder = db.get(Reminder, callback.reminder_id, populate_existing=True)
        if reminder is None and callback.external_id:
            reminder = db.execute(
                select(Reminder).where(Reminder.external_id == callback.external_id)
            ).scalars().first()
        if reminder is None:
            raise ReminderNotFound(
                f"No reminder for id={callback.reminder_id} external_id={callback.external_id}"
            )
        return reminder

    def _event_time(self, reminder: Reminder, target: ReminderStatus, reported: datetime | None):
        """Return the timestamp to record, never earlier than the previous state's."""

        event_time = ensure_utc(reported) if reported else self.clock()
        for status, field_name in TIMESTAMP_FIELDS.items():
            if status == target:
                break
            previous = getattr(reminder, field_name)
            if previous is not None and ensure_utc(previous) > event_time:
                event_time = ensure_utc(previous)
        return event_time

    def apply_callback(
        self, db: Session, callback: DeliveryCallback, *, actor: str | None = None
    ) -> CallbackResult:
        """Advance a reminder in response to a provider event.

        Backward and post-terminal events leave the reminder untouched and
        are recorded as ignored.
        """

        reminder = self.find(db, callback)
        set_reminder_context(reminder.id, reminder.appointment_id)
        target = EVENT_STATUS[callback.event]

        for _ in range(MAX_CAS_ATTEMPTS):
            current = reminder.status
            try:
                check_event(current, callback.event)
            except StaleCallback:
                return self._ignore(db, reminder, callback, actor, "stale_event")

            values: dict = {"status": target}
            if target == ReminderStatus.FAILED:
                values["error_message"] = callback.error_message or "provider reported failure"
                values["claimed_at"] = None
            else:
                values[TIMESTAMP_FIELDS[target]] = self._event_time(
                    reminder, target, callback.timestamp
                )
            if target == ReminderStatus.RESPONDED:
                values["response"] = callback.response_text

            stmt = (
                update(Reminder)
                .where(Reminder.id == reminder.id, Reminder.status == current)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            moved = db.execute(stmt).rowcount == 1
            reminder = db.get(Reminder, reminder.id, populate_existing=True)
            if moved:
                return self._applied(db, reminder, current, callback, actor)

        return self._ignore(db, reminder, callback, actor, "concurrent_update")

    def _applied(
        self,
        db: Session,
        reminder: Reminder,
        previous: ReminderStatus,
        callback: DeliveryCallback,
        actor: str | None,
    ) -> CallbackResult:
        CALLBACKS.labels(event=callback.event.value, applied="true").inc()
        details = {
            "appointment_id": str(reminder.appointment_id),
            "channel": reminder.channel.value,
            "from_status": previous.value,
            "external_id": reminder.external_id,
        }
        if callback.error_message:
            details["error"] = callback.error_message
        record_audit(
            db,
            entity_type="reminder",
            entity_id=reminder.id,
            action=f"reminder_{reminder.status.value}",
            actor=actor,
            details=details,
            level=logging.WARNING if reminder.status == ReminderStatus.FAILED else logging.INFO,
        )

        escalated = None
        if reminder.status == ReminderStatus.FAILED:
            escalated = self.escalator.escalate(db, reminder, actor=actor)

        confirmed = False
        if reminder.status == ReminderStatus.RESPONDED:
            confirmed = self._confirm_appointment(db, reminder, callback.response_text, actor)

        return CallbackResult(
            reminder_id=reminder.id,
            applied=True,
            status=reminder.status,
            escalated_to=escalated.id if escalated else None,
            appointment_confirmed=confirmed,
        )

    def _ignore(
        self,
        db: Session,
        reminder: Reminder,
        callback: DeliveryCallback,
        actor: str | None,
        reason: str,
    ) -> CallbackResult:
        CALLBACKS.labels(event=callback.event.value, applied="false").inc()
        record_audit(
            db,
            entity_type="reminder",
            entity_id=reminder.id,
            action="callback_ignored",
            actor=actor,
            details={
                "event": callback.event.value,
                "current_status": reminder.status.value,
                "reason": reason,
            },
        )
        return CallbackResult(
            reminder_id=reminder.id, applied=False, status=reminder.status, reason=reason
        )

    def is_confirmation(self, text: str | None) -> bool:
        if not text or not text.strip():
            return False
        first_word = text.strip().split()[0].strip(".,!").upper()
        return first_word in self.policy.confirmation_keywords

    def _confirm_appointment(
        self, db: Session, reminder: Reminder, text: str | None, actor: str | None
    ) -> bool:
        if not self.is_confirmation(text):
            return False

        appointment = db.execute(
            select(Appointment).where(Appointment.id == reminder.appointment_id).with_for_update()
        ).scalars().first()
        if appointment is None or appointment.status != AppointmentStatus.SCHEDULED:
            return False

        appointment.status = AppointmentStatus.CONFIRMED
        db.flush()
        record_audit(
            db,
            entity_type="appointment",
            entity_id=appointment.id,
            action="appointment_confirmed",
            actor=actor,
            details={"reminder_id": str(reminder.id), "channel": reminder.channel.value},
        )
        return True
