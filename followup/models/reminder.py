from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from followup.models.base import Base, TimestampMixin


class ReminderChannel(str, enum.Enum):
    """Delivery media a reminder can travel through."""

    SMS = "sms"
    EMAIL = "email"
    VOICE = "voice"
    APP = "app"
    WHATSAPP = "whatsapp"


class ReminderStatus(str, enum.Enum):
    """Reminder lifecycle states.

    ``DISPATCHING`` is the internal claim marker held by a worker while the
    channel adapter is being called.
    """

    PENDING = "pending"
    DISPATCHING = "dispatching"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    RESPONDED = "responded"
    FAILED = "failed"


SUPERSEDED = "superseded"
APPOINTMENT_CANCELLED = "appointment_cancelled"


class Reminder(Base, TimestampMixin):
    """A single reminder for one appointment on one channel."""

    __tablename__ = "reminders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("appointments.id", ondelete="CASCADE"), index=True
    )
    template_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("reminder_templates.id", ondelete="SET NULL"), nullable=True
    )
    escalated_from_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("reminders.id", ondelete="SET NULL"), nullable=True
    )
    channel: Mapped[ReminderChannel] = mapped_column(
        Enum(ReminderChannel, name="reminder_channel"), nullable=False
    )
    status: Mapped[ReminderStatus] = mapped_column(
        Enum(ReminderStatus, name="reminder_status"),
        default=ReminderStatus.PENDING,
        nullable=False,
        index=True,
    )
    scheduled_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    next_attempt_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    read_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    response_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    response: Mapped[str | None] = mapped_column(Text, nullable=True)
    rendered_subject: Mapped[str | None] = mapped_column(String(998), nullable=True)
    rendered_body: Mapped[str] = mapped_column(Text, nullable=False)
