from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, Index, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from followup.models.base import Base, TimestampMixin
from followup.models.reminder import ReminderChannel


class ReminderTemplate(Base, TimestampMixin):
    """Message template for a channel, optionally bound to an appointment type."""

    __tablename__ = "reminder_templates"
    __table_args__ = (
        Index(
            "uq_reminder_templates_channel_type_live",
            "channel",
            "appointment_type",
            unique=True,
            postgresql_where=text("deleted_at IS NULL AND appointment_type IS NOT NULL"),
            sqlite_where=text("deleted_at IS NULL AND appointment_type IS NOT NULL"),
        ),
        Index(
            "uq_reminder_templates_channel_default_live",
            "channel",
            unique=True,
            postgresql_where=text("deleted_at IS NULL AND appointment_type IS NULL"),
            sqlite_where=text("deleted_at IS NULL AND appointment_type IS NULL"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    channel: Mapped[ReminderChannel] = mapped_column(
        Enum(ReminderChannel, name="reminder_channel"), nullable=False
    )
    appointment_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subject: Mapped[str | None] = mapped_column(String(998), nullable=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
