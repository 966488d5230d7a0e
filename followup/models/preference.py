from __future__ import annotations

import uuid
from datetime import timedelta

from sqlalchemy import Boolean, Enum, ForeignKey, Integer, Interval, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from followup.models.base import Base, TimestampMixin
from followup.models.reminder import ReminderChannel


class CommunicationPreference(Base, TimestampMixin):
    """Per-patient channel preference; disabled rather than deleted."""

    __tablename__ = "communication_preferences"
    __table_args__ = (UniqueConstraint("patient_id", "channel", name="uq_preference_channel"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("patients.id", ondelete="CASCADE"), index=True
    )
    channel: Mapped[ReminderChannel] = mapped_column(
        Enum(ReminderChannel, name="reminder_channel"), nullable=False
    )
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    time_before_appointment: Mapped[timedelta | None] = mapped_column(Interval, nullable=True)
