"""Import SQLAlchemy models for Alembic's autogenerate feature."""

from followup.models.base import Base
from followup.models import (  # noqa: F401
    Appointment,
    AuditLog,
    CommunicationPreference,
    Doctor,
    OptInLog,
    Patient,
    Reminder,
    ReminderTemplate,
)

__all__ = [
    "Base",
    "Appointment",
    "AuditLog",
    "CommunicationPreference",
    "Doctor",
    "OptInLog",
    "Patient",
    "Reminder",
    "ReminderTemplate",
]
