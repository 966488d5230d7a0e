"""SQLAlchemy models for the follow-up reminder engine."""

from followup.models.appointment import (
    CLOSED_APPOINTMENT_STATUSES,
    Appointment,
    AppointmentStatus,
)
from followup.models.audit_log import AuditLog
from followup.models.doctor import Doctor
from followup.models.opt_in_log import OptInLog
from followup.models.patient import Patient
from followup.models.preference import CommunicationPreference
from followup.models.reminder import (
    APPOINTMENT_CANCELLED,
    SUPERSEDED,
    Reminder,
    ReminderChannel,
    ReminderStatus,
)
from followup.models.template import ReminderTemplate

__all__ = [
    "APPOINTMENT_CANCELLED",
    "CLOSED_APPOINTMENT_STATUSES",
    "SUPERSEDED",
    "Appointment",
    "AppointmentStatus",
    "AuditLog",
    "CommunicationPreference",
    "Doctor",
    "OptInLog",
    "Patient",
    "Reminder",
    "ReminderChannel",
    "ReminderStatus",
    "ReminderTemplate",
]
