"""Service layer of the reminder engine."""

from followup.services.dispatcher import DispatchOutcome, DispatchWorker, Escalator
from followup.services.engine import ReminderEngine, build_engine, get_engine
from followup.services.errors import (
    AppointmentNotFound,
    InvalidAppointment,
    NoEnabledChannel,
    PermanentDeliveryError,
    ReminderEngineError,
    ReminderNotFound,
    TemplateNotFound,
    TemplateRenderError,
    TransientDeliveryError,
)
from followup.services.lifecycle import (
    on_appointment_cancelled,
    on_appointment_changed,
    on_appointment_created,
)
from followup.services.planner import PlanResult, SchedulingPlanner
from followup.services.tracker import CallbackEvent, CallbackResult, DeliveryCallback, StatusTracker

__all__ = [
    "AppointmentNotFound",
    "CallbackEvent",
    "CallbackResult",
    "DeliveryCallback",
    "DispatchOutcome",
    "DispatchWorker",
    "Escalator",
    "InvalidAppointment",
    "NoEnabledChannel",
    "PermanentDeliveryError",
    "PlanResult",
    "ReminderEngine",
    "ReminderEngineError",
    "ReminderNotFound",
    "SchedulingPlanner",
    "StatusTracker",
    "TemplateNotFound",
    "TemplateRenderError",
    "TransientDeliveryError",
    "build_engine",
    "get_engine",
    "on_appointment_cancelled",
    "on_appointment_changed",
    "on_appointment_created",
]
