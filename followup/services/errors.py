"""Exception taxonomy of the reminder engine."""

from __future__ import annotations


class ReminderEngineError(Exception):
    """Base class for engine errors."""


class NoEnabledChannel(ReminderEngineError):
    """The patient has no enabled, non-opted-out channel."""

    def __init__(self, patient_id) -> None:
        super().__init__(f"No enabled reminder channel for patient {patient_id}")
        self.patient_id = patient_id


class TemplateNotFound(ReminderEngineError):
    """Neither a type-specific nor a default template exists for a channel."""

    def __init__(self, channel, appointment_type: str | None) -> None:
        super().__init__(
            f"No template for channel {getattr(channel, 'value', channel)} "
            f"and appointment type {appointment_type!r}"
        )
        self.channel = channel
        self.appointment_type = appointment_type


class TemplateRenderError(ReminderEngineError):
    """A template could not be rendered completely."""


class DeliveryError(ReminderEngineError):
    """A channel adapter failed to hand a message to its provider."""


class TransientDeliveryError(DeliveryError):
    """Delivery may succeed if retried later (network, timeout, provider 5xx)."""


class PermanentDeliveryError(DeliveryError):
    """Delivery will never succeed as requested (bad address, provider 4xx)."""


class StaleCallback(ReminderEngineError):
    """A provider callback would move a reminder backwards or out of a terminal state."""


class ReminderNotFound(ReminderEngineError):
    """No reminder matches the identifier supplied by a caller."""


class InvalidTransition(ReminderEngineError):
    """A reminder state change not allowed by the lifecycle."""


class AppointmentNotFound(ReminderEngineError):
    """A lifecycle hook refers to an appointment that does not exist."""


class InvalidAppointment(ReminderEngineError):
    """The appointment cannot be planned as stored."""
