"""Channel adapters keyed by reminder channel."""

from __future__ import annotations

from collections.abc import Mapping

from followup.core.config import Settings
from followup.models import Patient, ReminderChannel
from followup.services.channels.base import ChannelAdapter, SendResult
from followup.services.channels.email import EmailAdapter
from followup.services.channels.inbox import InAppAdapter
from followup.services.channels.twilio import SmsAdapter, VoiceAdapter
from followup.services.channels.whatsapp import WhatsAppAdapter

AdapterRegistry = Mapping[ReminderChannel, ChannelAdapter]


def build_channel_adapters(settings: Settings) -> dict[ReminderChannel, ChannelAdapter]:
    """Return one adapter per channel configured from ``settings``."""

    return {
        ReminderChannel.SMS: SmsAdapter(settings),
        ReminderChannel.VOICE: VoiceAdapter(settings),
        ReminderChannel.EMAIL: EmailAdapter(settings),
        ReminderChannel.WHATSAPP: WhatsAppAdapter(settings),
        ReminderChannel.APP: InAppAdapter(settings),
    }


def destination_for(patient: Patient, channel: ReminderChannel) -> str | None:
    """Return the address a reminder on ``channel`` is sent to."""

    if channel == ReminderChannel.EMAIL:
        return patient.email
    if channel == ReminderChannel.APP:
        return str(patient.id)
    return patient.phone_number


__all__ = [
    "AdapterRegistry",
    "ChannelAdapter",
    "EmailAdapter",
    "InAppAdapter",
    "SendResult",
    "SmsAdapter",
    "VoiceAdapter",
    "WhatsAppAdapter",
    "build_channel_adapters",
    "destination_for",
]
