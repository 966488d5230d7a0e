"""WhatsApp reminders through the Evolution API."""

from __future__ import annotations

import logging
import re
from urllib.parse import quote

from followup.core.config import Settings
from followup.services.channels.base import (
    SendResult,
    build_timeout,
    mock_send,
    post,
    require_destination,
)
from followup.services.errors import PermanentDeliveryError, TransientDeliveryError

logger = logging.getLogger(__name__)


def normalize_number(phone: str) -> str:
    """Strip everything but digits, as Evolution expects bare MSISDNs."""

    return re.sub(r"\D", "", phone)


def extract_message_id(data: dict) -> str | None:
    return (
        data.get("key", {}).get("id")
        or data.get("id")
        or data.get("message", {}).get("key", {}).get("id")
    )


class WhatsAppAdapter:
    channel = "whatsapp"

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.timeout = build_timeout(settings.provider_timeout_seconds)

    def _build_url(self, action: str) -> str:
        base_url = self.settings.evolution_api_base_url.rstrip("/")
        instance_name = self.settings.evolution_instance_name
        if not instance_name:
            raise PermanentDeliveryError("EVOLUTION_INSTANCE_NAME is not configured")
        return f"{base_url}/message/{action}/{quote(instance_name)}"

    def send(self, destination: str, subject: str | None, body: str) -> SendResult:
        number = normalize_number(require_destination(destination, self.channel))
        if not number:
            raise PermanentDeliveryError(f"invalid WhatsApp number {destination!r}")

        text = f"*{subject}*\n{body}" if subject else body
        payload = {"number": number, "text": text}
        if self.settings.channels_mock_mode:
            return mock_send(self.channel, number, payload)

        api_key = self.settings.evolution_api_key
        if not api_key:
            raise PermanentDeliveryError("EVOLUTION_API_KEY is not configured")

        response = post(
            self._build_url("sendText"),
            timeout=self.timeout,
            headers={"apikey": api_key, "Content-Type": "application/json"},
            json=payload,
        )
        data = response.json()
        message_id = extract_message_id(data)
        if not message_id:
            raise TransientDeliveryError(
                "Evolution API response did not include a message identifier"
            )

        logger.debug("Evolution API responded with %s", data)
        return SendResult(external_id=message_id, response=data)
