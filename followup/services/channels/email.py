"""Email reminders through the SendGrid v3 mail API."""

from __future__ import annotations

import uuid

from followup.core.config import Settings
from followup.services.channels.base import (
    SendResult,
    build_timeout,
    mock_send,
    post,
    require_destination,
)
from followup.services.errors import PermanentDeliveryError


class EmailAdapter:
    channel = "email"

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.timeout = build_timeout(settings.provider_timeout_seconds)

    def send(self, destination: str, subject: str | None, body: str) -> SendResult:
        to = require_destination(destination, self.channel)
        if not subject:
            raise PermanentDeliveryError("email reminders require a subject")

        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.settings.from_email},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        if self.settings.channels_mock_mode:
            return mock_send(self.channel, to, payload)

        api_key = self.settings.sendgrid_api_key
        if not api_key or not self.settings.from_email:
            raise PermanentDeliveryError("SendGrid credentials are not configured")

        url = f"{self.settings.sendgrid_api_base_url.rstrip('/')}/mail/send"
        response = post(
            url,
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {api_key}"},
            json=payload,
        )
        # SendGrid answers 202 with an empty body; the id travels in a header.
        message_id = response.headers.get("X-Message-Id") or f"sendgrid-{uuid.uuid4()}"
        return SendResult(external_id=message_id, response={"status": response.status_code})
