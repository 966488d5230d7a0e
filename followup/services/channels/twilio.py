"""SMS and voice reminders through the Twilio REST API."""

from __future__ import annotations

import logging
from xml.sax.saxutils import escape

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


class _TwilioAdapter:
    channel = "twilio"
    resource = ""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.timeout = build_timeout(settings.provider_timeout_seconds)

    def _url(self) -> str:
        base_url = self.settings.twilio_api_base_url.rstrip("/")
        return f"{base_url}/Accounts/{self.settings.twilio_account_sid}/{self.resource}.json"

    def _credentials(self) -> tuple[str, str]:
        sid = self.settings.twilio_account_sid
        token = self.settings.twilio_auth_token
        if not sid or not token or not self.settings.twilio_phone_number:
            raise PermanentDeliveryError("Twilio credentials are not configured")
        return sid, token

    def _form(self, destination: str, subject: str | None, body: str) -> dict[str, str]:
        raise NotImplementedError

    def send(self, destination: str, subject: str | None, body: str) -> SendResult:
        to = require_destination(destination, self.channel)
        form = self._form(to, subject, body)
        if self.settings.channels_mock_mode:
            return mock_send(self.channel, to, form)

        response = post(self._url(), timeout=self.timeout, auth=self._credentials(), data=form)
        data = response.json()
        sid = data.get("sid")
        if not sid:
            raise TransientDeliveryError("Twilio response did not include a sid")

        logger.debug("Twilio %s accepted %s", self.resource, sid)
        return SendResult(external_id=sid, response=data)


class SmsAdapter(_TwilioAdapter):
    channel = "sms"
    resource = "Messages"

    def _form(self, destination: str, subject: str | None, body: str) -> dict[str, str]:
        return {"From": self.settings.twilio_phone_number, "To": destination, "Body": body}


class VoiceAdapter(_TwilioAdapter):
    """Places a call that reads the reminder aloud."""

    channel = "voice"
    resource = "Calls"

    def _form(self, destination: str, subject: str | None, body: str) -> dict[str, str]:
        twiml = f"<Response><Say>{escape(body)}</Say></Response>"
        return {"From": self.settings.twilio_phone_number, "To": destination, "Twiml": twiml}
