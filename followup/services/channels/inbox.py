"""In-app reminders delivered to a per-patient inbox kept in Redis."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Final

import redis

from followup.core.config import Settings
from followup.services.channels.base import SendResult, require_destination
from followup.services.errors import TransientDeliveryError

_INBOX_KEY_TEMPLATE: Final[str] = "followup:inbox:{patient_id}"


class InAppAdapter:
    """Pushes reminders to the inbox the patient app polls.

    The patient app acknowledges a message by posting a ``read`` or
    ``responded`` callback for its ``external_id``.
    """

    channel = "app"

    def __init__(self, settings: Settings, client: redis.Redis | None = None) -> None:
        self.settings = settings
        self._client = client

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(
                self.settings.redis_url,
                decode_responses=True,
                socket_timeout=self.settings.provider_timeout_seconds,
            )
        return self._client

    def send(self, destination: str, subject: str | None, body: str) -> SendResult:
        patient_id = require_destination(destination, self.channel)
        message_id = f"app-{uuid.uuid4()}"
        message: dict[str, Any] = {
            "id": message_id,
            "subject": subject,
            "body": body,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        key = _INBOX_KEY_TEMPLATE.format(patient_id=patient_id)

        try:
            pipeline = self._get_client().pipeline()
            pipeline.lpush(key, json.dumps(message, ensure_ascii=False))
            pipeline.ltrim(key, 0, self.settings.inbox_max_messages - 1)
            pipeline.expire(key, self.settings.inbox_ttl_seconds)
            pipeline.execute()
        except redis.RedisError as exc:
            raise TransientDeliveryError(f"inbox unavailable: {exc}") from exc

        return SendResult(external_id=message_id, response={"inbox": key})

    def messages(self, patient_id: str, limit: int = 20) -> list[dict[str, Any]]:
        try:
            return read_inbox(self._get_client(), patient_id, limit=limit)
        except redis.RedisError as exc:
            raise TransientDeliveryError(f"inbox unavailable: {exc}") from exc


def read_inbox(client: redis.Redis, patient_id: str, limit: int = 20) -> list[dict[str, Any]]:
    """Return the newest messages of a patient's inbox."""

    raw_messages = client.lrange(_INBOX_KEY_TEMPLATE.format(patient_id=patient_id), 0, limit - 1)
    messages: list[dict[str, Any]] = []
    for raw in raw_messages:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            messages.append(data)
    return messages
