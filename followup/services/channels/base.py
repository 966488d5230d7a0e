"""Channel adapter contract and shared HTTP helpers."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from followup.services.errors import PermanentDeliveryError, TransientDeliveryError

logger = logging.getLogger(__name__)

# Provider statuses worth retrying besides 5xx.
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


@dataclass(frozen=True)
class SendResult:
    """Outcome of a successful hand-off to a provider."""

    external_id: str
    response: dict[str, Any] = field(default_factory=dict)


class ChannelAdapter(Protocol):
    """Sends one rendered message through a single channel."""

    def send(self, destination: str, subject: str | None, body: str) -> SendResult:
        """Deliver the message or raise a ``DeliveryError`` subclass."""


def build_timeout(seconds: float) -> httpx.Timeout:
    return httpx.Timeout(seconds, connect=min(5.0, seconds))


def raise_for_delivery(response: httpx.Response) -> None:
    """Translate an HTTP error response into the delivery error taxonomy."""

    if response.is_success:
        return
    detail = response.text[:500]
    status = response.status_code
    if status >= 500 or status in RETRYABLE_STATUS_CODES:
        raise TransientDeliveryError(f"provider returned {status}: {detail}")
    raise PermanentDeliveryError(f"provider rejected message ({status}): {detail}")


def post(
    url: str,
    *,
    timeout: httpx.Timeout,
    **kwargs: Any,
) -> httpx.Response:
    """POST to a provider, classifying transport failures as transient."""

    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.post(url, **kwargs)
    except httpx.TimeoutException as exc:
        raise TransientDeliveryError(f"provider timeout: {exc}") from exc
    except httpx.TransportError as exc:
        raise TransientDeliveryError(f"provider unreachable: {exc}") from exc
    raise_for_delivery(response)
    return response


def mock_send(channel: str, destination: str, payload: dict[str, Any]) -> SendResult:
    """Pretend to deliver a message; used in development environments."""

    message_id = f"mocked-{uuid.uuid4()}"
    logger.debug(
        "Mocking %s send to %s with payload: %s", channel, destination, payload
    )
    return SendResult(
        external_id=message_id,
        response={"mocked": True, "channel": channel, "payload": payload},
    )


def require_destination(destination: str | None, channel: str) -> str:
    if not destination:
        raise PermanentDeliveryError(f"patient has no {channel} destination")
    return destination
