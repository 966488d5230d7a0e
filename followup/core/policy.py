"""Reminder engine policy injected into the planner, worker and tracker."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from followup.core.config import Settings


@dataclass(frozen=True)
class ReminderPolicy:
    """Tunable parameters of reminder planning and delivery."""

    default_lead_time: timedelta = timedelta(hours=24)
    late_booking_buffer: timedelta = timedelta(seconds=60)
    max_attempts: int = 5
    backoff_base: timedelta = timedelta(minutes=1)
    backoff_multiplier: int = 2
    provider_timeout: float = 10.0
    stale_claim_after: timedelta = timedelta(minutes=5)
    automatic_reminders: bool = True
    timezone: str = "UTC"
    confirmation_keywords: frozenset[str] = field(
        default_factory=lambda: frozenset({"YES", "CONFIRM"})
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReminderPolicy":
        return cls(
            default_lead_time=timedelta(hours=settings.default_lead_time_hours),
            late_booking_buffer=timedelta(seconds=settings.late_booking_buffer_seconds),
            max_attempts=max(1, settings.max_delivery_attempts),
            backoff_base=timedelta(seconds=settings.retry_backoff_base_seconds),
            backoff_multiplier=max(1, settings.retry_backoff_multiplier),
            provider_timeout=settings.provider_timeout_seconds,
            stale_claim_after=timedelta(seconds=settings.stale_claim_seconds),
            automatic_reminders=settings.enable_automatic_reminders,
            timezone=settings.timezone,
            confirmation_keywords=frozenset(
                keyword.strip().upper() for keyword in settings.confirmation_keywords
            ),
        )

    def backoff_for(self, retry_count: int) -> timedelta:
        """Delay before the next attempt after ``retry_count`` transient failures."""

        exponent = max(0, retry_count - 1)
        return self.backoff_base * (self.backoff_multiplier**exponent)

    def zone(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError:
            return ZoneInfo("UTC")
