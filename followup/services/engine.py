"""Wiring of the planner, dispatcher and tracker around one policy."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from followup.core.config import Settings, get_settings
from followup.core.policy import ReminderPolicy
from followup.services.channels import AdapterRegistry, build_channel_adapters
from followup.services.clock import Clock, system_clock
from followup.services.dispatcher import DispatchWorker, Escalator
from followup.services.planner import SchedulingPlanner
from followup.services.tracker import StatusTracker


@dataclass(frozen=True)
class ReminderEngine:
    policy: ReminderPolicy
    planner: SchedulingPlanner
    escalator: Escalator
    worker: DispatchWorker
    tracker: StatusTracker
    adapters: AdapterRegistry


def build_engine(
    settings: Settings | None = None,
    *,
    policy: ReminderPolicy | None = None,
    adapters: AdapterRegistry | None = None,
    clock: Clock = system_clock,
) -> ReminderEngine:
    settings = settings or get_settings()
    policy = policy or ReminderPolicy.from_settings(settings)
    adapters = adapters if adapters is not None else build_channel_adapters(settings)

    planner = SchedulingPlanner(policy, clock=clock)
    escalator = Escalator(planner)
    return ReminderEngine(
        policy=policy,
        planner=planner,
        escalator=escalator,
        worker=DispatchWorker(policy, adapters, escalator, clock=clock),
        tracker=StatusTracker(policy, escalator, clock=clock),
        adapters=adapters,
    )


@lru_cache(maxsize=1)
def get_engine() -> ReminderEngine:
    """Return the process-wide engine built from environment settings."""

    return build_engine()
