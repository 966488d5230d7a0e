"""Prometheus metrics shared by the API and the worker."""

from prometheus_client import Counter, Histogram

REQUEST_COUNTER = Counter(
    "followup_api_requests_total",
    "Total number of processed HTTP requests.",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "followup_api_request_duration_seconds",
    "HTTP request latency in seconds.",
    ["method", "path"],
)
REMINDERS_PLANNED = Counter(
    "followup_reminders_planned_total",
    "Reminders created by the planner or by escalation.",
    ["channel", "origin"],
)
DISPATCH_OUTCOMES = Counter(
    "followup_reminder_dispatch_total",
    "Dispatch attempts by channel and outcome.",
    ["channel", "outcome"],
)
DISPATCH_LATENCY = Histogram(
    "followup_reminder_dispatch_duration_seconds",
    "Time spent inside channel adapters.",
    ["channel"],
)
CALLBACKS = Counter(
    "followup_reminder_callbacks_total",
    "Provider callbacks by event and whether they changed state.",
    ["event", "applied"],
)
