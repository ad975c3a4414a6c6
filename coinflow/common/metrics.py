"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


ledger_operations_total = Counter(
    "ledger_operations_total",
    "Ledger mutations by operation and outcome",
    ["service", "operation", "outcome"],
)
ledger_conflicts_total = Counter(
    "ledger_conflicts_total",
    "Optimistic concurrency conflicts observed by the ledger",
    ["service"],
)
insufficient_funds_total = Counter(
    "insufficient_funds_total",
    "Debits rejected for insufficient funds",
    ["service", "kind"],
)
billing_ticks_total = Counter("billing_ticks_total", "Billing meter ticks by outcome", ["service", "outcome"])
billing_minutes_total = Counter(
    "billing_minutes_total",
    "Minutes billed by session kind",
    ["service", "kind"],
)
sessions_finalized_total = Counter(
    "sessions_finalized_total",
    "Billable sessions finalized by end reason",
    ["service", "reason"],
)
settlement_events_total = Counter(
    "settlement_events_total",
    "Provider settlement events by outcome",
    ["service", "outcome"],
)
reconciliation_runs_total = Counter(
    "reconciliation_runs_total",
    "Reconciliation claims by outcome",
    ["service", "outcome"],
)
reconciliation_drift_coins = Histogram(
    "reconciliation_drift_coins",
    "Absolute coin drift detected per account window",
    ["service"],
)
show_transitions_total = Counter(
    "show_transitions_total",
    "Show session state transitions",
    ["service", "to_state"],
)
live_shows = Gauge("live_shows", "Show sessions currently live as seen by the reaper", ["service"])
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
dlq_published_total = Counter(
    "dlq_published_total",
    "Total poison/DLQ events published",
    ["service", "topic", "error_type"],
)
events_consumed_total = Counter(
    "events_consumed_total",
    "Consumed Kafka messages by topic and handler outcome",
    ["service", "topic", "outcome"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate events skipped",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
