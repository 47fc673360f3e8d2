"""Prometheus counters for the billing webhook and reconciliation paths (served at /metrics)."""

from prometheus_client import Counter

WEBHOOK_EVENTS = Counter(
    "webhook_events_total",
    "Provider webhook notifications by topic and outcome",
    ["type", "outcome"],
)
RECONCILIATION_GAPS = Counter(
    "reconciliation_gaps_total",
    "Notifications or remote agreements that could not be matched to local state",
    ["kind"],
)
DUPLICATE_PAYMENTS = Counter(
    "duplicate_payment_notifications_total",
    "Payment notifications for a provider payment id already in the ledger",
)
PROVIDER_ERRORS = Counter(
    "provider_errors_total",
    "Failed payment provider calls by operation",
    ["operation"],
)
