"""Subscription state machine and billing date arithmetic."""

from __future__ import annotations

from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta

PENDING = "pending"
AUTHORIZED = "authorized"
PAUSED = "paused"
CANCELLED = "cancelled"

# Allowed moves besides staying in the same state; cancelled is terminal.
TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({AUTHORIZED, PAUSED, CANCELLED}),
    AUTHORIZED: frozenset({PAUSED, CANCELLED}),
    PAUSED: frozenset({AUTHORIZED, CANCELLED}),
    CANCELLED: frozenset(),
}

# Remote agreement status -> user projection subscription_status
USER_STATUS_FOR_REMOTE = {
    AUTHORIZED: "active",
    PAUSED: "paused",
    CANCELLED: "cancelled",
}
USER_STATUS_TRIAL = "trial"
USER_STATUS_ACTIVE = "active"


def can_transition(current: str, target: str) -> bool:
    """True if a subscription in `current` may move to `target`.

    Same-state writes are always allowed (idempotent reconciliation). Statuses
    outside the known set are accepted unless leaving the terminal state.
    """
    if current == target:
        return True
    if current == CANCELLED:
        return False
    allowed = TRANSITIONS.get(current)
    if allowed is None or target not in TRANSITIONS:
        return True
    return target in allowed


def is_known_transition(current: str, target: str) -> bool:
    return current == target or target in TRANSITIONS.get(current, frozenset())


def advance_billing_date(start: datetime, frequency: int, frequency_type: str) -> datetime:
    """Next charge date one billing period after `start` (calendar months or days)."""
    if frequency_type == "days":
        return start + timedelta(days=frequency)
    if frequency_type == "months":
        return start + relativedelta(months=frequency)
    raise ValueError(f"Unsupported billing frequency type: {frequency_type}")
