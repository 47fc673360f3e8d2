"""Tests for the subscription state machine and billing date arithmetic."""

from datetime import datetime, timezone

import pytest

from rentdesk.services.subscription_state import advance_billing_date, can_transition, is_known_transition


@pytest.mark.parametrize("current,target,expected", [
    ("pending", "authorized", True),
    ("pending", "cancelled", True),
    ("authorized", "paused", True),
    ("authorized", "cancelled", True),
    ("paused", "authorized", True),
    ("paused", "cancelled", True),
    ("authorized", "authorized", True),
    ("cancelled", "cancelled", True),
    ("cancelled", "authorized", False),
    ("cancelled", "pending", False),
    ("cancelled", "paused", False),
    ("authorized", "pending", False),
    ("authorized", "finished", True),
])
def test_can_transition(current, target, expected):
    """Cancelled is terminal; provider statuses outside the known set are accepted."""
    assert can_transition(current, target) is expected


def test_is_known_transition():
    assert is_known_transition("pending", "authorized")
    assert is_known_transition("paused", "paused")
    assert not is_known_transition("authorized", "finished")


def test_advance_billing_date_months_clamps_to_month_end():
    start = datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc)
    assert advance_billing_date(start, 1, "months") == datetime(2026, 2, 28, 12, 0, tzinfo=timezone.utc)
    assert advance_billing_date(start, 12, "months") == datetime(2027, 1, 31, 12, 0, tzinfo=timezone.utc)


def test_advance_billing_date_days():
    start = datetime(2026, 2, 25, tzinfo=timezone.utc)
    assert advance_billing_date(start, 30, "days") == datetime(2026, 3, 27, tzinfo=timezone.utc)


def test_advance_billing_date_rejects_unknown_unit():
    with pytest.raises(ValueError):
        advance_billing_date(datetime(2026, 1, 1, tzinfo=timezone.utc), 1, "weeks")
