"""Tests for daily/monthly spend tracking."""

import logging
from datetime import datetime

import pytest

from spendguard.budget import CONFIG_KEY, TRACKING_KEY, BudgetTracker
from spendguard.clock import FixedClock
from spendguard.errors import InvalidConfigError
from spendguard.storage import MemoryStore, write_json


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 15, 12, 0))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tracker(store, clock):
    return BudgetTracker(store, clock=clock)


class TestCanSpend:
    def test_small_amount_allowed(self, tracker):
        result = tracker.can_spend(5)
        assert result.allowed
        assert result.reason is None
        assert result.daily_remaining == 20.0
        assert result.monthly_remaining == 500.0

    def test_amount_above_threshold_needs_approval(self, tracker):
        result = tracker.can_spend(15)
        assert not result.allowed
        assert result.requires_approval
        assert "approval" in result.reason
        assert "limit" not in result.reason
        assert result.daily_remaining == 20

    def test_amount_at_threshold_allowed(self, tracker):
        assert tracker.can_spend(10).allowed

    def test_daily_limit_checked_before_monthly(self, tracker):
        tracker.update_config(monthly_limit=25.0)
        tracker.record_spend(18)

        result = tracker.can_spend(8)
        assert not result.allowed
        assert "daily limit" in result.reason
        assert result.daily_remaining == 2.0
        assert result.monthly_remaining == 7.0

    @pytest.mark.parametrize("amount", [2.01, 3, 7.5])
    def test_over_daily_remaining_denied_regardless_of_monthly(self, tracker, amount):
        tracker.record_spend(18)
        result = tracker.can_spend(amount)
        assert not result.allowed
        assert "daily limit" in result.reason
        assert not result.requires_approval

    def test_monthly_limit_denied(self, tracker, clock):
        tracker.update_config(monthly_limit=30.0, requires_approval=False)
        tracker.record_spend(18)
        clock.advance(days=1)

        result = tracker.can_spend(15)
        assert not result.allowed
        assert "monthly limit" in result.reason
        assert result.daily_remaining == 20.0
        assert result.monthly_remaining == 12.0

    def test_no_approval_needed_when_disabled(self, tracker):
        tracker.update_config(requires_approval=False)
        assert tracker.can_spend(15).allowed

    def test_negative_amount_denied(self, tracker):
        result = tracker.can_spend(-1)
        assert not result.allowed
        assert "negative" in result.reason


class TestRecordSpend:
    def test_record_updates_both_windows_once(self, tracker, clock):
        tracker.record_spend(2.5, sub_account_id="sub-1")

        first = tracker.get_tracking()
        second = tracker.get_tracking()
        for tracking in (first, second):
            assert tracking.daily.amount_usd == 2.5
            assert tracking.monthly.amount_usd == 2.5
            assert tracking.total_transactions == 1
        assert first.last_transaction.amount_usd == 2.5
        assert first.last_transaction.sub_account_id == "sub-1"
        assert first.last_transaction.timestamp == clock.now()

    def test_record_does_not_recheck_limits(self, tracker):
        tracker.record_spend(15)
        tracker.record_spend(15)
        tracking = tracker.get_tracking()
        assert tracking.daily.amount_usd == 30.0
        assert tracker.can_spend(1).daily_remaining == -10.0

    def test_micro_amounts_accumulate_exactly(self, tracker):
        for _ in range(3):
            tracker.record_spend(0.1)
        assert tracker.get_tracking().daily.amount_usd == 0.3

    def test_negative_record_rejected(self, tracker):
        with pytest.raises(ValueError):
            tracker.record_spend(-5)

    def test_state_shared_through_store(self, store, clock, tracker):
        tracker.record_spend(4)
        other = BudgetTracker(store, clock=clock)
        assert other.get_tracking().daily.amount_usd == 4.0
        assert other.can_spend(1).daily_remaining == 16.0


class TestWindowRollover:
    def test_stale_daily_window_reset_before_check(self, store, clock):
        write_json(store, TRACKING_KEY, {
            "daily": {"amount_micros": 15_000_000, "limit_micros": 20_000_000, "reset_date": "2026-03-14"},
            "monthly": {"amount_micros": 15_000_000, "limit_micros": 500_000_000, "reset_date": "2026-03-01"},
            "total_transactions": 3,
        })
        tracker = BudgetTracker(store, clock=clock)

        result = tracker.can_spend(10)
        assert result.allowed
        assert result.daily_remaining == 20.0
        assert result.monthly_remaining == 485.0

        tracking = tracker.get_tracking()
        assert tracking.daily.amount_micros == 0
        assert tracking.daily.reset_date == "2026-03-15"
        assert tracking.total_transactions == 3

    def test_next_day_resets_daily_only(self, tracker, clock):
        tracker.record_spend(15)
        clock.advance(days=1)

        tracking = tracker.get_tracking()
        assert tracking.daily.amount_usd == 0.0
        assert tracking.daily.reset_date == "2026-03-16"
        assert tracking.monthly.amount_usd == 15.0

    def test_next_month_resets_monthly(self, tracker, clock):
        tracker.record_spend(15)
        clock.set(datetime(2026, 4, 2, 9, 0))

        tracking = tracker.get_tracking()
        assert tracking.monthly.amount_usd == 0.0
        assert tracking.monthly.reset_date == "2026-04-01"

    def test_auto_reset_disabled_keeps_window(self, tracker, clock):
        tracker.update_config(auto_reset_daily=False)
        tracker.record_spend(15)
        clock.advance(days=1)

        tracking = tracker.get_tracking()
        assert tracking.daily.amount_usd == 15.0
        assert tracking.daily.reset_date == "2026-03-15"

    def test_manual_resets(self, tracker):
        tracker.record_spend(12)
        tracker.reset_daily()
        tracking = tracker.get_tracking()
        assert tracking.daily.amount_usd == 0.0
        assert tracking.monthly.amount_usd == 12.0

        tracker.reset_monthly()
        assert tracker.get_tracking().monthly.amount_usd == 0.0
        assert tracker.get_tracking().total_transactions == 1


class TestConfig:
    def test_update_applies_to_open_window(self, tracker):
        tracker.record_spend(5)
        tracker.update_config(daily_limit=50.0, requires_approval=False)

        result = tracker.can_spend(30)
        assert result.allowed
        assert result.daily_remaining == 45.0

    def test_update_persists(self, store, clock, tracker):
        tracker.update_config(approval_threshold=3.0)
        assert BudgetTracker(store, clock=clock).get_config().approval_threshold == 3.0

    def test_invalid_update_rejected(self, tracker):
        with pytest.raises(InvalidConfigError):
            tracker.update_config(daily_limit=0)
        with pytest.raises(InvalidConfigError):
            tracker.update_config(weekly_limit=10)
        assert tracker.get_config().daily_limit == 20.0

    def test_get_config_returns_copy(self, tracker):
        config = tracker.get_config()
        config.daily_limit = 999.0
        assert tracker.get_config().daily_limit == 20.0

    def test_update_from_other_tracker_applies(self, store, clock, tracker):
        tracker.get_tracking()
        other = BudgetTracker(store, clock=clock)
        other.update_config(requires_approval=False, monthly_limit=800.0)

        assert tracker.get_config().monthly_limit == 800.0
        assert tracker.can_spend(15).allowed

        tracker.update_config(daily_limit=30.0)
        config = other.get_config()
        assert config.daily_limit == 30.0
        assert config.monthly_limit == 800.0
        assert not config.requires_approval


class TestCorruptState:
    def test_malformed_tracking_falls_back_to_defaults(self, store, clock, caplog):
        store.set(TRACKING_KEY, "{not json")
        tracker = BudgetTracker(store, clock=clock)

        with caplog.at_level(logging.WARNING, logger="spendguard.budget"):
            tracking = tracker.get_tracking()

        assert tracking.daily.amount_micros == 0
        assert tracking.total_transactions == 0
        assert "malformed spend tracking" in caplog.text

    def test_negative_stored_amount_treated_as_corrupt(self, store, clock):
        write_json(store, TRACKING_KEY, {
            "daily": {"amount_micros": -1, "limit_micros": 20_000_000, "reset_date": "2026-03-15"},
            "monthly": {"amount_micros": 0, "limit_micros": 500_000_000, "reset_date": "2026-03-01"},
        })
        tracking = BudgetTracker(store, clock=clock).get_tracking()
        assert tracking.daily.amount_micros == 0

    def test_mistyped_last_transaction_treated_as_corrupt(self, store, clock, caplog):
        write_json(store, TRACKING_KEY, {
            "daily": {"amount_micros": 3_000_000, "limit_micros": 20_000_000, "reset_date": "2026-03-15"},
            "monthly": {"amount_micros": 3_000_000, "limit_micros": 500_000_000, "reset_date": "2026-03"},
            "total_transactions": 1,
            "last_transaction": {"amount_micros": "lots", "timestamp": clock.now()},
        })
        tracker = BudgetTracker(store, clock=clock)

        with caplog.at_level(logging.WARNING, logger="spendguard.budget"):
            assert tracker.can_spend(5).allowed
        tracking = tracker.get_tracking()
        assert tracking.total_transactions == 0
        assert tracking.last_transaction is None
        assert "malformed spend tracking" in caplog.text

    def test_invalid_config_falls_back_to_defaults(self, store, clock):
        write_json(store, CONFIG_KEY, {"daily_limit": -5})
        assert BudgetTracker(store, clock=clock).get_config().daily_limit == 20.0

    def test_partial_config_merged_with_defaults(self, store, clock):
        write_json(store, CONFIG_KEY, {"daily_limit": 40})
        config = BudgetTracker(store, clock=clock).get_config()
        assert config.daily_limit == 40
        assert config.monthly_limit == 500.0


def test_spend_status(tracker):
    tracker.record_spend(5)
    status = tracker.get_spend_status()
    assert status["daily"] == {
        "spent": 5.0,
        "limit": 20.0,
        "remaining": 15.0,
        "percentage": 25.0,
        "reset_date": "2026-03-15",
    }
    assert status["monthly"]["percentage"] == 1.0
    assert status["total_transactions"] == 1
