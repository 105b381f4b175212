"""
Daily and monthly spend tracking against configured limits.

Windows reset lazily: every read compares each window's stored reset date
with the current window identifier and zeroes stale windows before any
decision or mutation. There is no scheduler.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields, replace
from datetime import date
from typing import Optional

from .audit import AuditTrail, EventType
from .clock import Clock, SystemClock
from .errors import CorruptBlobError, InvalidConfigError
from .money import (
    Amount,
    amount_usd_to_micros,
    format_usd_from_micros,
    limit_usd_to_micros,
    micros_to_usd_float,
)
from .storage import KeyValueStore, read_json, write_json

logger = logging.getLogger(__name__)


CONFIG_KEY = "spend_limit_config"
TRACKING_KEY = "spend_tracking"


def daily_window_id(day: date) -> str:
    return day.isoformat()


def monthly_window_id(day: date) -> str:
    return day.replace(day=1).isoformat()


@dataclass
class SpendLimitConfig:
    """Per-process spend limits, in USD."""

    daily_limit: float = 20.0
    monthly_limit: float = 500.0
    requires_approval: bool = True
    approval_threshold: float = 10.0
    auto_reset_daily: bool = True
    auto_reset_monthly: bool = True

    def __post_init__(self):
        for name in ("daily_limit", "monthly_limit"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise InvalidConfigError(f"{name} must be a positive amount, got {value!r}")
        threshold = self.approval_threshold
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or threshold < 0:
            raise InvalidConfigError(f"approval_threshold must be non-negative, got {threshold!r}")
        for name in ("requires_approval", "auto_reset_daily", "auto_reset_monthly"):
            if not isinstance(getattr(self, name), bool):
                raise InvalidConfigError(f"{name} must be a boolean")

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> SpendLimitConfig:
        """Build from a stored blob, filling missing keys with defaults."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class SpendWindow:
    """Accumulated spend for one window plus the limit it was opened with."""

    amount_micros: int
    limit_micros: int
    reset_date: str

    @property
    def remaining_micros(self) -> int:
        return self.limit_micros - self.amount_micros

    @property
    def amount_usd(self) -> float:
        return micros_to_usd_float(self.amount_micros)

    @property
    def limit_usd(self) -> float:
        return micros_to_usd_float(self.limit_micros)

    @classmethod
    def from_dict(cls, data: dict) -> SpendWindow:
        amount = int(data["amount_micros"])
        if amount < 0:
            raise ValueError(f"Window amount must not be negative, got {amount}")
        return cls(
            amount_micros=amount,
            limit_micros=int(data["limit_micros"]),
            reset_date=str(data["reset_date"]),
        )


@dataclass
class LastTransaction:
    amount_micros: int
    timestamp: float
    sub_account_id: Optional[str] = None

    @property
    def amount_usd(self) -> float:
        return micros_to_usd_float(self.amount_micros)

    @classmethod
    def from_dict(cls, data: dict) -> LastTransaction:
        sub_account_id = data.get("sub_account_id")
        return cls(
            amount_micros=int(data["amount_micros"]),
            timestamp=float(data["timestamp"]),
            sub_account_id=None if sub_account_id is None else str(sub_account_id),
        )


@dataclass
class SpendTracking:
    """Mutable counters for both windows."""

    daily: SpendWindow
    monthly: SpendWindow
    total_transactions: int = 0
    last_transaction: Optional[LastTransaction] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> SpendTracking:
        last = data.get("last_transaction")
        return cls(
            daily=SpendWindow.from_dict(data["daily"]),
            monthly=SpendWindow.from_dict(data["monthly"]),
            total_transactions=int(data.get("total_transactions", 0)),
            last_transaction=LastTransaction.from_dict(last) if last else None,
        )


@dataclass
class SpendCheck:
    """Outcome of ``BudgetTracker.can_spend``. Remaining amounts are USD."""

    allowed: bool
    daily_remaining: float
    monthly_remaining: float
    reason: Optional[str] = None
    requires_approval: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class BudgetTracker:
    """
    Tracks spend against daily and monthly limits.

    Limits and counters are read from the store on every call and written
    back on every mutation, so two trackers over one store stay in step.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Optional[Clock] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.audit = audit
        self._config = self._load_config()

    # ── persistence ────────────────────────────────────────────────

    def _load_config(self) -> SpendLimitConfig:
        try:
            data = read_json(self.store, CONFIG_KEY)
            if data is not None:
                return SpendLimitConfig.from_dict(data)
        except (CorruptBlobError, AttributeError, TypeError, ValueError) as exc:
            logger.warning("Discarding malformed spend limit config: %s", exc)
        return SpendLimitConfig()

    def _save_config(self) -> None:
        write_json(self.store, CONFIG_KEY, self._config.to_dict())

    def _fresh_window(self, window_id: str, limit_usd: float) -> SpendWindow:
        return SpendWindow(
            amount_micros=0,
            limit_micros=limit_usd_to_micros(limit_usd),
            reset_date=window_id,
        )

    def _default_tracking(self) -> SpendTracking:
        today = self.clock.today()
        return SpendTracking(
            daily=self._fresh_window(daily_window_id(today), self._config.daily_limit),
            monthly=self._fresh_window(monthly_window_id(today), self._config.monthly_limit),
        )

    def _load_tracking(self) -> SpendTracking:
        """Read config and tracking state, resetting stale windows before returning."""
        self._config = self._load_config()
        tracking: Optional[SpendTracking] = None
        try:
            data = read_json(self.store, TRACKING_KEY)
            if data is not None:
                tracking = SpendTracking.from_dict(data)
        except (CorruptBlobError, AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Discarding malformed spend tracking: %s", exc)

        if tracking is None:
            tracking = self._default_tracking()
            self._save_tracking(tracking)
            return tracking

        if self._roll_windows(tracking):
            self._save_tracking(tracking)
        return tracking

    def _roll_windows(self, tracking: SpendTracking) -> bool:
        today = self.clock.today()
        changed = False

        current_day = daily_window_id(today)
        if self._config.auto_reset_daily and tracking.daily.reset_date != current_day:
            logger.info(
                "Daily window rolled over: %s -> %s (spent %s)",
                tracking.daily.reset_date,
                current_day,
                format_usd_from_micros(tracking.daily.amount_micros),
            )
            self._audit_reset("daily", tracking.daily, current_day, manual=False)
            tracking.daily = self._fresh_window(current_day, self._config.daily_limit)
            changed = True

        current_month = monthly_window_id(today)
        if self._config.auto_reset_monthly and tracking.monthly.reset_date != current_month:
            logger.info(
                "Monthly window rolled over: %s -> %s (spent %s)",
                tracking.monthly.reset_date,
                current_month,
                format_usd_from_micros(tracking.monthly.amount_micros),
            )
            self._audit_reset("monthly", tracking.monthly, current_month, manual=False)
            tracking.monthly = self._fresh_window(current_month, self._config.monthly_limit)
            changed = True

        return changed

    def _save_tracking(self, tracking: SpendTracking) -> None:
        write_json(self.store, TRACKING_KEY, tracking.to_dict())

    def _audit_reset(self, window: str, old: SpendWindow, new_id: str, manual: bool) -> None:
        if self.audit is None:
            return
        self.audit.log(
            EventType.WINDOW_RESET,
            amount_usd=old.amount_usd,
            details={
                "window": window,
                "previous_reset_date": old.reset_date,
                "reset_date": new_id,
                "manual": manual,
            },
        )

    # ── public API ─────────────────────────────────────────────────

    def get_config(self) -> SpendLimitConfig:
        self._config = self._load_config()
        return replace(self._config)

    def update_config(self, **changes) -> SpendLimitConfig:
        """Merge ``changes`` into the config and apply new limits to the open windows."""
        known = {f.name for f in fields(SpendLimitConfig)}
        unknown = set(changes) - known
        if unknown:
            raise InvalidConfigError(f"Unknown spend limit settings: {', '.join(sorted(unknown))}")

        self._config = replace(self._load_config(), **changes)
        self._save_config()

        tracking = self._load_tracking()
        tracking.daily.limit_micros = limit_usd_to_micros(self._config.daily_limit)
        tracking.monthly.limit_micros = limit_usd_to_micros(self._config.monthly_limit)
        self._save_tracking(tracking)

        logger.info("Spend limits updated: %s", changes)
        if self.audit is not None:
            self.audit.log(EventType.LIMITS_UPDATED, details=self._config.to_dict())
        return self.get_config()

    def get_tracking(self) -> SpendTracking:
        return self._load_tracking()

    def can_spend(self, amount: Amount) -> SpendCheck:
        """Check ``amount`` against remaining daily and monthly headroom."""
        tracking = self._load_tracking()
        amount_micros = amount_usd_to_micros(amount)
        daily_remaining = tracking.daily.remaining_micros
        monthly_remaining = tracking.monthly.remaining_micros

        def result(allowed: bool, reason: Optional[str] = None, requires_approval: bool = False) -> SpendCheck:
            check = SpendCheck(
                allowed=allowed,
                daily_remaining=micros_to_usd_float(daily_remaining),
                monthly_remaining=micros_to_usd_float(monthly_remaining),
                reason=reason,
                requires_approval=requires_approval,
            )
            if self.audit is not None:
                self.audit.log(
                    EventType.SPEND_CHECKED if allowed else EventType.SPEND_DENIED,
                    amount_usd=micros_to_usd_float(amount_micros),
                    success=allowed,
                    reason=reason,
                )
            return check

        if amount_micros < 0:
            return result(False, "Amount must not be negative")

        if amount_micros > daily_remaining:
            return result(
                False,
                f"Amount exceeds daily limit. Remaining: {format_usd_from_micros(daily_remaining)}",
            )

        if amount_micros > monthly_remaining:
            return result(
                False,
                f"Amount exceeds monthly limit. Remaining: {format_usd_from_micros(monthly_remaining)}",
            )

        threshold_micros = limit_usd_to_micros(self._config.approval_threshold)
        if self._config.requires_approval and amount_micros > threshold_micros:
            return result(
                False,
                f"Amount requires approval (threshold: {format_usd_from_micros(threshold_micros)})",
                requires_approval=True,
            )

        return result(True)

    def record_spend(self, amount: Amount, sub_account_id: Optional[str] = None) -> SpendTracking:
        """
        Add a completed spend to both windows.

        Limits are not re-checked: the caller authorized this spend already,
        possibly through an approved permission request above the threshold.
        """
        amount_micros = amount_usd_to_micros(amount)
        if amount_micros < 0:
            raise ValueError(f"Cannot record a negative spend: {amount}")

        tracking = self._load_tracking()
        tracking.daily.amount_micros += amount_micros
        tracking.monthly.amount_micros += amount_micros
        tracking.total_transactions += 1
        tracking.last_transaction = LastTransaction(
            amount_micros=amount_micros,
            timestamp=self.clock.now(),
            sub_account_id=sub_account_id,
        )
        self._save_tracking(tracking)

        logger.info(
            "Spend recorded: %s (daily %s, monthly %s, sub-account %s)",
            format_usd_from_micros(amount_micros),
            format_usd_from_micros(tracking.daily.amount_micros),
            format_usd_from_micros(tracking.monthly.amount_micros),
            sub_account_id or "-",
        )
        if self.audit is not None:
            self.audit.log(
                EventType.SPEND_RECORDED,
                account_id=sub_account_id,
                amount_usd=micros_to_usd_float(amount_micros),
                details={"total_transactions": tracking.total_transactions},
            )
        return tracking

    def reset_daily(self) -> SpendTracking:
        """Administrative reset of the daily window."""
        tracking = self._load_tracking()
        current = daily_window_id(self.clock.today())
        self._audit_reset("daily", tracking.daily, current, manual=True)
        tracking.daily.amount_micros = 0
        tracking.daily.reset_date = current
        self._save_tracking(tracking)
        logger.info("Daily window reset manually")
        return tracking

    def reset_monthly(self) -> SpendTracking:
        """Administrative reset of the monthly window."""
        tracking = self._load_tracking()
        current = monthly_window_id(self.clock.today())
        self._audit_reset("monthly", tracking.monthly, current, manual=True)
        tracking.monthly.amount_micros = 0
        tracking.monthly.reset_date = current
        self._save_tracking(tracking)
        logger.info("Monthly window reset manually")
        return tracking

    def get_spend_status(self) -> dict:
        """Usage per window, for display."""
        tracking = self._load_tracking()

        def window_status(window: SpendWindow) -> dict:
            percentage = (
                round(window.amount_micros / window.limit_micros * 100, 2)
                if window.limit_micros > 0
                else None
            )
            return {
                "spent": window.amount_usd,
                "limit": window.limit_usd,
                "remaining": micros_to_usd_float(window.remaining_micros),
                "percentage": percentage,
                "reset_date": window.reset_date,
            }

        return {
            "daily": window_status(tracking.daily),
            "monthly": window_status(tracking.monthly),
            "total_transactions": tracking.total_transactions,
        }
