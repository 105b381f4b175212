"""
Auto-spend: paying from a sub-account without interactive confirmation.

Eligibility takes four independent gates: the policy must be enabled and
the sub-account active; the amount must fit the sub-account's remaining
daily allowance; it must not need approval; and it must not exceed the
global auto-spend ceiling. Any one failing denies.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from typing import Optional

from .accounts import SubAccount
from .audit import AuditTrail, EventType
from .errors import CorruptBlobError, ExecutionError, InvalidConfigError
from .execution import TransferExecutor
from .money import (
    Amount,
    amount_usd_to_micros,
    format_usd_from_micros,
    limit_usd_to_micros,
    micros_to_usd_float,
)
from .storage import KeyValueStore, read_json, write_json

logger = logging.getLogger(__name__)


CONFIG_KEY = "auto_spend_config"

# Amount get_auto_spend_status checks eligibility with.
STATUS_CHECK_USD = 1.0


@dataclass
class AutoSpendConfig:
    enabled: bool
    sub_account_id: str
    max_amount: float
    requires_approval: bool = False
    approval_threshold: float = 0.0

    def __post_init__(self):
        for name in ("enabled", "requires_approval"):
            if not isinstance(getattr(self, name), bool):
                raise InvalidConfigError(f"{name} must be a boolean")
        for name in ("max_amount", "approval_threshold"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise InvalidConfigError(f"{name} must be a non-negative amount, got {value!r}")

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> AutoSpendConfig:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class AutoSpendResult:
    success: bool
    transaction_hash: Optional[str] = None
    error: Optional[str] = None
    used_sub_account: Optional[SubAccount] = None


@dataclass
class AutoSpendStatus:
    """Diagnostic view only. Real spends go through ``can_auto_spend``."""

    can_auto_spend: bool
    remaining_today: float
    max_auto_spend: float
    requires_approval: bool


class AutoSpendArbiter:
    """Final go/no-go for sub-account funded payments."""

    def __init__(self, store: KeyValueStore, audit: Optional[AuditTrail] = None):
        self.store = store
        self.audit = audit

    def _load_config(self) -> Optional[AutoSpendConfig]:
        try:
            data = read_json(self.store, CONFIG_KEY)
            if data is not None:
                return AutoSpendConfig.from_dict(data)
        except (CorruptBlobError, AttributeError, TypeError, ValueError) as exc:
            logger.warning("Discarding malformed auto-spend config: %s", exc)
        return None

    def set_config(self, config: AutoSpendConfig) -> None:
        write_json(self.store, CONFIG_KEY, config.to_dict())
        logger.info(
            "Auto-spend config set: enabled=%s sub-account=%s max=$%.2f",
            config.enabled,
            config.sub_account_id,
            config.max_amount,
        )

    def get_config(self) -> Optional[AutoSpendConfig]:
        return self._load_config()

    def is_enabled(self) -> bool:
        config = self._load_config()
        return config is not None and config.enabled

    def reset_config(self) -> None:
        self.store.delete(CONFIG_KEY)
        logger.info("Auto-spend config cleared")

    def _denial_reason(self, amount_micros: int, sub_account: SubAccount) -> Optional[str]:
        config = self._load_config()
        if config is None or not config.enabled:
            return "Auto-spend is disabled"
        if not sub_account.is_active:
            return f"Sub-account {sub_account.name} is inactive"
        if sub_account.remaining_today_micros < amount_micros:
            return (
                f"Amount exceeds sub-account daily allowance. "
                f"Remaining: {format_usd_from_micros(sub_account.remaining_today_micros)}"
            )
        if config.requires_approval and amount_micros > limit_usd_to_micros(config.approval_threshold):
            return "Amount requires approval"
        if amount_micros > limit_usd_to_micros(config.max_amount):
            return (
                f"Amount exceeds auto-spend maximum "
                f"{format_usd_from_micros(limit_usd_to_micros(config.max_amount))}"
            )
        return None

    def can_auto_spend(self, amount: Amount, sub_account: SubAccount) -> bool:
        return self._denial_reason(amount_usd_to_micros(amount), sub_account) is None

    def process_auto_spend(
        self,
        amount: Amount,
        recipient_address: str,
        sub_account: SubAccount,
        executor: TransferExecutor,
    ) -> AutoSpendResult:
        """
        Re-check eligibility and submit the transfer from the sub-account.

        Nothing is persisted here; the caller reports a successful spend to
        the budget tracker.
        """
        amount_micros = amount_usd_to_micros(amount)
        amount_usd = micros_to_usd_float(amount_micros)
        logger.info(
            "Processing auto-spend from %s: %s to %s",
            sub_account.name,
            format_usd_from_micros(amount_micros),
            recipient_address,
        )

        reason = self._denial_reason(amount_micros, sub_account)
        if reason is not None:
            logger.info("Auto-spend denied for %s: %s", sub_account.name, reason)
            return AutoSpendResult(
                success=False,
                error=f"Auto-spend not available for this transaction: {reason}",
            )

        try:
            outcome = executor.submit_transfer(sub_account.address, recipient_address, amount_usd)
        except ExecutionError as e:
            outcome_error = str(e)
        except Exception as e:
            logger.exception("Auto-spend executor raised unexpectedly")
            outcome_error = f"Auto-spend processing failed: {type(e).__name__}: {e}"
        else:
            if self.audit is not None:
                self.audit.log(
                    EventType.AUTO_SPEND_EXECUTED if outcome.success else EventType.AUTO_SPEND_FAILED,
                    account_id=sub_account.id,
                    amount_usd=amount_usd,
                    recipient=recipient_address,
                    success=outcome.success,
                    reason=outcome.error,
                    details={"transaction_hash": outcome.transaction_hash},
                )
            if outcome.success:
                logger.info("Auto-spend successful from %s: %s", sub_account.name, outcome.transaction_hash)
            return AutoSpendResult(
                success=outcome.success,
                transaction_hash=outcome.transaction_hash,
                error=outcome.error,
                used_sub_account=sub_account,
            )

        logger.warning("Auto-spend failed from %s: %s", sub_account.name, outcome_error)
        if self.audit is not None:
            self.audit.log(
                EventType.AUTO_SPEND_FAILED,
                account_id=sub_account.id,
                amount_usd=amount_usd,
                recipient=recipient_address,
                success=False,
                reason=outcome_error,
            )
        return AutoSpendResult(success=False, error=outcome_error, used_sub_account=sub_account)

    def get_auto_spend_status(self, sub_account: SubAccount) -> AutoSpendStatus:
        config = self._load_config()
        return AutoSpendStatus(
            can_auto_spend=self.can_auto_spend(STATUS_CHECK_USD, sub_account),
            remaining_today=sub_account.remaining_today,
            max_auto_spend=config.max_amount if config else 0.0,
            requires_approval=config.requires_approval if config else False,
        )
