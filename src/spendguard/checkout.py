"""
Checkout orchestration over the policy components.

Flow:
1. Check the recipient lists and the daily/monthly headroom
2. Above the approval threshold, require a covering permission request
3. Pick the funding source: auto-spend sub-account or primary account
4. Submit the transfer
5. Record the spend and audit
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .accounts import SubAccount, SubAccountProvider
from .audit import AuditTrail, EventType
from .auto_spend import AutoSpendArbiter
from .budget import BudgetTracker
from .errors import ExecutionError
from .execution import TransferExecutor
from .money import Amount, amount_usd_to_micros, micros_to_usd_float
from .permissions import PermissionLedger

logger = logging.getLogger(__name__)


PRIMARY_ACCOUNT_ID = "primary"


@dataclass
class CheckoutRequest:
    """A payment the checkout wants to make."""

    amount_usd: Amount
    recipient_address: str
    purpose: str = ""
    sub_account_id: Optional[str] = None
    request_permission: bool = True


@dataclass
class CheckoutResult:
    """Result of an authorization or payment attempt."""

    success: bool
    reason: Optional[str] = None
    transaction_hash: Optional[str] = None
    requires_approval: bool = False
    pending_request_id: Optional[str] = None
    funded_by: Optional[str] = None
    amount_usd: float = 0.0
    daily_remaining: Optional[float] = None
    monthly_remaining: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "reason": self.reason,
            "transaction_hash": self.transaction_hash,
            "requires_approval": self.requires_approval,
            "pending_request_id": self.pending_request_id,
            "funded_by": self.funded_by,
            "amount_usd": self.amount_usd,
            "daily_remaining": self.daily_remaining,
            "monthly_remaining": self.monthly_remaining,
        }


class CheckoutExecutor:
    """Runs a payment through budget, permission and auto-spend policy."""

    def __init__(
        self,
        budget: BudgetTracker,
        ledger: PermissionLedger,
        arbiter: AutoSpendArbiter,
        executor: TransferExecutor,
        sub_accounts: Optional[SubAccountProvider] = None,
        primary_address: Optional[str] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.budget = budget
        self.ledger = ledger
        self.arbiter = arbiter
        self.executor = executor
        self.sub_accounts = sub_accounts
        self.primary_address = primary_address
        self.audit = audit

    def _funding_sub_account_id(self, request: CheckoutRequest) -> Optional[str]:
        if request.sub_account_id is not None:
            return request.sub_account_id
        config = self.arbiter.get_config()
        if config is not None and config.enabled:
            return config.sub_account_id
        return None

    def _fail(self, request: CheckoutRequest, result: CheckoutResult) -> CheckoutResult:
        logger.info("Checkout to %s not completed: %s", request.recipient_address, result.reason)
        if self.audit is not None:
            self.audit.log(
                EventType.CHECKOUT_FAILED,
                request_id=result.pending_request_id,
                account_id=result.funded_by,
                amount_usd=result.amount_usd,
                recipient=request.recipient_address,
                success=False,
                reason=result.reason,
            )
        return result

    def authorize(self, request: CheckoutRequest) -> CheckoutResult:
        """Run the budget and permission checks without paying."""
        amount_usd = micros_to_usd_float(amount_usd_to_micros(request.amount_usd))
        account_id = self._funding_sub_account_id(request) or PRIMARY_ACCOUNT_ID

        check = self.budget.can_spend(amount_usd)
        base = dict(
            amount_usd=amount_usd,
            daily_remaining=check.daily_remaining,
            monthly_remaining=check.monthly_remaining,
        )
        recipients = self.ledger.get_config()
        if recipients.is_blocked(request.recipient_address):
            return CheckoutResult(success=False, reason="Recipient address is blocked", **base)
        if not recipients.is_allowed(request.recipient_address):
            return CheckoutResult(success=False, reason="Recipient address is not in allowed list", **base)

        if check.allowed:
            return CheckoutResult(success=True, **base)
        if not check.requires_approval:
            return CheckoutResult(success=False, reason=check.reason, **base)

        permission = self.ledger.can_spend(account_id, amount_usd, request.recipient_address)
        if permission.allowed:
            return CheckoutResult(success=True, **base)
        if permission.pending_request_id is not None or not request.request_permission:
            return CheckoutResult(
                success=False,
                reason=permission.reason,
                requires_approval=True,
                pending_request_id=permission.pending_request_id,
                **base,
            )

        filed = self.ledger.request_permission(
            account_id,
            amount_usd,
            request.recipient_address,
            request.purpose,
        )
        if not filed.success:
            return CheckoutResult(success=False, reason=filed.error, requires_approval=True, **base)
        if filed.auto_approved:
            return CheckoutResult(success=True, **base)
        return CheckoutResult(
            success=False,
            reason="Permission requested; waiting for approval",
            requires_approval=True,
            pending_request_id=filed.request_id,
            **base,
        )

    def pay(self, request: CheckoutRequest) -> CheckoutResult:
        """Authorize, submit, and record a payment."""
        authorization = self.authorize(request)
        if not authorization.success:
            return self._fail(request, authorization)

        amount_usd = authorization.amount_usd
        sub_account_id = self._funding_sub_account_id(request)

        if sub_account_id is not None:
            sub_account: Optional[SubAccount] = (
                self.sub_accounts.get_sub_account(sub_account_id) if self.sub_accounts else None
            )
            if sub_account is None:
                authorization.success = False
                authorization.reason = f"Sub-account not found: {sub_account_id}"
                return self._fail(request, authorization)

            spent = self.arbiter.process_auto_spend(
                amount_usd,
                request.recipient_address,
                sub_account,
                self.executor,
            )
            authorization.funded_by = sub_account.id
            success, tx_hash, error = spent.success, spent.transaction_hash, spent.error
        elif self.primary_address is not None:
            authorization.funded_by = PRIMARY_ACCOUNT_ID
            try:
                outcome = self.executor.submit_transfer(
                    self.primary_address, request.recipient_address, amount_usd
                )
                success, tx_hash, error = outcome.success, outcome.transaction_hash, outcome.error
            except ExecutionError as e:
                success, tx_hash, error = False, None, str(e)
            except Exception as e:
                logger.exception("Transfer executor raised unexpectedly")
                success, tx_hash, error = False, None, f"Transfer failed: {type(e).__name__}: {e}"
        else:
            authorization.success = False
            authorization.reason = "No funding source available"
            return self._fail(request, authorization)

        if not success:
            authorization.success = False
            authorization.reason = error or "Transfer failed"
            return self._fail(request, authorization)

        tracking = self.budget.record_spend(amount_usd, sub_account_id)
        authorization.transaction_hash = tx_hash
        authorization.daily_remaining = micros_to_usd_float(tracking.daily.remaining_micros)
        authorization.monthly_remaining = micros_to_usd_float(tracking.monthly.remaining_micros)

        logger.info(
            "Checkout completed: $%.2f to %s via %s (%s)",
            amount_usd,
            request.recipient_address,
            authorization.funded_by,
            tx_hash,
        )
        if self.audit is not None:
            self.audit.log(
                EventType.CHECKOUT_COMPLETED,
                account_id=authorization.funded_by,
                amount_usd=amount_usd,
                recipient=request.recipient_address,
                details={"transaction_hash": tx_hash},
            )
        return authorization
