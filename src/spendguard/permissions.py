"""
Permission requests for spends above the auto-approval threshold.

A request is created pending (or approved outright when small enough) and
moves at most once, to approved, rejected or expired. Expiry is detected
lazily: by ``approve_request`` and ``cleanup_expired_requests``, and by the
unexpired filters used for matching and pending counts.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Iterable, Optional

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


CONFIG_KEY = "permission_approval_config"
REQUESTS_KEY = "permission_requests"

SYSTEM_APPROVER = "system"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING

    def can_transition_to(self, target: RequestStatus) -> bool:
        return self is RequestStatus.PENDING and target.is_terminal


def normalize_recipient(address: str) -> str:
    return address.strip().lower()


@dataclass
class ApprovalConfig:
    """Approval policy. Recipient lists hold lower-cased addresses."""

    auto_approve_threshold: float = 5.0
    max_pending_requests: int = 10
    request_expiry_hours: float = 24.0
    require_approval_for_sub_accounts: bool = True
    allowed_recipients: list[str] = field(default_factory=list)
    blocked_recipients: list[str] = field(default_factory=list)

    def __post_init__(self):
        threshold = self.auto_approve_threshold
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or threshold < 0:
            raise InvalidConfigError(f"auto_approve_threshold must be non-negative, got {threshold!r}")
        if isinstance(self.max_pending_requests, bool) or not isinstance(self.max_pending_requests, int) \
                or self.max_pending_requests < 0:
            raise InvalidConfigError(
                f"max_pending_requests must be a non-negative integer, got {self.max_pending_requests!r}"
            )
        hours = self.request_expiry_hours
        if isinstance(hours, bool) or not isinstance(hours, (int, float)) or hours <= 0:
            raise InvalidConfigError(f"request_expiry_hours must be positive, got {hours!r}")
        if not isinstance(self.require_approval_for_sub_accounts, bool):
            raise InvalidConfigError("require_approval_for_sub_accounts must be a boolean")
        self.allowed_recipients = _normalize_list(self.allowed_recipients, "allowed_recipients")
        self.blocked_recipients = _normalize_list(self.blocked_recipients, "blocked_recipients")

    def is_blocked(self, recipient: str) -> bool:
        return normalize_recipient(recipient) in self.blocked_recipients

    def is_allowed(self, recipient: str) -> bool:
        if not self.allowed_recipients:
            return True
        return normalize_recipient(recipient) in self.allowed_recipients

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> ApprovalConfig:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def _optional(convert, value):
    return None if value is None else convert(value)


def _normalize_list(values: Iterable[str], name: str) -> list[str]:
    if isinstance(values, str):
        raise InvalidConfigError(f"{name} must be a list of addresses, not a string")
    return sorted({normalize_recipient(v) for v in values if str(v).strip()})


@dataclass
class PermissionRequest:
    """One spend authorization and its outcome."""

    id: str
    sub_account_id: str
    amount_micros: int
    recipient_address: str
    purpose: str
    requested_at: float
    expires_at: float
    status: RequestStatus = RequestStatus.PENDING
    approved_at: Optional[float] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[float] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None

    @property
    def amount_usd(self) -> float:
        return micros_to_usd_float(self.amount_micros)

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def matches(self, sub_account_id: str, amount_micros: int, recipient_address: str) -> bool:
        return (
            self.sub_account_id == sub_account_id
            and self.amount_micros == amount_micros
            and normalize_recipient(self.recipient_address) == normalize_recipient(recipient_address)
        )

    def transition(self, target: RequestStatus) -> None:
        if not self.status.can_transition_to(target):
            raise ValueError(f"Cannot move request {self.id} from {self.status.value} to {target.value}")
        self.status = target

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, data: dict) -> PermissionRequest:
        amount_micros = int(data["amount_micros"])
        if amount_micros < 0:
            raise ValueError(f"Request amount must not be negative, got {amount_micros}")
        return cls(
            id=str(data["id"]),
            sub_account_id=str(data["sub_account_id"]),
            amount_micros=amount_micros,
            recipient_address=str(data["recipient_address"]),
            purpose=str(data.get("purpose") or ""),
            requested_at=float(data["requested_at"]),
            expires_at=float(data["expires_at"]),
            status=RequestStatus(data.get("status", RequestStatus.PENDING.value)),
            approved_at=_optional(float, data.get("approved_at")),
            approved_by=_optional(str, data.get("approved_by")),
            rejected_at=_optional(float, data.get("rejected_at")),
            rejected_by=_optional(str, data.get("rejected_by")),
            rejection_reason=_optional(str, data.get("rejection_reason")),
        )


@dataclass
class PermissionResult:
    success: bool
    request_id: Optional[str] = None
    auto_approved: Optional[bool] = None
    error: Optional[str] = None


@dataclass
class ActionResult:
    success: bool
    error: Optional[str] = None


@dataclass
class PermissionCheck:
    allowed: bool
    requires_approval: bool
    reason: Optional[str] = None
    pending_request_id: Optional[str] = None


class PermissionLedger:
    """Owns permission requests for their whole lifecycle."""

    def __init__(
        self,
        store: KeyValueStore,
        clock: Optional[Clock] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.audit = audit

    def _load_config(self) -> ApprovalConfig:
        try:
            data = read_json(self.store, CONFIG_KEY)
            if data is not None:
                return ApprovalConfig.from_dict(data)
        except (CorruptBlobError, AttributeError, TypeError, ValueError) as exc:
            logger.warning("Discarding malformed permission approval config: %s", exc)
        return ApprovalConfig()

    def _load_requests(self) -> list[PermissionRequest]:
        try:
            data = read_json(self.store, REQUESTS_KEY)
            if data is None:
                return []
            return [PermissionRequest.from_dict(item) for item in data]
        except (CorruptBlobError, AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Discarding malformed permission requests: %s", exc)
            return []

    def _save_requests(self, requests: list[PermissionRequest]) -> None:
        write_json(self.store, REQUESTS_KEY, [r.to_dict() for r in requests])

    def _log(self, event_type: EventType, request: PermissionRequest, **kwargs) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event_type,
            request_id=request.id,
            account_id=request.sub_account_id,
            amount_usd=request.amount_usd,
            recipient=request.recipient_address,
            **kwargs,
        )

    def _new_request_id(self) -> str:
        return f"req_{int(self.clock.now() * 1000)}_{secrets.token_hex(5)}"

    # ── configuration ──────────────────────────────────────────────

    def get_config(self) -> ApprovalConfig:
        return self._load_config()

    def update_config(self, **changes) -> ApprovalConfig:
        known = {f.name for f in fields(ApprovalConfig)}
        unknown = set(changes) - known
        if unknown:
            raise InvalidConfigError(f"Unknown approval settings: {', '.join(sorted(unknown))}")
        config = replace(self._load_config(), **changes)
        write_json(self.store, CONFIG_KEY, config.to_dict())
        logger.info("Permission approval config updated: %s", changes)
        return config

    # ── queries ────────────────────────────────────────────────────

    def get_requests(self) -> list[PermissionRequest]:
        return self._load_requests()

    def get_pending_requests(self) -> list[PermissionRequest]:
        """Pending requests that have not yet expired."""
        now = self.clock.now()
        return [
            r for r in self._load_requests()
            if r.status is RequestStatus.PENDING and not r.is_expired(now)
        ]

    def get_request(self, request_id: str) -> Optional[PermissionRequest]:
        for request in self._load_requests():
            if request.id == request_id:
                return request
        return None

    def get_stats(self) -> dict:
        requests = self._load_requests()
        stats = {"total": len(requests)}
        for status in RequestStatus:
            stats[status.value] = 0
        for request in requests:
            stats[request.status.value] += 1
        return stats

    # ── lifecycle ──────────────────────────────────────────────────

    def request_permission(
        self,
        sub_account_id: str,
        amount: Amount,
        recipient_address: str,
        purpose: str,
    ) -> PermissionResult:
        """File a request, approving it on the spot when under the auto threshold."""
        config = self._load_config()
        amount_micros = amount_usd_to_micros(amount)

        denial: Optional[str] = None
        if amount_micros < 0:
            denial = "Amount must not be negative"
        elif config.is_blocked(recipient_address):
            denial = "Recipient address is blocked"
        elif not config.is_allowed(recipient_address):
            denial = "Recipient address is not in allowed list"
        elif len(self.get_pending_requests()) >= config.max_pending_requests:
            denial = "Too many pending requests. Please wait for some to be processed."

        if denial is not None:
            logger.info("Permission request denied for %s: %s", sub_account_id, denial)
            if self.audit is not None:
                self.audit.log(
                    EventType.PERMISSION_DENIED,
                    account_id=sub_account_id,
                    amount_usd=micros_to_usd_float(amount_micros),
                    recipient=recipient_address,
                    success=False,
                    reason=denial,
                )
            return PermissionResult(success=False, error=denial)

        now = self.clock.now()
        auto_approved = amount_micros <= limit_usd_to_micros(config.auto_approve_threshold)
        request = PermissionRequest(
            id=self._new_request_id(),
            sub_account_id=sub_account_id,
            amount_micros=amount_micros,
            recipient_address=recipient_address,
            purpose=purpose,
            requested_at=now,
            expires_at=now + config.request_expiry_hours * 3600,
        )
        if auto_approved:
            request.transition(RequestStatus.APPROVED)
            request.approved_at = now
            request.approved_by = SYSTEM_APPROVER

        requests = self._load_requests()
        requests.append(request)
        self._save_requests(requests)

        logger.info(
            "Permission request %s %s: %s to %s for %s",
            request.id,
            "auto-approved" if auto_approved else "created",
            format_usd_from_micros(amount_micros),
            recipient_address,
            sub_account_id,
        )
        self._log(
            EventType.PERMISSION_AUTO_APPROVED if auto_approved else EventType.PERMISSION_REQUESTED,
            request,
            details={"purpose": purpose, "expires_at": request.expires_at},
        )
        return PermissionResult(success=True, request_id=request.id, auto_approved=auto_approved)

    def approve_request(self, request_id: str, approved_by: str) -> ActionResult:
        requests = self._load_requests()
        request = next((r for r in requests if r.id == request_id), None)
        if request is None:
            return ActionResult(success=False, error="Request not found")
        if request.status is not RequestStatus.PENDING:
            return ActionResult(success=False, error="Request is not pending")

        now = self.clock.now()
        if request.is_expired(now):
            request.transition(RequestStatus.EXPIRED)
            self._save_requests(requests)
            logger.info("Permission request %s expired before approval", request_id)
            self._log(EventType.PERMISSION_EXPIRED, request, success=False, reason="Request has expired")
            return ActionResult(success=False, error="Request has expired")

        request.transition(RequestStatus.APPROVED)
        request.approved_at = now
        request.approved_by = approved_by
        self._save_requests(requests)

        logger.info("Permission request %s approved by %s", request_id, approved_by)
        self._log(EventType.PERMISSION_APPROVED, request, details={"approved_by": approved_by})
        return ActionResult(success=True)

    def reject_request(self, request_id: str, rejected_by: str, reason: str) -> ActionResult:
        requests = self._load_requests()
        request = next((r for r in requests if r.id == request_id), None)
        if request is None:
            return ActionResult(success=False, error="Request not found")
        if request.status is not RequestStatus.PENDING:
            return ActionResult(success=False, error="Request is not pending")

        request.transition(RequestStatus.REJECTED)
        request.rejected_at = self.clock.now()
        request.rejected_by = rejected_by
        request.rejection_reason = reason
        self._save_requests(requests)

        logger.info("Permission request %s rejected by %s: %s", request_id, rejected_by, reason)
        self._log(
            EventType.PERMISSION_REJECTED,
            request,
            reason=reason,
            details={"rejected_by": rejected_by},
        )
        return ActionResult(success=True)

    def can_spend(self, sub_account_id: str, amount: Amount, recipient_address: str) -> PermissionCheck:
        """Decide whether a spend is covered by the threshold or an approved request."""
        amount_micros = amount_usd_to_micros(amount)
        if amount_micros < 0:
            return PermissionCheck(allowed=False, requires_approval=False, reason="Amount must not be negative")

        config = self._load_config()
        if amount_micros <= limit_usd_to_micros(config.auto_approve_threshold):
            return PermissionCheck(allowed=True, requires_approval=False)

        now = self.clock.now()
        live = [
            r for r in self._load_requests()
            if not r.is_expired(now) and r.matches(sub_account_id, amount_micros, recipient_address)
        ]

        if any(r.status is RequestStatus.APPROVED for r in live):
            return PermissionCheck(allowed=True, requires_approval=False)

        pending = next((r for r in live if r.status is RequestStatus.PENDING), None)
        if pending is not None:
            return PermissionCheck(
                allowed=False,
                requires_approval=True,
                reason="Request is pending approval",
                pending_request_id=pending.id,
            )

        if config.require_approval_for_sub_accounts:
            return PermissionCheck(
                allowed=False,
                requires_approval=True,
                reason="Approval required for this amount",
            )

        return PermissionCheck(allowed=True, requires_approval=False)

    def cleanup_expired_requests(self) -> int:
        """Mark pending requests past their expiry as expired. Returns how many changed."""
        now = self.clock.now()
        requests = self._load_requests()
        expired = []
        for request in requests:
            if request.status is RequestStatus.PENDING and request.is_expired(now):
                request.transition(RequestStatus.EXPIRED)
                expired.append(request)

        if expired:
            self._save_requests(requests)
            logger.info("Expired %d pending permission request(s)", len(expired))
            for request in expired:
                self._log(EventType.PERMISSION_EXPIRED, request, success=False, reason="Request has expired")
        return len(expired)
