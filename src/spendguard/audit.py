"""
Decision log for the spend-policy engine.

Tracker checks, window resets, permission request transitions, auto-spend
attempts and checkout outcomes are appended as JSON lines. Each line holds
the ``prev_hash`` of the line before it and an HMAC ``event_hash`` over its
own body, so an edited, dropped or reordered line fails verification.

Appends take an exclusive flock on the log and chain onto whatever line is
last on disk at that moment, so the CLI and a running checkout can write to
one file without forking the chain.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import json
import os
import secrets
from contextlib import contextmanager
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Iterator, Optional

from .clock import Clock, SystemClock
from .errors import AuditChainError
from .money import amount_usd_to_micros, micros_to_usd_float
from .storage import ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = Path.home() / ".spendguard" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".spendguard-secrets" / "audit_hmac.key"
KEY_ENV_VAR = "SPENDGUARD_AUDIT_HMAC_KEY"

_TAIL_CHUNK = 4096


class EventCategory(str, Enum):
    SPEND = "spend"
    LIMITS = "limits"
    PERMISSION = "permission"
    AUTO_SPEND = "auto_spend"
    CHECKOUT = "checkout"


class EventType(str, Enum):
    SPEND_CHECKED = "spend_checked"
    SPEND_DENIED = "spend_denied"
    SPEND_RECORDED = "spend_recorded"
    WINDOW_RESET = "window_reset"
    LIMITS_UPDATED = "limits_updated"
    PERMISSION_REQUESTED = "permission_requested"
    PERMISSION_DENIED = "permission_denied"
    PERMISSION_AUTO_APPROVED = "permission_auto_approved"
    PERMISSION_APPROVED = "permission_approved"
    PERMISSION_REJECTED = "permission_rejected"
    PERMISSION_EXPIRED = "permission_expired"
    AUTO_SPEND_EXECUTED = "auto_spend_executed"
    AUTO_SPEND_FAILED = "auto_spend_failed"
    CHECKOUT_COMPLETED = "checkout_completed"
    CHECKOUT_FAILED = "checkout_failed"

    @property
    def category(self) -> EventCategory:
        return _EVENT_CATEGORIES[self]


_EVENT_CATEGORIES = {
    EventType.SPEND_CHECKED: EventCategory.SPEND,
    EventType.SPEND_DENIED: EventCategory.SPEND,
    EventType.SPEND_RECORDED: EventCategory.SPEND,
    EventType.WINDOW_RESET: EventCategory.LIMITS,
    EventType.LIMITS_UPDATED: EventCategory.LIMITS,
    EventType.PERMISSION_REQUESTED: EventCategory.PERMISSION,
    EventType.PERMISSION_DENIED: EventCategory.PERMISSION,
    EventType.PERMISSION_AUTO_APPROVED: EventCategory.PERMISSION,
    EventType.PERMISSION_APPROVED: EventCategory.PERMISSION,
    EventType.PERMISSION_REJECTED: EventCategory.PERMISSION,
    EventType.PERMISSION_EXPIRED: EventCategory.PERMISSION,
    EventType.AUTO_SPEND_EXECUTED: EventCategory.AUTO_SPEND,
    EventType.AUTO_SPEND_FAILED: EventCategory.AUTO_SPEND,
    EventType.CHECKOUT_COMPLETED: EventCategory.CHECKOUT,
    EventType.CHECKOUT_FAILED: EventCategory.CHECKOUT,
}

# Request status each permission event leaves behind.
_REQUEST_STATUS_AFTER = {
    EventType.PERMISSION_REQUESTED.value: "pending",
    EventType.PERMISSION_AUTO_APPROVED.value: "approved",
    EventType.PERMISSION_APPROVED.value: "approved",
    EventType.PERMISSION_REJECTED.value: "rejected",
    EventType.PERMISSION_EXPIRED.value: "expired",
}


@dataclass
class AuditEvent:
    """One verified line of the decision log."""

    event_type: str
    timestamp: float
    request_id: Optional[str] = None
    account_id: Optional[str] = None
    amount_usd: Optional[float] = None
    recipient: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: str = ""
    event_hash: str = ""

    @property
    def category(self) -> EventCategory:
        return EventType(self.event_type).category

    @classmethod
    def from_record(cls, record: dict) -> AuditEvent:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in record.items() if k in known})

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


def load_audit_key(key_path: Path) -> bytes:
    """HMAC key from the environment, else from ``key_path`` (created on first use)."""
    env_key = os.getenv(KEY_ENV_VAR)
    if env_key:
        return env_key.encode()
    ensure_private_dir(key_path.parent)
    if key_path.exists() and key_path.stat().st_size > 0:
        return key_path.read_bytes().strip()
    key = secrets.token_hex(32).encode()
    key_path.write_bytes(key)
    ensure_private_file(key_path)
    return key


def _canonical(body: dict) -> bytes:
    return json.dumps(body, sort_keys=True, separators=(",", ":")).encode()


def _last_record(f: BinaryIO) -> Optional[dict]:
    """Decode the final line of ``f`` by reading backwards from the end."""
    f.seek(0, os.SEEK_END)
    pos = f.tell()
    buf = b""
    while pos > 0:
        step = min(_TAIL_CHUNK, pos)
        pos -= step
        f.seek(pos)
        buf = f.read(step) + buf
        body = buf.rstrip(b"\n")
        if b"\n" in body or pos == 0:
            last = body.rsplit(b"\n", 1)[-1]
            return json.loads(last) if last.strip() else None
    return None


class AuditTrail:
    """Tamper-evident decision log shared by the policy components."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
        clock: Optional[Clock] = None,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.clock = clock or SystemClock()
        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)
        self._key = load_audit_key(key_path or DEFAULT_AUDIT_KEY_PATH)

    def _sign(self, body: dict) -> str:
        return hmac.new(self._key, _canonical(body), hashlib.sha256).hexdigest()

    @contextmanager
    def _locked(self) -> Iterator[BinaryIO]:
        with open(self.path, "a+b") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                yield f
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def log(
        self,
        event_type: EventType,
        request_id: Optional[str] = None,
        account_id: Optional[str] = None,
        amount_usd: Optional[float] = None,
        recipient: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        body = {
            "event_type": event_type.value,
            "timestamp": self.clock.now(),
            "request_id": request_id,
            "account_id": account_id,
            "amount_usd": amount_usd,
            "recipient": recipient,
            "success": success,
            "reason": reason,
            "details": details,
        }
        body = {k: v for k, v in body.items() if v is not None}

        with self._locked() as f:
            try:
                tail = _last_record(f)
            except (ValueError, AttributeError) as exc:
                raise AuditChainError(0, f"unreadable last entry ({exc})") from exc
            body["prev_hash"] = tail.get("event_hash", "") if tail else ""
            record = dict(body, event_hash=self._sign(body))
            f.seek(0, os.SEEK_END)
            f.write(json.dumps(record, separators=(",", ":")).encode() + b"\n")
            f.flush()
            os.fsync(f.fileno())
        return AuditEvent.from_record(record)

    def _verified_records(self) -> Iterator[dict]:
        """Yield every record in order, raising ``AuditChainError`` on the first bad line."""
        expected_prev = ""
        with open(self.path, "rb") as f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                    body = {k: v for k, v in record.items() if k != "event_hash"}
                    event_hash = record["event_hash"]
                except (ValueError, KeyError, AttributeError) as exc:
                    raise AuditChainError(line_number, f"unreadable entry ({exc})") from exc
                if body.get("prev_hash", "") != expected_prev:
                    raise AuditChainError(line_number, "previous hash mismatch")
                if not hmac.compare_digest(self._sign(body), str(event_hash)):
                    raise AuditChainError(line_number, "event hash mismatch")
                expected_prev = event_hash
                yield record

    def read_events(
        self,
        request_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        account_id: Optional[str] = None,
        category: Optional[EventCategory] = None,
        since: Optional[float] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Most recent matching events, oldest first. The whole chain is verified."""
        events = []
        for record in self._verified_records():
            event = AuditEvent.from_record(record)
            if request_id is not None and event.request_id != request_id:
                continue
            if event_type is not None and event.event_type != event_type.value:
                continue
            if account_id is not None and event.account_id != account_id:
                continue
            if category is not None and event.category is not category:
                continue
            if since is not None and event.timestamp < since:
                continue
            events.append(event)
        return events[-limit:] if limit else events

    def summary(self, account_id: Optional[str] = None, since: Optional[float] = None) -> dict:
        """Counts per category plus recorded spend, denials and checkout outcomes."""
        events = self.read_events(account_id=account_id, since=since, limit=0)
        by_category = {c.value: 0 for c in EventCategory}
        recorded_micros = 0
        for event in events:
            by_category[event.category.value] += 1
            if event.event_type == EventType.SPEND_RECORDED.value and event.amount_usd is not None:
                recorded_micros += amount_usd_to_micros(event.amount_usd)
        return {
            "total_events": len(events),
            "by_category": by_category,
            "failures": sum(1 for e in events if not e.success),
            "recorded_spend_usd": micros_to_usd_float(recorded_micros),
            "recorded_spends": sum(1 for e in events if e.event_type == EventType.SPEND_RECORDED.value),
            "denied_checks": sum(1 for e in events if e.event_type == EventType.SPEND_DENIED.value),
            "checkouts_completed": sum(1 for e in events if e.event_type == EventType.CHECKOUT_COMPLETED.value),
            "checkouts_failed": sum(1 for e in events if e.event_type == EventType.CHECKOUT_FAILED.value),
            "last_event": events[-1].to_dict() if events else None,
        }

    def request_timeline(self, request_id: str) -> list[dict]:
        """Status changes of one permission request, with who made each one."""
        timeline = []
        for event in self.read_events(request_id=request_id, category=EventCategory.PERMISSION, limit=0):
            status = _REQUEST_STATUS_AFTER.get(event.event_type)
            if status is None:
                continue
            details = event.details or {}
            if event.event_type == EventType.PERMISSION_AUTO_APPROVED.value:
                actor = "system"
            else:
                actor = details.get("approved_by") or details.get("rejected_by")
            timeline.append({
                "status": status,
                "at": event.timestamp,
                "by": actor,
                "reason": event.reason,
            })
        return timeline
