"""Tests for tamper-evident audit trail behavior."""

import json
from datetime import datetime

import pytest

from spendguard.audit import AuditTrail, EventCategory, EventType
from spendguard.budget import BudgetTracker
from spendguard.clock import FixedClock
from spendguard.errors import AuditChainError
from spendguard.permissions import PermissionLedger
from spendguard.storage import MemoryStore


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 15, 12, 0))


@pytest.fixture
def trail(tmp_path, clock):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
        clock=clock,
    )


def test_audit_hash_chain_detects_tampering(tmp_path, trail):
    trail.log(EventType.PERMISSION_REQUESTED, request_id="req-1", success=True)
    trail.log(EventType.SPEND_RECORDED, request_id="req-1", success=True, amount_usd=0.5)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    first = json.loads(lines[0])
    first["amount_usd"] = 9999
    lines[0] = json.dumps(first, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="Audit chain broken"):
        trail.read_events()


def test_deleted_event_breaks_chain(tmp_path, trail):
    for n in range(3):
        trail.log(EventType.SPEND_CHECKED, amount_usd=float(n))

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    (tmp_path / "audit.jsonl").write_text("\n".join([lines[0], lines[2]]) + "\n")

    with pytest.raises(RuntimeError, match="previous hash mismatch"):
        trail.read_events()


def test_chain_continues_across_instances(tmp_path, trail, clock):
    trail.log(EventType.LIMITS_UPDATED)
    reopened = AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
        clock=clock,
    )
    reopened.log(EventType.WINDOW_RESET, reason="manual")
    assert [e.event_type for e in reopened.read_events()] == ["limits_updated", "window_reset"]


def test_filters(trail, clock):
    trail.log(EventType.PERMISSION_REQUESTED, request_id="req-1", account_id="sub-1")
    trail.log(EventType.PERMISSION_REQUESTED, request_id="req-2", account_id="sub-2")
    clock.advance(hours=1)
    trail.log(EventType.PERMISSION_REJECTED, request_id="req-1", account_id="sub-1", success=False, reason="no")
    trail.log(EventType.SPEND_RECORDED, account_id="sub-1", amount_usd=4.0)

    assert len(trail.read_events(request_id="req-1")) == 2
    assert len(trail.read_events(event_type=EventType.PERMISSION_REQUESTED)) == 2
    assert len(trail.read_events(account_id="sub-1")) == 3
    assert len(trail.read_events(category=EventCategory.PERMISSION)) == 3
    assert len(trail.read_events(category=EventCategory.SPEND, account_id="sub-2")) == 0
    assert len(trail.read_events(since=clock.now())) == 2
    assert len(trail.read_events(limit=1)) == 1
    assert len(trail.read_events(limit=0)) == 4


def test_summary_totals_spend_and_outcomes(trail):
    trail.log(EventType.SPEND_RECORDED, account_id="sub-1", amount_usd=0.1)
    trail.log(EventType.SPEND_RECORDED, account_id="sub-1", amount_usd=0.2)
    trail.log(EventType.SPEND_RECORDED, account_id="primary", amount_usd=7.0)
    trail.log(EventType.SPEND_DENIED, amount_usd=30.0, success=False, reason="daily limit")
    trail.log(EventType.CHECKOUT_COMPLETED, account_id="sub-1", amount_usd=0.2)
    trail.log(EventType.CHECKOUT_FAILED, account_id="sub-1", success=False, reason="declined")

    summary = trail.summary()
    assert summary["total_events"] == 6
    assert summary["failures"] == 2
    assert summary["recorded_spends"] == 3
    assert summary["recorded_spend_usd"] == 7.3
    assert summary["denied_checks"] == 1
    assert summary["checkouts_completed"] == 1
    assert summary["checkouts_failed"] == 1
    assert summary["by_category"]["spend"] == 4
    assert summary["by_category"]["auto_spend"] == 0

    per_account = trail.summary(account_id="sub-1")
    assert per_account["recorded_spend_usd"] == 0.3
    assert per_account["last_event"]["reason"] == "declined"


def test_request_timeline(trail, clock):
    store = MemoryStore()
    ledger = PermissionLedger(store, clock=clock, audit=trail)

    pending = ledger.request_permission("sub1", 15, "0xabc", "shoes").request_id
    clock.advance(minutes=10)
    ledger.reject_request(pending, "alice", "too much")
    small = ledger.request_permission("sub1", 2, "0xabc", "tip").request_id

    timeline = trail.request_timeline(pending)
    assert [entry["status"] for entry in timeline] == ["pending", "rejected"]
    assert timeline[1]["by"] == "alice"
    assert timeline[1]["reason"] == "too much"
    assert timeline[1]["at"] == clock.now()
    assert trail.request_timeline(small) == [
        {"status": "approved", "at": clock.now(), "by": "system", "reason": None}
    ]
    assert trail.request_timeline("req_unknown") == []


def test_writers_sharing_a_file_keep_one_chain(tmp_path, clock):
    kwargs = dict(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
        clock=clock,
    )
    cli_side = AuditTrail(**kwargs)
    checkout_side = AuditTrail(**kwargs)

    cli_side.log(EventType.LIMITS_UPDATED)
    checkout_side.log(EventType.CHECKOUT_COMPLETED, amount_usd=3.0)
    cli_side.log(EventType.WINDOW_RESET)

    events = checkout_side.read_events()
    assert [e.event_type for e in events] == ["limits_updated", "checkout_completed", "window_reset"]
    assert events[1].prev_hash == events[0].event_hash
    assert events[2].prev_hash == events[1].event_hash


def test_broken_chain_reports_line(tmp_path, trail):
    trail.log(EventType.SPEND_CHECKED)
    with open(tmp_path / "audit.jsonl", "a") as f:
        f.write("not json\n")

    with pytest.raises(AuditChainError) as excinfo:
        trail.read_events()
    assert excinfo.value.line_number == 2
    with pytest.raises(AuditChainError):
        trail.log(EventType.SPEND_CHECKED)


def test_event_categories_cover_every_type():
    assert {t.category for t in EventType} == set(EventCategory)
    assert EventType.WINDOW_RESET.category is EventCategory.LIMITS
    assert EventType.PERMISSION_AUTO_APPROVED.category is EventCategory.PERMISSION


def test_key_from_environment(tmp_path, clock, monkeypatch):
    monkeypatch.setenv("SPENDGUARD_AUDIT_HMAC_KEY", "shared-secret")
    kwargs = dict(path=tmp_path / "audit.jsonl", clock=clock)

    AuditTrail(key_path=tmp_path / "a.key", **kwargs).log(EventType.SPEND_CHECKED)
    assert len(AuditTrail(key_path=tmp_path / "b.key", **kwargs).read_events()) == 1


def test_components_write_lifecycle_events(trail, clock):
    store = MemoryStore()
    budget = BudgetTracker(store, clock=clock, audit=trail)
    ledger = PermissionLedger(store, clock=clock, audit=trail)

    budget.can_spend(25)
    request_id = ledger.request_permission("sub1", 15, "0xabc", "shoes").request_id
    ledger.approve_request(request_id, "alice")

    types = [e.event_type for e in trail.read_events()]
    assert types == ["spend_denied", "permission_requested", "permission_approved"]
    approved = trail.read_events(request_id=request_id, event_type=EventType.PERMISSION_APPROVED)
    assert approved[0].details == {"approved_by": "alice"}
    assert approved[0].timestamp == clock.now()
