"""
Spendguard CLI — operator view of the spend-policy state.

Commands:
    spendguard status      Show spend windows, requests and auto-spend
    spendguard check       Ask whether an amount may be spent now
    spendguard record      Record a completed spend
    spendguard reset       Reset the daily or monthly window
    spendguard limits      Show or change spend limits
    spendguard requests    Manage permission requests
    spendguard autospend   Manage the auto-spend policy
    spendguard audit       View the audit trail
"""

from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .audit import AuditTrail, EventCategory
from .auto_spend import AutoSpendArbiter, AutoSpendConfig
from .budget import BudgetTracker
from .errors import AuditChainError, InvalidConfigError
from .permissions import PermissionLedger, PermissionRequest
from .storage import JsonFileStore, ensure_private_dir


DEFAULT_HOME = Path.home() / ".spendguard"


class _Workspace:
    """Lazily built components over one state directory."""

    def __init__(self, home: Path):
        self.home = home
        self._store: Optional[JsonFileStore] = None
        self._audit: Optional[AuditTrail] = None

    @property
    def store(self) -> JsonFileStore:
        if self._store is None:
            ensure_private_dir(self.home)
            self._store = JsonFileStore(self.home / "state")
        return self._store

    @property
    def audit(self) -> AuditTrail:
        if self._audit is None:
            self._audit = AuditTrail(
                path=self.home / "audit.jsonl",
                key_path=self.home / ".secrets" / "audit_hmac.key",
            )
        return self._audit

    def budget(self) -> BudgetTracker:
        return BudgetTracker(self.store, audit=self.audit)

    def ledger(self) -> PermissionLedger:
        return PermissionLedger(self.store, audit=self.audit)

    def arbiter(self) -> AutoSpendArbiter:
        return AutoSpendArbiter(self.store, audit=self.audit)


pass_workspace = click.make_pass_decorator(_Workspace)


def _fmt_time(ts: Optional[float]) -> str:
    if ts is None:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(ts))


def _echo_request(request: PermissionRequest) -> None:
    click.echo(f"{request.id}")
    click.echo(f"  Status:    {request.status.value}")
    click.echo(f"  Account:   {request.sub_account_id}")
    click.echo(f"  Amount:    ${request.amount_usd:.2f}")
    click.echo(f"  Recipient: {request.recipient_address}")
    if request.purpose:
        click.echo(f"  Purpose:   {request.purpose}")
    click.echo(f"  Requested: {_fmt_time(request.requested_at)}")
    click.echo(f"  Expires:   {_fmt_time(request.expires_at)}")
    if request.approved_by:
        click.echo(f"  Approved:  {_fmt_time(request.approved_at)} by {request.approved_by}")
    if request.rejected_by:
        click.echo(
            f"  Rejected:  {_fmt_time(request.rejected_at)} by {request.rejected_by}"
            f" ({request.rejection_reason})"
        )


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option(
    "--home",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="SPENDGUARD_HOME",
    default=None,
    help="State directory (default: ~/.spendguard, or $SPENDGUARD_HOME)",
)
@click.pass_context
def main(ctx: click.Context, home: Optional[Path]):
    """Spendguard — spend-policy engine for wallet checkouts."""
    ctx.obj = _Workspace(home or DEFAULT_HOME)


@main.command()
@pass_workspace
def status(ws: _Workspace):
    """Show spend windows, request counts and auto-spend state."""
    spend = ws.budget().get_spend_status()
    stats = ws.ledger().get_stats()
    arbiter = ws.arbiter()

    for name in ("daily", "monthly"):
        window = spend[name]
        pct = f"{window['percentage']:.1f}%" if window["percentage"] is not None else "N/A"
        click.echo(
            f"{name.capitalize():8} ${window['spent']:.2f} of ${window['limit']:.2f} "
            f"({pct}, ${window['remaining']:.2f} left, since {window['reset_date']})"
        )
    click.echo(f"Transactions: {spend['total_transactions']}")
    click.echo(
        f"Requests: {stats['total']} total, {stats['pending']} pending, "
        f"{stats['approved']} approved, {stats['rejected']} rejected, {stats['expired']} expired"
    )
    config = arbiter.get_config()
    if config is None:
        click.echo("Auto-spend: not configured")
    else:
        state = "enabled" if config.enabled else "disabled"
        click.echo(f"Auto-spend: {state} (sub-account {config.sub_account_id}, max ${config.max_amount:.2f})")


@main.command()
@click.argument("amount", type=float)
@pass_workspace
def check(ws: _Workspace, amount: float):
    """Check whether AMOUNT (USD) may be spent right now."""
    result = ws.budget().can_spend(amount)
    if result.allowed:
        click.echo(f"✅ ${amount:.2f} allowed")
    else:
        click.echo(f"❌ ${amount:.2f} denied: {result.reason}")
    click.echo(f"   Daily remaining:   ${result.daily_remaining:.2f}")
    click.echo(f"   Monthly remaining: ${result.monthly_remaining:.2f}")
    if not result.allowed:
        sys.exit(1)


@main.command()
@click.argument("amount", type=float)
@click.option("--sub-account", default=None, help="Sub-account that funded the spend")
@pass_workspace
def record(ws: _Workspace, amount: float, sub_account: Optional[str]):
    """Record a completed spend of AMOUNT (USD)."""
    try:
        tracking = ws.budget().record_spend(amount, sub_account)
    except ValueError as e:
        click.echo(f"❌ Failed to record spend: {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Recorded ${amount:.2f}")
    click.echo(f"   Daily:   ${tracking.daily.amount_usd:.2f} of ${tracking.daily.limit_usd:.2f}")
    click.echo(f"   Monthly: ${tracking.monthly.amount_usd:.2f} of ${tracking.monthly.limit_usd:.2f}")


@main.command()
@click.argument("window", type=click.Choice(["daily", "monthly"]))
@pass_workspace
def reset(ws: _Workspace, window: str):
    """Reset the daily or monthly spend window."""
    budget = ws.budget()
    if window == "daily":
        budget.reset_daily()
    else:
        budget.reset_monthly()
    click.echo(f"✅ {window.capitalize()} window reset")


@main.command()
@click.option("--daily", type=float, default=None, help="Daily limit (USD)")
@click.option("--monthly", type=float, default=None, help="Monthly limit (USD)")
@click.option("--threshold", type=float, default=None, help="Approval threshold (USD)")
@click.option("--requires-approval", type=click.BOOL, default=None,
              help="Require approval above the threshold (true/false)")
@click.option("--auto-reset-daily", type=click.BOOL, default=None)
@click.option("--auto-reset-monthly", type=click.BOOL, default=None)
@pass_workspace
def limits(
    ws: _Workspace,
    daily: Optional[float],
    monthly: Optional[float],
    threshold: Optional[float],
    requires_approval: Optional[bool],
    auto_reset_daily: Optional[bool],
    auto_reset_monthly: Optional[bool],
):
    """Show spend limits, or change the ones given."""
    budget = ws.budget()
    changes = {
        "daily_limit": daily,
        "monthly_limit": monthly,
        "approval_threshold": threshold,
        "requires_approval": requires_approval,
        "auto_reset_daily": auto_reset_daily,
        "auto_reset_monthly": auto_reset_monthly,
    }
    changes = {k: v for k, v in changes.items() if v is not None}

    if changes:
        try:
            config = budget.update_config(**changes)
        except InvalidConfigError as e:
            click.echo(f"❌ Invalid limits: {e}", err=True)
            sys.exit(1)
        click.echo("✅ Limits updated")
    else:
        config = budget.get_config()

    click.echo(f"   Daily limit:        ${config.daily_limit:.2f}")
    click.echo(f"   Monthly limit:      ${config.monthly_limit:.2f}")
    click.echo(f"   Approval threshold: ${config.approval_threshold:.2f}"
               f" ({'required' if config.requires_approval else 'not required'})")
    click.echo(f"   Auto reset:         daily={config.auto_reset_daily} monthly={config.auto_reset_monthly}")


@main.group("requests")
def requests_group():
    """Permission request lifecycle operations."""
    pass


@requests_group.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include approved/rejected/expired requests")
@pass_workspace
def requests_list(ws: _Workspace, show_all: bool):
    """List pending permission requests."""
    ledger = ws.ledger()
    requests = ledger.get_requests() if show_all else ledger.get_pending_requests()
    if not requests:
        click.echo("No requests found")
        return
    for request in sorted(requests, key=lambda r: r.requested_at, reverse=True):
        _echo_request(request)


@requests_group.command("create")
@click.option("--sub-account", required=True, help="Requesting sub-account id")
@click.option("--amount", type=float, required=True, help="Amount (USD)")
@click.option("--recipient", required=True, help="Recipient address")
@click.option("--purpose", default="", help="What the spend is for")
@pass_workspace
def requests_create(ws: _Workspace, sub_account: str, amount: float, recipient: str, purpose: str):
    """File a permission request."""
    result = ws.ledger().request_permission(sub_account, amount, recipient, purpose)
    if not result.success:
        click.echo(f"❌ Request denied: {result.error}", err=True)
        sys.exit(1)
    state = "auto-approved" if result.auto_approved else "pending approval"
    click.echo(f"✅ Request {result.request_id} ({state})")


@requests_group.command("approve")
@click.argument("request_id")
@click.option("--by", "approved_by", required=True, help="Who is approving")
@pass_workspace
def requests_approve(ws: _Workspace, request_id: str, approved_by: str):
    """Approve a pending request."""
    result = ws.ledger().approve_request(request_id, approved_by)
    if not result.success:
        click.echo(f"❌ Cannot approve {request_id}: {result.error}", err=True)
        sys.exit(1)
    click.echo(f"✅ Request approved: {request_id}")


@requests_group.command("reject")
@click.argument("request_id")
@click.option("--by", "rejected_by", required=True, help="Who is rejecting")
@click.option("--reason", required=True, help="Why the request is rejected")
@pass_workspace
def requests_reject(ws: _Workspace, request_id: str, rejected_by: str, reason: str):
    """Reject a pending request."""
    result = ws.ledger().reject_request(request_id, rejected_by, reason)
    if not result.success:
        click.echo(f"❌ Cannot reject {request_id}: {result.error}", err=True)
        sys.exit(1)
    click.echo(f"✅ Request rejected: {request_id}")


@requests_group.command("history")
@click.argument("request_id")
@pass_workspace
def requests_history(ws: _Workspace, request_id: str):
    """Show the status changes of a request from the audit trail."""
    try:
        timeline = ws.audit.request_timeline(request_id)
    except AuditChainError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    if not timeline:
        click.echo(f"No history for {request_id}")
        return
    for entry in timeline:
        line = f"{_fmt_time(entry['at'])} {entry['status']}"
        if entry["by"]:
            line += f" by {entry['by']}"
        if entry["reason"]:
            line += f" ({entry['reason']})"
        click.echo(line)


@requests_group.command("cleanup")
@pass_workspace
def requests_cleanup(ws: _Workspace):
    """Mark expired pending requests as expired."""
    count = ws.ledger().cleanup_expired_requests()
    click.echo(f"✅ {count} request(s) expired")


@requests_group.command("stats")
@pass_workspace
def requests_stats(ws: _Workspace):
    """Show request counts per status."""
    for key, value in ws.ledger().get_stats().items():
        click.echo(f"{key:9} {value}")


@requests_group.command("config")
@click.option("--auto-approve", type=float, default=None, help="Auto-approve threshold (USD)")
@click.option("--max-pending", type=int, default=None, help="Maximum pending requests")
@click.option("--expiry-hours", type=float, default=None, help="Hours until a request expires")
@click.option("--require-approval", type=click.BOOL, default=None,
              help="Require approval for sub-accounts above the threshold (true/false)")
@click.option("--allow", "allowed", multiple=True, help="Allowed recipient (repeatable; replaces list)")
@click.option("--block", "blocked", multiple=True, help="Blocked recipient (repeatable; replaces list)")
@pass_workspace
def requests_config(
    ws: _Workspace,
    auto_approve: Optional[float],
    max_pending: Optional[int],
    expiry_hours: Optional[float],
    require_approval: Optional[bool],
    allowed: tuple[str, ...],
    blocked: tuple[str, ...],
):
    """Show or change the approval policy."""
    ledger = ws.ledger()
    changes: dict = {
        "auto_approve_threshold": auto_approve,
        "max_pending_requests": max_pending,
        "request_expiry_hours": expiry_hours,
        "require_approval_for_sub_accounts": require_approval,
        "allowed_recipients": list(allowed) or None,
        "blocked_recipients": list(blocked) or None,
    }
    changes = {k: v for k, v in changes.items() if v is not None}

    if changes:
        try:
            config = ledger.update_config(**changes)
        except InvalidConfigError as e:
            click.echo(f"❌ Invalid approval config: {e}", err=True)
            sys.exit(1)
        click.echo("✅ Approval config updated")
    else:
        config = ledger.get_config()

    click.echo(f"   Auto-approve up to: ${config.auto_approve_threshold:.2f}")
    click.echo(f"   Max pending:        {config.max_pending_requests}")
    click.echo(f"   Expiry:             {config.request_expiry_hours:g}h")
    click.echo(f"   Sub-accounts need approval: {config.require_approval_for_sub_accounts}")
    click.echo(f"   Allowed: {', '.join(config.allowed_recipients) or '(any)'}")
    click.echo(f"   Blocked: {', '.join(config.blocked_recipients) or '(none)'}")


@main.group("autospend")
def autospend_group():
    """Auto-spend policy operations."""
    pass


@autospend_group.command("show")
@pass_workspace
def autospend_show(ws: _Workspace):
    """Show the auto-spend policy."""
    config = ws.arbiter().get_config()
    if config is None:
        click.echo("Auto-spend: not configured")
        return
    click.echo(f"Enabled:            {config.enabled}")
    click.echo(f"Sub-account:        {config.sub_account_id}")
    click.echo(f"Max amount:         ${config.max_amount:.2f}")
    click.echo(f"Requires approval:  {config.requires_approval}")
    click.echo(f"Approval threshold: ${config.approval_threshold:.2f}")


@autospend_group.command("set")
@click.option("--sub-account", required=True, help="Sub-account that funds auto-spend")
@click.option("--max-amount", type=float, required=True, help="Largest auto-spend (USD)")
@click.option("--threshold", type=float, default=0.0, help="Approval threshold (USD)")
@click.option("--requires-approval", is_flag=True, default=False,
              help="Refuse auto-spend above --threshold")
@pass_workspace
def autospend_set(ws: _Workspace, sub_account: str, max_amount: float, threshold: float, requires_approval: bool):
    """Enable auto-spend from a sub-account."""
    try:
        config = AutoSpendConfig(
            enabled=True,
            sub_account_id=sub_account,
            max_amount=max_amount,
            requires_approval=requires_approval,
            approval_threshold=threshold,
        )
    except InvalidConfigError as e:
        click.echo(f"❌ Invalid auto-spend config: {e}", err=True)
        sys.exit(1)
    ws.arbiter().set_config(config)
    click.echo(f"✅ Auto-spend enabled from {sub_account} (max ${max_amount:.2f})")


@autospend_group.command("disable")
@pass_workspace
def autospend_disable(ws: _Workspace):
    """Disable auto-spend but keep its settings."""
    arbiter = ws.arbiter()
    config = arbiter.get_config()
    if config is None:
        click.echo("❌ Auto-spend is not configured", err=True)
        sys.exit(1)
    config.enabled = False
    arbiter.set_config(config)
    click.echo("✅ Auto-spend disabled")


@autospend_group.command("clear")
@pass_workspace
def autospend_clear(ws: _Workspace):
    """Remove the auto-spend policy."""
    ws.arbiter().reset_config()
    click.echo("✅ Auto-spend config cleared")


@main.command()
@click.option("--request-id", default=None, help="Only events for this request")
@click.option("--account", "account_id", default=None, help="Only events for this account")
@click.option("--category", type=click.Choice([c.value for c in EventCategory]), default=None,
              help="Only events of this category")
@click.option("--limit", type=int, default=20, help="Number of events to show")
@click.option("--summary", "show_summary", is_flag=True, help="Show totals instead of events")
@pass_workspace
def audit(
    ws: _Workspace,
    request_id: Optional[str],
    account_id: Optional[str],
    category: Optional[str],
    limit: int,
    show_summary: bool,
):
    """View the audit trail."""
    try:
        if show_summary:
            summary = ws.audit.summary(account_id=account_id)
        else:
            events = ws.audit.read_events(
                request_id=request_id,
                account_id=account_id,
                category=EventCategory(category) if category else None,
                limit=limit,
            )
    except AuditChainError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    if show_summary:
        click.echo(f"Events:    {summary['total_events']} ({summary['failures']} failed)")
        for name, count in summary["by_category"].items():
            click.echo(f"  {name:11} {count}")
        click.echo(f"Recorded:  {summary['recorded_spends']} spend(s), ${summary['recorded_spend_usd']:.2f}")
        click.echo(f"Denied:    {summary['denied_checks']} check(s)")
        click.echo(
            f"Checkouts: {summary['checkouts_completed']} completed, {summary['checkouts_failed']} failed"
        )
        return
    if not events:
        click.echo("No audit events")
        return
    for event in events:
        mark = "✅" if event.success else "❌"
        line = f"{mark} {_fmt_time(event.timestamp)} {event.event_type}"
        if event.amount_usd is not None:
            line += f" ${event.amount_usd:.2f}"
        if event.request_id:
            line += f" [{event.request_id}]"
        if event.reason:
            line += f" — {event.reason}"
        click.echo(line)
