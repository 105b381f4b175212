"""
Spendguard — spend-policy engine for wallet checkouts.

Decides whether a payment may run without interactive approval:
period limits → permission requests → sub-account auto-spend.
"""

__version__ = "0.1.0"

from .accounts import StaticSubAccountProvider, SubAccount, SubAccountProvider
from .audit import AuditTrail, EventType
from .auto_spend import AutoSpendArbiter, AutoSpendConfig, AutoSpendResult, AutoSpendStatus
from .budget import BudgetTracker, SpendCheck, SpendLimitConfig, SpendTracking, SpendWindow
from .checkout import CheckoutExecutor, CheckoutRequest, CheckoutResult
from .clock import Clock, FixedClock, SystemClock
from .execution import DryRunTransferExecutor, TransferExecutor, TransferOutcome
from .permissions import (
    ActionResult,
    ApprovalConfig,
    PermissionCheck,
    PermissionLedger,
    PermissionRequest,
    PermissionResult,
    RequestStatus,
)
from .storage import JsonFileStore, KeyValueStore, MemoryStore

__all__ = [
    "BudgetTracker", "SpendCheck", "SpendLimitConfig", "SpendTracking", "SpendWindow",
    "PermissionLedger", "PermissionRequest", "PermissionResult", "PermissionCheck",
    "ActionResult", "ApprovalConfig", "RequestStatus",
    "AutoSpendArbiter", "AutoSpendConfig", "AutoSpendResult", "AutoSpendStatus",
    "SubAccount", "SubAccountProvider", "StaticSubAccountProvider",
    "TransferExecutor", "TransferOutcome", "DryRunTransferExecutor",
    "CheckoutExecutor", "CheckoutRequest", "CheckoutResult",
    "KeyValueStore", "MemoryStore", "JsonFileStore",
    "Clock", "SystemClock", "FixedClock",
    "AuditTrail", "EventType",
]
