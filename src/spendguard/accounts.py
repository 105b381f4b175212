"""Sub-accounts as seen by the policy engine: read-only funding sources."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from .money import amount_usd_to_micros, limit_usd_to_micros, micros_to_usd_float


@dataclass(frozen=True)
class SubAccount:
    """A scoped funding source with its own daily cap, in USD."""

    id: str
    address: str
    name: str
    is_active: bool
    daily_spend_limit: float
    total_spent_today: float = 0.0

    @property
    def remaining_today_micros(self) -> int:
        return limit_usd_to_micros(self.daily_spend_limit) - amount_usd_to_micros(self.total_spent_today)

    @property
    def remaining_today(self) -> float:
        return micros_to_usd_float(self.remaining_today_micros)


class SubAccountProvider(Protocol):
    def get_sub_account(self, sub_account_id: str) -> Optional[SubAccount]: ...


class StaticSubAccountProvider:
    """In-memory provider, for tests and for callers that already hold the records."""

    def __init__(self, accounts: Iterable[SubAccount] = ()):
        self._accounts = {account.id: account for account in accounts}

    def get_sub_account(self, sub_account_id: str) -> Optional[SubAccount]:
        return self._accounts.get(sub_account_id)

    def put(self, account: SubAccount) -> None:
        self._accounts[account.id] = account
