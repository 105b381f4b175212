"""
Transfer submission capability.

The policy engine hands a transfer intent to an executor and reports its
outcome. Building and signing the on-chain payload belongs to the wallet
provider behind the executor.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from eth_utils import keccak

from .errors import TransferRejectedError
from .money import Amount, amount_usd_to_micros

logger = logging.getLogger(__name__)


@dataclass
class TransferOutcome:
    success: bool
    transaction_hash: Optional[str] = None
    error: Optional[str] = None


class TransferExecutor(Protocol):
    def submit_transfer(
        self,
        from_address: str,
        recipient_address: str,
        amount_usd: Amount,
    ) -> TransferOutcome: ...


@dataclass
class _Submission:
    from_address: str
    recipient_address: str
    amount_micros: int


class DryRunTransferExecutor:
    """Executor that submits nothing and returns deterministic hashes.

    With ``fail_with`` set every submission raises ``TransferRejectedError``,
    which lets callers exercise their failure paths.
    """

    def __init__(self, fail_with: Optional[str] = None):
        self.fail_with = fail_with
        self.submissions: list[_Submission] = []

    def submit_transfer(
        self,
        from_address: str,
        recipient_address: str,
        amount_usd: Amount,
    ) -> TransferOutcome:
        amount_micros = amount_usd_to_micros(amount_usd)
        if self.fail_with is not None:
            raise TransferRejectedError(self.fail_with)

        self.submissions.append(_Submission(from_address, recipient_address, amount_micros))
        payload = json.dumps(
            {
                "from": from_address.lower(),
                "to": recipient_address.lower(),
                "amount_micros": amount_micros,
                "seq": len(self.submissions),
            },
            sort_keys=True,
        )
        tx_hash = "0x" + keccak(text=payload).hex()
        logger.info("Dry-run transfer %s -> %s: %s", from_address, recipient_address, tx_hash)
        return TransferOutcome(success=True, transaction_hash=tx_hash)
