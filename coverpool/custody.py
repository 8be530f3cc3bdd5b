"""
COVERPOOL Fund Custody

Holds the pooled balance of native value and performs outbound transfers
with success verification.

Transfers model a value call to an external recipient: the balance is
debited first, then the recipient's registered receiver (if any) runs. A
receiver is arbitrary recipient-controlled code. It may call back into the
ledger before the transfer returns, and it may reject the payment by
returning ``False`` or raising. Any rejection surfaces as TransferFailure
and the custody state is restored to what it was before the transfer.

Custody never decides whether a payout is owed. The ledger applies every
policy effect first and only then asks custody to move funds.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from coverpool.hardening import (
    InsufficientPoolBalance,
    InvariantChecker,
    TransferFailure,
    Validators,
    atomic,
)
from coverpool.observability import PoolLayer, get_logger

logger = get_logger("custody", PoolLayer.CUSTODY)

# Called as receiver(recipient, amount). Returning False rejects the payment.
Receiver = Callable[[str, int], Optional[bool]]

DEFAULT_MAX_TRANSFER_DEPTH = 8


@dataclass(frozen=True)
class TransferRecord:
    """One completed outbound or inbound movement of funds."""
    sequence: int
    direction: str  # "in" or "out"
    counterparty: str
    amount: int
    memo: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CustodySavepoint:
    balance: int
    paid_out: Dict[str, int] = field(default_factory=dict)
    received: Dict[str, int] = field(default_factory=dict)
    journal_length: int = 0


class FundCustody:
    """
    Pooled balance with verified outbound transfers.

    The lock is shared with the owning ledger so that ledger operations,
    direct funding and transfers are serialized on one re-entrant lock.
    """

    def __init__(
        self,
        balance: int = 0,
        max_transfer_depth: int = DEFAULT_MAX_TRANSFER_DEPTH,
        lock: Optional[threading.RLock] = None,
    ):
        Validators.validate_amount(balance, "balance").raise_if_invalid()
        self._balance = balance
        self._paid_out: Dict[str, int] = {}
        self._received: Dict[str, int] = {}
        self._journal: List[TransferRecord] = []
        self._receivers: Dict[str, Receiver] = {}
        self._depth = 0
        self.max_transfer_depth = max_transfer_depth
        self._lock = lock or threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def balance(self) -> int:
        with self._lock:
            return self._balance

    def paid_out(self, recipient: str) -> int:
        """Cumulative amount transferred out to ``recipient``."""
        with self._lock:
            return self._paid_out.get(recipient, 0)

    def received_from(self, sender: str) -> int:
        with self._lock:
            return self._received.get(sender, 0)

    @property
    def transfers(self) -> List[TransferRecord]:
        with self._lock:
            return list(self._journal)

    # -------------------------------------------------------------------------
    # Receivers
    # -------------------------------------------------------------------------

    def register_receiver(self, recipient: str, receiver: Receiver) -> None:
        """Attach recipient-controlled code that runs on every payment to ``recipient``."""
        with self._lock:
            self._receivers[recipient] = receiver

    def unregister_receiver(self, recipient: str) -> bool:
        with self._lock:
            return self._receivers.pop(recipient, None) is not None

    # -------------------------------------------------------------------------
    # Movements
    # -------------------------------------------------------------------------

    @atomic()
    def receive(self, sender: str, amount: int, memo: str = "") -> int:
        """Credit ``amount`` from ``sender`` to the pool. Returns the new balance."""
        Validators.validate_amount(amount, "amount").raise_if_invalid()
        self._balance += amount
        self._received[sender] = self._received.get(sender, 0) + amount
        self._journal.append(TransferRecord(len(self._journal) + 1, "in", sender, amount, memo))
        return self._balance

    @atomic()
    def transfer(self, recipient: str, amount: int, memo: str = "") -> None:
        """
        Pay ``amount`` to ``recipient``.

        Raises:
            InsufficientPoolBalance: the pool cannot cover ``amount``
            TransferFailure: the recipient rejected or could not receive it
        """
        Validators.validate_amount(amount, "amount").raise_if_invalid()
        if amount > self._balance:
            raise InsufficientPoolBalance(
                f"custody balance {self._balance} cannot cover {amount}",
                balance=self._balance,
                amount=amount,
            )
        if self._depth >= self.max_transfer_depth:
            raise TransferFailure(
                f"transfer nesting exceeds {self.max_transfer_depth}",
                recipient=recipient,
            )

        savepoint = self.savepoint()
        self._balance -= amount
        self._paid_out[recipient] = self._paid_out.get(recipient, 0) + amount
        self._journal.append(TransferRecord(len(self._journal) + 1, "out", recipient, amount, memo))

        receiver = self._receivers.get(recipient)
        if receiver is None:
            return

        self._depth += 1
        try:
            accepted = receiver(recipient, amount)
        except Exception as exc:
            self.restore(savepoint)
            logger.warning(
                "Recipient raised during transfer",
                operation="transfer",
                error_code=TransferFailure.code,
                recipient=recipient,
                amount=amount,
                cause=repr(exc),
            )
            raise TransferFailure(f"recipient {recipient} failed to receive payment", recipient=recipient) from exc
        finally:
            self._depth -= 1

        if accepted is False:
            self.restore(savepoint)
            logger.warning(
                "Recipient rejected transfer",
                operation="transfer",
                error_code=TransferFailure.code,
                recipient=recipient,
                amount=amount,
            )
            raise TransferFailure(f"recipient {recipient} rejected payment", recipient=recipient)

    # -------------------------------------------------------------------------
    # Transaction support
    # -------------------------------------------------------------------------

    def savepoint(self) -> CustodySavepoint:
        with self._lock:
            return CustodySavepoint(
                balance=self._balance,
                paid_out=dict(self._paid_out),
                received=dict(self._received),
                journal_length=len(self._journal),
            )

    def restore(self, savepoint: CustodySavepoint) -> None:
        with self._lock:
            self._balance = savepoint.balance
            self._paid_out = dict(savepoint.paid_out)
            self._received = dict(savepoint.received)
            del self._journal[savepoint.journal_length:]
            InvariantChecker.check_non_negative("custody balance", self._balance)

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "balance": self._balance,
                "paid_out": dict(sorted(self._paid_out.items())),
                "received": dict(sorted(self._received.items())),
                "transfers": [r.to_dict() for r in self._journal],
            }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        max_transfer_depth: int = DEFAULT_MAX_TRANSFER_DEPTH,
    ) -> "FundCustody":
        custody = cls(balance=int(data.get("balance", 0)), max_transfer_depth=max_transfer_depth)
        custody._paid_out = {k: int(v) for k, v in (data.get("paid_out") or {}).items()}
        custody._received = {k: int(v) for k, v in (data.get("received") or {}).items()}
        custody._journal = [TransferRecord(**r) for r in data.get("transfers") or []]
        return custody


__all__ = [
    "Receiver",
    "TransferRecord",
    "CustodySavepoint",
    "FundCustody",
]
