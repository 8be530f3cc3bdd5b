"""
COVERPOOL Policy Ledger

The policy lifecycle state machine. Each holder owns an ordered list of
Policy records; a record's ``policy_id`` is its position in that list and is
never reused or shifted because records are never deleted.

Lifecycle
─────────

    create (Issuer)          activate (holder)           reimburse (ClaimsAuthority)
    ─────────────────▶  INERT  ─────────────────▶  LIVE  ─────────────────────────▶  SPENT
                        activated=False            activated=True                   valid=False
                        valid=True                 exposure += secured              exposure -= secured
                                                                                    custody pays holder

Aggregate exposure (``total_secured_amount``) always equals the sum of
``secured_amount`` over policies that are activated and valid.

Atomicity
─────────

Every mutating operation runs inside :meth:`PolicyLedger.transaction`. The
transaction journals every field write, takes a custody savepoint and opens
an event-log transaction. If anything raises, the journal is unwound, custody
is restored and provisional events are dropped, so a failed operation leaves
no observable trace. Transactions nest, which covers re-entrant calls made
by a payment recipient while its payout is still in flight.

Payouts follow checks-effects-interactions: the policy is marked spent and
exposure reduced before custody transfers any funds, so a re-entrant claim
on the same policy observes it already spent.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from coverpool.config import PoolConfig, get_config
from coverpool.custody import FundCustody
from coverpool.events import (
    EventLog,
    PolicyActivated,
    PolicyCreated,
    PolicyReimbursed,
    PoolFunded,
    PremiumRefunded,
)
from coverpool.hardening import (
    Expired,
    InsufficientFunds,
    InsufficientPoolBalance,
    InvalidReference,
    InvalidState,
    InvariantChecker,
    LimitExceeded,
    Validators,
)
from coverpool.observability import PoolLayer, get_logger, timed_operation
from coverpool.pricing import PremiumModel, PremiumQuote
from coverpool.security import AuthorizationGate, ReentrancyGuard

logger = get_logger("ledger", PoolLayer.LEDGER)

Clock = Callable[[], int]


def system_clock() -> int:
    """Current UNIX time in whole seconds."""
    return int(time.time())


# ════════════════════════════════════════════════════════════════════════════
# RECORDS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class Policy:
    """One coverage record."""
    holder: str
    policy_id: int
    deposit_amount: int
    secured_amount: int
    expiration_time: int
    doc_ref: str
    created_at: int = 0
    activated: bool = False
    valid: bool = True

    @property
    def is_live(self) -> bool:
        """Counts toward exposure."""
        return self.activated and self.valid

    def is_expired(self, now: int) -> bool:
        return now > self.expiration_time

    def copy(self) -> "Policy":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Policy":
        return cls(**data)


@dataclass(frozen=True)
class ActivationReceipt:
    """Outcome of a successful activation."""
    holder: str
    policy_id: int
    deposit_amount: int
    excess_refunded: int = 0


class _Journal:
    """Undo log for one transaction level."""

    def __init__(self):
        self._entries: List[Tuple[Callable[..., None], tuple]] = []

    def record(self, undo: Callable[..., None], *args: Any) -> None:
        self._entries.append((undo, args))

    def absorb(self, child: "_Journal") -> None:
        self._entries.extend(child._entries)

    def unwind(self) -> None:
        while self._entries:
            undo, args = self._entries.pop()
            undo(*args)


# ════════════════════════════════════════════════════════════════════════════
# LEDGER
# ════════════════════════════════════════════════════════════════════════════


class PolicyLedger:
    """
    Per-holder policy records, aggregate exposure and the three lifecycle
    operations.

    Example:
        gate = AuthorizationGate(issuer="issuer", claims_authority="claims")
        ledger = PolicyLedger(gate)
        pid = ledger.create("issuer", "alice", 0, 100, "bafy...")
        ledger.activate("alice", pid, 50)
        ledger.reimburse("claims", 80, "alice", pid)
    """

    def __init__(
        self,
        gate: AuthorizationGate,
        custody: Optional[FundCustody] = None,
        events: Optional[EventLog] = None,
        clock: Optional[Clock] = None,
        config: Optional[PoolConfig] = None,
        *,
        term_seconds: Optional[int] = None,
        quote_requires_issuer: Optional[bool] = None,
        refund_excess: Optional[bool] = None,
    ):
        # An empty EventLog is falsy, so test for None explicitly
        config = config if config is not None else get_config()
        self.gate = gate
        self.custody = custody if custody is not None else FundCustody(
            max_transfer_depth=config.custody.max_transfer_depth.get(),
        )
        self.events = events if events is not None else EventLog()
        self._clock = clock if clock is not None else system_clock

        self.term_seconds = term_seconds if term_seconds is not None else config.policy.term_seconds.get()
        self.quote_requires_issuer = (
            quote_requires_issuer if quote_requires_issuer is not None
            else config.pricing.quote_requires_issuer.get()
        )
        self.refund_excess = refund_excess if refund_excess is not None else config.pricing.refund_excess.get()
        self._max_doc_ref_length = config.policy.max_doc_ref_length.get()
        Validators.validate_amount(self.term_seconds, "term_seconds", allow_zero=False).raise_if_invalid()

        # One re-entrant lock serializes ledger and custody
        self._lock = self.custody.lock
        self._policies: Dict[str, List[Policy]] = {}
        self._total_secured_amount = 0
        self._journal: Optional[_Journal] = None
        self._guard = ReentrancyGuard()

    # ------------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["PolicyLedger"]:
        """
        Run a block all-or-nothing across ledger, custody and event log.

        Events reach bus subscribers only after the outermost transaction
        has committed, outside the rollback scope and the ledger lock. A
        failing subscriber therefore cannot undo or half-undo an operation.
        """
        with self._lock:
            parent = self._journal
            journal = _Journal()
            self._journal = journal
            savepoint = self.custody.savepoint()
            try:
                with self.events.transaction(publish=False):
                    yield self
            except BaseException:
                journal.unwind()
                self.custody.restore(savepoint)
                raise
            else:
                if parent is not None:
                    parent.absorb(journal)
            finally:
                self._journal = parent
        if parent is None:
            self.events.publish_pending()

    def _set(self, policy: Policy, attr: str, value: Any) -> None:
        self._journal.record(setattr, policy, attr, getattr(policy, attr))
        setattr(policy, attr, value)

    def _set_exposure(self, value: int) -> None:
        InvariantChecker.check_non_negative("total_secured_amount", value)
        self._journal.record(self._restore_exposure, self._total_secured_amount)
        self._total_secured_amount = value

    def _restore_exposure(self, value: int) -> None:
        self._total_secured_amount = value

    def _append_policy(self, policy: Policy) -> None:
        records = self._policies.get(policy.holder)
        if records is None:
            records = self._policies[policy.holder] = []
            self._journal.record(self._policies.pop, policy.holder)
        records.append(policy)
        self._journal.record(records.pop)

    def _get(self, holder: str, policy_id: int) -> Policy:
        Validators.validate_policy_id(policy_id).raise_if_invalid()
        records = self._policies.get(holder, [])
        if not 0 <= policy_id < len(records):
            raise InvalidReference(
                f"no policy {policy_id} for holder {holder}",
                holder=holder,
                policy_id=policy_id,
            )
        return records[policy_id]

    def now(self) -> int:
        return self._clock()

    # ------------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------------

    @timed_operation(logger, "create")
    def create(
        self,
        caller: str,
        holder: str,
        deposit_amount: int,
        secured_amount: int,
        doc_ref: str,
    ) -> int:
        """
        Append an inactive policy for ``holder``. Issuer only.

        ``deposit_amount`` is the placeholder the holder must exceed when
        activating. No funds move. Returns the new ``policy_id``.
        """
        self.gate.require_issuer(caller)
        holder_result = Validators.validate_identity(holder, "holder")
        holder_result.raise_if_invalid()
        holder = holder_result.sanitized_value
        Validators.validate_amount(deposit_amount, "deposit_amount").raise_if_invalid()
        Validators.validate_amount(secured_amount, "secured_amount", allow_zero=False).raise_if_invalid()
        Validators.validate_doc_ref(doc_ref, self._max_doc_ref_length).raise_if_invalid()

        with self.transaction():
            now = self.now()
            policy = Policy(
                holder=holder,
                policy_id=len(self._policies.get(holder, [])),
                deposit_amount=deposit_amount,
                secured_amount=secured_amount,
                expiration_time=now + self.term_seconds,
                doc_ref=doc_ref,
                created_at=now,
            )
            self._append_policy(policy)
            self.events.append(PolicyCreated(
                holder=policy.holder,
                policy_id=policy.policy_id,
                deposit_amount=policy.deposit_amount,
                secured_amount=policy.secured_amount,
                expiration_time=policy.expiration_time,
                activated=policy.activated,
                valid=policy.valid,
                doc_ref=policy.doc_ref,
            ))

        logger.info(
            "Policy created",
            holder=holder,
            policy_id=policy.policy_id,
            secured_amount=secured_amount,
            expiration_time=policy.expiration_time,
        )
        return policy.policy_id

    @timed_operation(logger, "activate")
    def activate(self, caller: str, policy_id: int, funds_sent: int) -> ActivationReceipt:
        """
        Fund and activate one of the caller's own policies.

        ``funds_sent`` must strictly exceed the policy's current deposit.
        When excess refunds are enabled the holder pays exactly the required
        deposit and the remainder is returned after all ledger effects.
        """
        Validators.validate_amount(funds_sent, "funds_sent").raise_if_invalid()

        with self.transaction(), self._guard.enter((caller, policy_id)):
            policy = self._get(caller, policy_id)
            if policy.activated:
                raise InvalidState("policy already activated", holder=caller, policy_id=policy_id)

            # Snapshot before the deposit field is overwritten
            required = policy.deposit_amount
            if funds_sent <= required:
                raise InsufficientFunds(
                    f"funds sent {funds_sent} must exceed deposit {required}",
                    funds_sent=funds_sent,
                    required=required,
                )
            excess = funds_sent - required if self.refund_excess else 0

            self.custody.receive(caller, funds_sent, memo=f"activate:{policy_id}")
            self._set(policy, "deposit_amount", funds_sent - excess)
            self._set(policy, "activated", True)
            self._set_exposure(self._total_secured_amount + policy.secured_amount)
            self.events.append(PolicyActivated(
                holder=policy.holder,
                policy_id=policy.policy_id,
                deposit_amount=policy.deposit_amount,
                secured_amount=policy.secured_amount,
                expiration_time=policy.expiration_time,
                activated=policy.activated,
                valid=policy.valid,
                doc_ref=policy.doc_ref,
            ))

            if excess:
                self.events.append(PremiumRefunded(holder=caller, policy_id=policy_id, amount=excess))
                self.custody.transfer(caller, excess, memo=f"refund:{policy_id}")

        logger.info(
            "Policy activated",
            holder=caller,
            policy_id=policy_id,
            deposit_amount=policy.deposit_amount,
            excess_refunded=excess,
            total_secured_amount=self._total_secured_amount,
        )
        return ActivationReceipt(
            holder=caller,
            policy_id=policy_id,
            deposit_amount=policy.deposit_amount,
            excess_refunded=excess,
        )

    @timed_operation(logger, "reimburse")
    def reimburse(self, caller: str, amount: int, holder: str, policy_id: int) -> None:
        """
        Pay ``amount`` to ``holder`` against one live policy. ClaimsAuthority only.

        The policy is spent and exposure reduced before custody moves any
        funds. A rejected transfer fails the whole operation.
        """
        self.gate.require_claims_authority(caller)
        Validators.validate_amount(amount, "amount").raise_if_invalid()

        with self.transaction(), self._guard.enter((holder, policy_id)):
            policy = self._get(holder, policy_id)
            if not policy.valid:
                raise InvalidState("policy already used", holder=holder, policy_id=policy_id)
            if not policy.activated:
                raise InvalidState("policy not activated", holder=holder, policy_id=policy_id)
            now = self.now()
            if policy.is_expired(now):
                raise Expired(
                    f"policy expired at {policy.expiration_time}",
                    expiration_time=policy.expiration_time,
                    now=now,
                )
            if amount > policy.secured_amount:
                raise LimitExceeded(
                    f"claim {amount} exceeds secured amount {policy.secured_amount}",
                    amount=amount,
                    secured_amount=policy.secured_amount,
                )
            balance = self.custody.balance()
            if balance < amount:
                raise InsufficientPoolBalance(
                    f"custody balance {balance} cannot cover {amount}",
                    balance=balance,
                    amount=amount,
                )

            # Effects before interaction
            self._set(policy, "valid", False)
            self._set_exposure(self._total_secured_amount - policy.secured_amount)
            self.events.append(PolicyReimbursed(holder=holder, policy_id=policy_id, amount=amount))

            self.custody.transfer(holder, amount, memo=f"claim:{policy_id}")

        logger.info(
            "Policy reimbursed",
            holder=holder,
            policy_id=policy_id,
            amount=amount,
            total_secured_amount=self._total_secured_amount,
        )

    @timed_operation(logger, "fund")
    def fund(self, caller: str, amount: int) -> int:
        """Deposit funds straight into custody. Returns the new custody balance."""
        result = Validators.validate_identity(caller, "funder")
        result.raise_if_invalid()
        Validators.validate_amount(amount, "amount", allow_zero=False).raise_if_invalid()

        with self.transaction():
            balance = self.custody.receive(result.sanitized_value, amount, memo="fund")
            self.events.append(PoolFunded(funder=result.sanitized_value, amount=amount))
        return balance

    # ------------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------------

    def quote(self, caller: str, secured_amount: int) -> PremiumQuote:
        """Premium breakdown for new coverage at the current pool state."""
        if self.quote_requires_issuer:
            self.gate.require_issuer(caller)
        with self._lock:
            return PremiumModel.quote(secured_amount, self._total_secured_amount, self.custody.balance())

    def quote_premium(self, caller: str, secured_amount: int) -> int:
        return self.quote(caller, secured_amount).premium

    # ------------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------------

    @property
    def total_secured_amount(self) -> int:
        with self._lock:
            return self._total_secured_amount

    def read_policy(self, holder: str, policy_id: int) -> Policy:
        """Copy of one record. Raises InvalidReference if it does not exist."""
        with self._lock:
            return self._get(holder, policy_id).copy()

    def policies_of(self, holder: str) -> List[Policy]:
        with self._lock:
            return [p.copy() for p in self._policies.get(holder, [])]

    def policy_count(self, holder: str) -> int:
        with self._lock:
            return len(self._policies.get(holder, []))

    def holders(self) -> List[str]:
        with self._lock:
            return sorted(self._policies)

    def all_policies(self) -> List[Policy]:
        with self._lock:
            return [p.copy() for holder in sorted(self._policies) for p in self._policies[holder]]

    def live_exposure(self) -> int:
        """Exposure recomputed from records."""
        with self._lock:
            return sum(
                p.secured_amount
                for records in self._policies.values()
                for p in records
                if p.is_live
            )

    def check_invariants(self) -> None:
        """Raise InvariantViolation if the exposure counter drifted from the records."""
        with self._lock:
            InvariantChecker.check_exposure(self._total_secured_amount, self.live_exposure())
            InvariantChecker.check_non_negative("custody balance", self.custody.balance())

    # ------------------------------------------------------------------------
    # Restoration
    # ------------------------------------------------------------------------

    @classmethod
    def from_records(
        cls,
        gate: AuthorizationGate,
        policies: List[Policy],
        custody: Optional[FundCustody] = None,
        events: Optional[EventLog] = None,
        clock: Optional[Clock] = None,
        config: Optional[PoolConfig] = None,
        **options: Any,
    ) -> "PolicyLedger":
        """
        Rebuild a ledger from persisted records.

        Records must form dense zero-based sequences per holder. Exposure is
        recomputed from the records rather than trusted.
        """
        ledger = cls(gate, custody=custody, events=events, clock=clock, config=config, **options)
        grouped: Dict[str, List[Policy]] = {}
        for policy in sorted(policies, key=lambda p: (p.holder, p.policy_id)):
            grouped.setdefault(policy.holder, []).append(policy.copy())
        for holder, records in grouped.items():
            for index, policy in enumerate(records):
                if policy.policy_id != index:
                    raise InvalidReference(
                        f"policy ids for {holder} are not dense at position {index}",
                        holder=holder,
                        policy_id=policy.policy_id,
                    )
        ledger._policies = grouped
        ledger._total_secured_amount = ledger.live_exposure()
        return ledger


__all__ = [
    "Clock",
    "system_clock",
    "Policy",
    "ActivationReceipt",
    "PolicyLedger",
]
