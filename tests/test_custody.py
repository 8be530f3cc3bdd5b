"""
Fund custody tests: balance accounting and verified outbound transfers.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import pytest

from coverpool.custody import FundCustody, TransferRecord
from coverpool.hardening import InsufficientPoolBalance, TransferFailure, ValidationError


class TestBalance:

    def test_receive_credits_balance(self):
        custody = FundCustody()
        assert custody.receive("alice", 40) == 40
        assert custody.receive("bob", 2) == 42
        assert custody.balance() == 42
        assert custody.received_from("alice") == 40

    def test_transfer_debits_and_records(self):
        custody = FundCustody(balance=100)
        custody.transfer("alice", 30, memo="claim:0")
        assert custody.balance() == 70
        assert custody.paid_out("alice") == 30
        assert custody.transfers == [TransferRecord(1, "out", "alice", 30, "claim:0")]

    def test_transfer_beyond_balance_rejected(self):
        custody = FundCustody(balance=10)
        with pytest.raises(InsufficientPoolBalance):
            custody.transfer("alice", 11)
        assert custody.balance() == 10
        assert custody.transfers == []

    def test_negative_amounts_rejected(self):
        custody = FundCustody(balance=10)
        with pytest.raises(ValidationError):
            custody.receive("alice", -1)
        with pytest.raises(ValidationError):
            custody.transfer("alice", -1)
        with pytest.raises(ValidationError):
            FundCustody(balance=-5)


class TestReceivers:
    """Recipient-controlled code runs during transfer."""

    def test_accepting_receiver_sees_funds(self):
        custody = FundCustody(balance=100)
        seen = []

        def receiver(recipient, amount):
            seen.append((recipient, amount, custody.balance()))

        custody.register_receiver("alice", receiver)
        custody.transfer("alice", 25)
        assert seen == [("alice", 25, 75)]

    def test_rejecting_receiver_restores_state(self):
        custody = FundCustody(balance=100)
        custody.register_receiver("alice", lambda r, a: False)
        with pytest.raises(TransferFailure):
            custody.transfer("alice", 25)
        assert custody.balance() == 100
        assert custody.paid_out("alice") == 0
        assert custody.transfers == []

    def test_raising_receiver_becomes_transfer_failure(self):
        custody = FundCustody(balance=100)

        def receiver(recipient, amount):
            raise RuntimeError("no fallback")

        custody.register_receiver("alice", receiver)
        with pytest.raises(TransferFailure) as exc_info:
            custody.transfer("alice", 25)
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert custody.balance() == 100

    def test_unregister_receiver(self):
        custody = FundCustody(balance=10)
        custody.register_receiver("alice", lambda r, a: False)
        assert custody.unregister_receiver("alice")
        assert not custody.unregister_receiver("alice")
        custody.transfer("alice", 10)
        assert custody.balance() == 0

    def test_recursive_transfers_bounded(self):
        custody = FundCustody(balance=100, max_transfer_depth=3)
        calls = []

        def receiver(recipient, amount):
            calls.append(amount)
            custody.transfer("alice", 1)

        custody.register_receiver("alice", receiver)
        with pytest.raises(TransferFailure):
            custody.transfer("alice", 1)
        assert len(calls) == 3
        assert custody.balance() == 100


class TestSavepoints:

    def test_restore_discards_later_movements(self):
        custody = FundCustody(balance=50)
        savepoint = custody.savepoint()
        custody.receive("bob", 10)
        custody.transfer("alice", 30)
        custody.restore(savepoint)
        assert custody.balance() == 50
        assert custody.transfers == []
        assert custody.received_from("bob") == 0

    def test_dict_round_trip(self):
        custody = FundCustody()
        custody.receive("alice", 60, memo="activate:0")
        custody.transfer("alice", 20, memo="claim:0")
        restored = FundCustody.from_dict(custody.to_dict())
        assert restored.to_dict() == custody.to_dict()
        assert restored.balance() == 40
