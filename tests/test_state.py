"""
Pool state persistence tests.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import json

import pytest

from coverpool.state import (
    StateError,
    export_state,
    import_state,
    load_state,
    save_state,
    state_digest,
    validate_state,
)

from conftest import CLAIMS, ISSUER


@pytest.fixture
def busy_ledger(ledger):
    ledger.fund("treasury", 1000)
    ledger.create(ISSUER, "alice", 0, 100, "cid-a0")
    ledger.create(ISSUER, "alice", 10, 300, "cid-a1")
    ledger.create(ISSUER, "bob", 0, 50, "cid-b0")
    ledger.activate("alice", 0, 50)
    ledger.activate("bob", 0, 5)
    ledger.reimburse(CLAIMS, 40, "bob", 0)
    return ledger


class TestExport:

    def test_export_is_schema_valid(self, busy_ledger):
        data = export_state(busy_ledger)
        assert validate_state(data) == []
        assert data["version"] == 1
        assert data["principals"] == {"issuer": ISSUER, "claims_authority": CLAIMS}
        assert data["total_secured_amount"] == 100

    def test_export_is_json_serializable(self, busy_ledger):
        json.dumps(export_state(busy_ledger))

    def test_digest_stable(self, busy_ledger):
        assert state_digest(export_state(busy_ledger)) == state_digest(export_state(busy_ledger))


class TestImport:

    def test_round_trip(self, busy_ledger, clock):
        data = export_state(busy_ledger)
        restored = import_state(data, clock=clock)
        assert export_state(restored) == data
        restored.check_invariants()

    def test_restored_ledger_keeps_working(self, busy_ledger, clock):
        restored = import_state(export_state(busy_ledger), clock=clock)
        restored.reimburse(CLAIMS, 100, "alice", 0)
        assert restored.total_secured_amount == 0
        assert restored.create(ISSUER, "alice", 0, 1, "next") == 2
        assert restored.events.verify_chain() == (True, None)

    def test_exposure_mismatch_rejected(self, busy_ledger, clock):
        data = export_state(busy_ledger)
        data["total_secured_amount"] += 1
        with pytest.raises(StateError, match="drift"):
            import_state(data, clock=clock)

    def test_schema_violation_rejected(self, busy_ledger, clock):
        data = export_state(busy_ledger)
        data["policies"][0]["secured_amount"] = -5
        with pytest.raises(StateError, match="invalid pool state"):
            import_state(data, clock=clock)

    def test_unknown_field_rejected(self, busy_ledger, clock):
        data = export_state(busy_ledger)
        data["admin"] = "mallory"
        with pytest.raises(StateError):
            import_state(data, clock=clock)

    def test_spent_without_activation_rejected(self, busy_ledger, clock):
        data = export_state(busy_ledger)
        inert = next(p for p in data["policies"] if not p["activated"])
        inert["valid"] = False
        with pytest.raises(StateError, match="without activation"):
            import_state(data, clock=clock)

    def test_gap_in_policy_ids_rejected(self, busy_ledger, clock):
        data = export_state(busy_ledger)
        data["policies"] = [p for p in data["policies"] if not (p["holder"] == "alice" and p["policy_id"] == 0)]
        data["total_secured_amount"] = 0
        with pytest.raises(StateError, match="not dense"):
            import_state(data, clock=clock)

    def test_tampered_event_log_rejected(self, busy_ledger, clock):
        data = export_state(busy_ledger)
        data["events"][1]["event"]["secured_amount"] = 1
        with pytest.raises(StateError, match="chain broken at index 1"):
            import_state(data, clock=clock)


class TestFiles:

    def test_save_and_load(self, busy_ledger, clock, tmp_path):
        path = tmp_path / "pool.json"
        digest = save_state(path, busy_ledger)
        assert len(digest) == 64
        loaded = load_state(path, clock=clock)
        assert export_state(loaded) == export_state(busy_ledger)
        assert not (tmp_path / "pool.json.tmp").exists()

    def test_saved_bytes_are_canonical(self, busy_ledger, tmp_path):
        path = tmp_path / "pool.json"
        save_state(path, busy_ledger)
        first = path.read_bytes()
        save_state(path, busy_ledger)
        assert path.read_bytes() == first

    def test_missing_file(self, tmp_path):
        with pytest.raises(StateError, match="not found"):
            load_state(tmp_path / "absent.json")

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "pool.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StateError, match="not valid JSON"):
            load_state(path)
