"""
CLI tests: end-to-end runs over a state file.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import json

import pytest

from coverpool.cli import CoverpoolCLI, format_output, OutputFormat


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "pool.json"


@pytest.fixture
def run(state_path, capsys, monkeypatch, tmp_path):
    """Run one CLI invocation against the test state file; return (code, stdout, stderr)."""
    # keep default config discovery inside the sandbox
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))

    def _run(*args, now=None):
        argv = ["--state", str(state_path)]
        if now is not None:
            argv += ["--now", str(now)]
        code = CoverpoolCLI().run(argv + list(args))
        out, err = capsys.readouterr()
        return code, out, err
    return _run


@pytest.fixture
def pool(run):
    code, _, _ = run("init", "--issuer", "issuer", "--claims-authority", "claims", "--term-seconds", "1000", now=1000)
    assert code == 0
    return run


class TestInit:

    def test_init_writes_state(self, run, state_path):
        code, out, _ = run("init", "--issuer", "issuer", "--claims-authority", "claims")
        assert code == 0
        assert state_path.exists()
        assert json.loads(out)["principals"] == {"issuer": "issuer", "claims_authority": "claims"}

    def test_init_refuses_to_overwrite(self, pool, state_path):
        before = state_path.read_bytes()
        code, _, err = pool("init", "--issuer", "x", "--claims-authority", "y")
        assert code == 1
        assert "already exists" in err
        assert state_path.read_bytes() == before

    def test_single_principal_for_both_roles(self, run):
        code, _, _ = run("init", "--issuer", "ops", "--claims-authority", "ops")
        assert code == 0
        code, _, _ = run("create", "--caller", "ops", "--holder", "A", "--deposit", "0",
                         "--secured", "10", "--doc-ref", "cid")
        assert code == 0

    def test_missing_state_file(self, run):
        code, _, err = run("exposure")
        assert code == 1
        assert "not found" in err


class TestLifecycle:

    def test_create_activate_reimburse(self, pool):
        code, out, _ = pool("create", "--caller", "issuer", "--holder", "A", "--deposit", "0",
                            "--secured", "100", "--doc-ref", "cid1", now=1000)
        assert code == 0
        created = json.loads(out)
        assert created["policy_id"] == 0
        assert created["expiration_time"] == 2000

        code, out, _ = pool("activate", "--caller", "A", "--policy-id", "0", "--funds", "50", now=1100)
        assert code == 0
        activated = json.loads(out)
        assert activated["activated"] is True
        assert activated["deposit_amount"] == 50
        assert activated["total_secured_amount"] == 100

        code, _, _ = pool("fund", "--caller", "treasury", "--amount", "1000")
        assert code == 0

        code, out, _ = pool("reimburse", "--caller", "claims", "--holder", "A", "--policy-id", "0",
                            "--amount", "80", now=1200)
        assert code == 0
        paid = json.loads(out)
        assert paid["valid"] is False
        assert paid["paid"] == 80
        assert paid["total_secured_amount"] == 0

        code, out, _ = pool("exposure")
        assert json.loads(out) == {"total_secured_amount": 0, "custody_balance": 970, "holders": 1}

        code, out, _ = pool("events", "--verify")
        events = json.loads(out)
        assert events["chain_valid"] is True
        assert [e["event"]["event_type"] for e in events["events"]] == [
            "PolicyCreated",
            "PolicyActivated",
            "PoolFunded",
            "PolicyReimbursed",
        ]

    def test_failed_operation_exits_2_and_keeps_state(self, pool, state_path):
        pool("create", "--caller", "issuer", "--holder", "A", "--deposit", "0",
             "--secured", "100", "--doc-ref", "cid1", now=1000)
        before = state_path.read_bytes()

        code, _, err = pool("create", "--caller", "A", "--holder", "A", "--deposit", "0",
                            "--secured", "100", "--doc-ref", "cid2")
        assert code == 2
        assert "Error [unauthorized]" in err

        code, _, err = pool("reimburse", "--caller", "claims", "--holder", "A", "--policy-id", "0",
                            "--amount", "1")
        assert code == 2
        assert "Error [invalid_state]" in err
        assert state_path.read_bytes() == before

    def test_expired_claim(self, pool):
        pool("create", "--caller", "issuer", "--holder", "A", "--deposit", "0",
             "--secured", "100", "--doc-ref", "cid1", now=1000)
        pool("activate", "--caller", "A", "--policy-id", "0", "--funds", "50", now=1000)
        code, _, err = pool("reimburse", "--caller", "claims", "--holder", "A", "--policy-id", "0",
                            "--amount", "10", now=2001)
        assert code == 2
        assert "Error [expired]" in err


class TestQueries:

    def test_quote(self, pool):
        code, out, _ = pool("quote", "--caller", "issuer", "--secured", "100")
        assert code == 0
        assert json.loads(out)["premium"] == 100

        code, _, err = pool("quote", "--caller", "someone", "--secured", "100")
        assert code == 2

    def test_show_and_list(self, pool):
        for holder in ("A", "B"):
            pool("create", "--caller", "issuer", "--holder", holder, "--deposit", "1",
                 "--secured", "10", "--doc-ref", f"cid-{holder}")
        code, out, _ = pool("show", "--holder", "B", "--policy-id", "0")
        assert json.loads(out)["doc_ref"] == "cid-B"

        code, out, _ = pool("list", "--holder", "A")
        assert [p["holder"] for p in json.loads(out)["policies"]] == ["A"]

        code, _, err = pool("show", "--holder", "B", "--policy-id", "3")
        assert code == 2
        assert "invalid_reference" in err

    def test_table_output(self, pool):
        pool("create", "--caller", "issuer", "--holder", "A", "--deposit", "1",
             "--secured", "10", "--doc-ref", "cid")
        code, out, _ = pool("--format", "table", "list")
        assert code == 0
        assert out.splitlines()[0].startswith("holder")


class TestConfigCommands:

    def test_config_get_with_file(self, run, tmp_path):
        config = tmp_path / "custom.yaml"
        config.write_text("policy:\n  term_seconds: 60\n", encoding="utf-8")
        code, out, _ = run("--config", str(config), "config", "get", "policy.term_seconds")
        assert code == 0
        assert json.loads(out) == {"path": "policy.term_seconds", "value": 60}

    def test_project_config_discovered(self, run, tmp_path):
        (tmp_path / "coverpool.yaml").write_text("policy:\n  term_seconds: 90\n", encoding="utf-8")
        code, out, _ = run("config", "get", "policy.term_seconds")
        assert code == 0
        assert json.loads(out)["value"] == 90

    def test_user_config_overrides_project_config(self, run, tmp_path):
        (tmp_path / "coverpool.yaml").write_text("policy:\n  term_seconds: 90\n", encoding="utf-8")
        user_dir = tmp_path / "home" / ".coverpool"
        user_dir.mkdir(parents=True)
        (user_dir / "config.yaml").write_text(
            "policy:\n  term_seconds: 120\npricing:\n  refund_excess: true\n", encoding="utf-8",
        )
        code, out, _ = run("config", "get", "policy.term_seconds")
        assert json.loads(out)["value"] == 120

    def test_explicit_config_applied_last(self, run, tmp_path):
        (tmp_path / "coverpool.yaml").write_text("policy:\n  term_seconds: 90\n", encoding="utf-8")
        config = tmp_path / "custom.yaml"
        config.write_text("policy:\n  term_seconds: 60\n", encoding="utf-8")
        code, out, _ = run("--config", str(config), "config", "get", "policy.term_seconds")
        assert json.loads(out)["value"] == 60

    def test_discovered_config_drives_init(self, run, tmp_path, state_path):
        (tmp_path / "coverpool.yaml").write_text("policy:\n  term_seconds: 90\n", encoding="utf-8")
        run("init", "--issuer", "issuer", "--claims-authority", "claims", now=1000)
        code, out, _ = run("create", "--caller", "issuer", "--holder", "A", "--deposit", "0",
                           "--secured", "10", "--doc-ref", "cid", now=1000)
        assert code == 0
        assert json.loads(out)["expiration_time"] == 1090
        assert json.loads(state_path.read_text(encoding="utf-8"))["term_seconds"] == 90

    def test_config_validate(self, run):
        code, out, _ = run("config", "validate")
        assert code == 0
        assert json.loads(out) == {"valid": True}

    def test_bad_config_file_exits_1(self, run, tmp_path):
        config = tmp_path / "custom.yaml"
        config.write_text("nonsense: 1\n", encoding="utf-8")
        code, _, err = run("--config", str(config), "config", "show")
        assert code == 1
        assert "Unknown config key" in err


class TestFormatting:

    def test_yaml_output(self):
        assert format_output({"a": 1}, OutputFormat.YAML).strip() == "a: 1"

    def test_text_output(self):
        assert format_output({"a": 1}, OutputFormat.TEXT) == "{'a': 1}"
