import logging
import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import coverpool`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from coverpool.config import ConfigManager  # noqa: E402
from coverpool.ledger import PolicyLedger  # noqa: E402
from coverpool.security import AuthorizationGate  # noqa: E402

ISSUER = "issuer"
CLAIMS = "claims"
T0 = 1_700_000_000
TERM = 1_000


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow concurrency tests (skipped unless COVERPOOL_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('COVERPOOL_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set COVERPOOL_RUN_SLOW=1 to enable'))


class ManualClock:
    """Settable ledger clock."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
    """Fresh configuration and no leftover log handlers for every test."""
    for name in list(os.environ):
        if name.startswith("COVERPOOL_"):
            monkeypatch.delenv(name, raising=False)
    ConfigManager().reset()
    yield
    ConfigManager().reset()
    root = logging.getLogger("coverpool")
    for handler in list(root.handlers):
        root.removeHandler(handler)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def gate():
    return AuthorizationGate(issuer=ISSUER, claims_authority=CLAIMS)


@pytest.fixture
def ledger(gate, clock):
    return PolicyLedger(gate, clock=clock, term_seconds=TERM)


@pytest.fixture
def live_policy(ledger):
    """alice holds policy 0: deposit 50, secured 100, activated."""
    pid = ledger.create(ISSUER, "alice", 0, 100, "bafy-alice-0")
    ledger.activate("alice", pid, 50)
    return pid
