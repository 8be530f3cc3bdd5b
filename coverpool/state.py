"""Pool state persistence.

Exports a ledger (principals, policy records, exposure counter, custody and
event log) as a plain JSON document and rebuilds a ledger from one:

- schema validation against ``schemas/pool.state.schema.json``
- exposure recomputed from records and checked against the stored counter
- event log hash chain verified on load
- canonical JSON bytes on disk so the same state always hashes the same
"""

from __future__ import annotations

import hashlib
import json
import pathlib
from functools import lru_cache
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator

from coverpool.config import PoolConfig, get_config
from coverpool.custody import FundCustody
from coverpool.events import EventLog, canonical_json_bytes
from coverpool.hardening import InvalidReference, InvariantChecker, InvariantViolation
from coverpool.ledger import Clock, Policy, PolicyLedger
from coverpool.observability import PoolLayer, get_logger
from coverpool.security import AuthorizationGate

logger = get_logger("state", PoolLayer.STATE)

STATE_VERSION = 1
SCHEMA_PATH = pathlib.Path(__file__).resolve().parent / "schemas" / "pool.state.schema.json"


class StateError(Exception):
    """Persisted state is unreadable or inconsistent."""
    pass


@lru_cache(maxsize=1)
def state_validator() -> Draft202012Validator:
    schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def validate_state(data: Any) -> List[str]:
    """Return schema violations as ``path: message`` strings (empty if valid)."""
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(state_validator().iter_errors(data), key=lambda e: list(e.path))
    ]


def export_state(ledger: PolicyLedger) -> Dict[str, Any]:
    with ledger.custody.lock:
        return {
            "version": STATE_VERSION,
            "principals": ledger.gate.to_dict(),
            "term_seconds": ledger.term_seconds,
            "options": {
                "quote_requires_issuer": ledger.quote_requires_issuer,
                "refund_excess": ledger.refund_excess,
            },
            "total_secured_amount": ledger.total_secured_amount,
            "policies": [p.to_dict() for p in ledger.all_policies()],
            "custody": ledger.custody.to_dict(),
            "events": ledger.events.export(),
        }


def import_state(
    data: Dict[str, Any],
    clock: Optional[Clock] = None,
    config: Optional[PoolConfig] = None,
) -> PolicyLedger:
    """
    Rebuild a ledger from an exported state document.

    Raises:
        StateError: schema violation, broken event chain, or a record that
            could not have been produced by the lifecycle
    """
    errors = validate_state(data)
    if errors:
        raise StateError(f"invalid pool state: {errors[0]}")

    config = config if config is not None else get_config()
    policies = [Policy.from_dict(p) for p in data["policies"]]
    for policy in policies:
        if not policy.valid and not policy.activated:
            raise StateError(f"policy {policy.holder}/{policy.policy_id} spent without activation")

    events = EventLog.from_export(data["events"])
    ok, bad_index = events.verify_chain()
    if not ok:
        raise StateError(f"event log chain broken at index {bad_index}")

    custody = FundCustody.from_dict(
        data["custody"],
        max_transfer_depth=config.custody.max_transfer_depth.get(),
    )
    try:
        ledger = PolicyLedger.from_records(
            AuthorizationGate.from_dict(data["principals"]),
            policies,
            custody=custody,
            events=events,
            clock=clock,
            config=config,
            term_seconds=data["term_seconds"],
            quote_requires_issuer=data["options"]["quote_requires_issuer"],
            refund_excess=data["options"]["refund_excess"],
        )
    except InvalidReference as e:
        raise StateError(str(e)) from e
    try:
        InvariantChecker.check_exposure(data["total_secured_amount"], ledger.total_secured_amount)
    except InvariantViolation as e:
        raise StateError(str(e)) from e
    return ledger


def state_digest(data: Dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json_bytes(data)).hexdigest()


def save_state(path: pathlib.Path, ledger: PolicyLedger) -> str:
    """Write canonical JSON state to ``path``. Returns its sha256 digest."""
    path = pathlib.Path(path)
    data = export_state(ledger)
    raw = canonical_json_bytes(data)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_bytes(raw + b"\n")
    tmp.replace(path)
    digest = hashlib.sha256(raw).hexdigest()
    logger.info("State saved", operation="save", path=str(path), digest=digest)
    return digest


def load_state(
    path: pathlib.Path,
    clock: Optional[Clock] = None,
    config: Optional[PoolConfig] = None,
) -> PolicyLedger:
    path = pathlib.Path(path)
    if not path.exists():
        raise StateError(f"state file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise StateError(f"state file is not valid JSON: {path}: {e}") from e
    ledger = import_state(data, clock=clock, config=config)
    logger.debug("State loaded", operation="load", path=str(path))
    return ledger


__all__ = [
    "STATE_VERSION",
    "StateError",
    "validate_state",
    "export_state",
    "import_state",
    "state_digest",
    "save_state",
    "load_state",
]
