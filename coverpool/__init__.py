"""
COVERPOOL — Custodial Coverage Ledger

Issues, activates, prices and pays out bounded monetary coverage ("policies")
against pooled deposited funds. Two externally controlled principals drive
it: an Issuer that originates and prices coverage, and a ClaimsAuthority
that triggers payouts.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                         CUSTODIAL COVERAGE LEDGER                        │
    │                                                                          │
    │  OPERATIONS                                                              │
    │    ledger.py      Policy lifecycle state machine, exposure, transactions │
    │    state.py       Schema-validated JSON persistence                      │
    │    cli.py         Command-line interface over a state file               │
    │                                                                          │
    │  COMPONENTS                                                              │
    │    security.py    Role capability map and re-entrancy guard              │
    │    pricing.py     Pooled-exposure premium model                          │
    │    custody.py     Pooled balance and verified outbound transfers         │
    │    events.py      Hash-chained append-only event log and bus             │
    │                                                                          │
    │  FOUNDATION                                                              │
    │    hardening.py   Error taxonomy, validators, invariant checks           │
    │    config.py      YAML and environment configuration                     │
    │    observability.py  Structured logging and operation timing             │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Core Guarantees
───────────────

    No double payment: a policy is marked spent before any funds move, and a
    spent policy can never be claimed again.

    Bounded payment: a claim never exceeds the policy's secured amount nor
    the custody balance.

    No late payment: claims after the expiration time are rejected.

    All-or-nothing: every operation either commits all of its effects
    (record changes, exposure, custody movements, events) or none.

Copyright © 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

__version__ = "0.1.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import COVERPOOL modules on first access."""

    if name in ("Policy", "PolicyLedger", "ActivationReceipt", "system_clock"):
        from coverpool import ledger
        return getattr(ledger, name)

    if name in ("Role", "AuthorizationGate", "ReentrancyGuard"):
        from coverpool import security
        return getattr(security, name)

    if name in ("PremiumModel", "PremiumQuote"):
        from coverpool import pricing
        return getattr(pricing, name)

    if name in ("FundCustody", "TransferRecord"):
        from coverpool import custody
        return getattr(custody, name)

    if name in ("Event", "EventLog", "EventBus", "PolicyCreated", "PolicyActivated",
                "PolicyReimbursed", "PremiumRefunded", "PoolFunded"):
        from coverpool import events
        return getattr(events, name)

    if name in ("PoolError", "Unauthorized", "InvalidReference", "InvalidState",
                "Expired", "InsufficientFunds", "LimitExceeded",
                "InsufficientPoolBalance", "TransferFailure", "ValidationError",
                "InvariantViolation"):
        from coverpool import hardening
        return getattr(hardening, name)

    if name in ("export_state", "import_state", "save_state", "load_state", "StateError"):
        from coverpool import state
        return getattr(state, name)

    raise AttributeError(f"module 'coverpool' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Ledger
    "Policy",
    "PolicyLedger",
    "ActivationReceipt",
    "system_clock",
    # Security
    "Role",
    "AuthorizationGate",
    "ReentrancyGuard",
    # Pricing
    "PremiumModel",
    "PremiumQuote",
    # Custody
    "FundCustody",
    "TransferRecord",
    # Events
    "Event",
    "EventLog",
    "EventBus",
    "PolicyCreated",
    "PolicyActivated",
    "PolicyReimbursed",
    "PremiumRefunded",
    "PoolFunded",
    # Errors
    "PoolError",
    "Unauthorized",
    "InvalidReference",
    "InvalidState",
    "Expired",
    "InsufficientFunds",
    "LimitExceeded",
    "InsufficientPoolBalance",
    "TransferFailure",
    "ValidationError",
    "InvariantViolation",
    # State
    "export_state",
    "import_state",
    "save_state",
    "load_state",
    "StateError",
]
