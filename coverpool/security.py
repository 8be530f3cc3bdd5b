"""
COVERPOOL Security Layer

Authorization boundary and re-entrancy protection for the policy ledger:

1. Role Capability Map - immutable role -> principal binding
2. Role Checks - constant-time caller verification per operation
3. Re-entrancy Guard - per-policy in-progress marker around payouts

Security Model:
    - Principals are captured once at construction and never rotated
    - Fail-secure: an unmatched caller is always rejected
    - Checks-effects-interactions is the primary re-entrancy defense;
      the guard is a second layer for callers without an enclosing
      transaction

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from enum import Enum
from types import MappingProxyType
from typing import Dict, Hashable, Iterator, Mapping, Set

from coverpool.hardening import (
    InvalidState,
    Unauthorized,
    Validators,
    secure_compare_str,
)
from coverpool.observability import PoolLayer, get_logger

logger = get_logger("gate", PoolLayer.SECURITY)


# =============================================================================
# ROLES
# =============================================================================

class Role(Enum):
    """Externally controlled roles."""
    ISSUER = "issuer"
    CLAIMS_AUTHORITY = "claims_authority"


class AuthorizationGate:
    """
    Immutable role capability map.

    Both principals are validated and frozen at construction. The same
    identity may hold both roles, which covers the combined single-principal
    topology without changing the ledger state machine.

    Example:
        gate = AuthorizationGate(issuer="0xIssuer", claims_authority="0xClaims")
        gate.require_issuer("0xIssuer")        # ok
        gate.require_claims_authority("0xEve")  # raises Unauthorized
    """

    __slots__ = ("_principals",)

    def __init__(self, issuer: str, claims_authority: str):
        principals: Dict[Role, str] = {}
        for role, value in ((Role.ISSUER, issuer), (Role.CLAIMS_AUTHORITY, claims_authority)):
            result = Validators.validate_identity(value, f"{role.value}_principal")
            result.raise_if_invalid()
            principals[role] = result.sanitized_value
        object.__setattr__(self, "_principals", MappingProxyType(principals))

    def __setattr__(self, name, value):
        raise AttributeError("AuthorizationGate is immutable")

    @property
    def principals(self) -> Mapping[Role, str]:
        return self._principals

    def principal(self, role: Role) -> str:
        return self._principals[role]

    def has_role(self, role: Role, caller: str) -> bool:
        if not isinstance(caller, str):
            return False
        return secure_compare_str(self._principals[role], caller)

    def require(self, role: Role, caller: str) -> None:
        """Raise Unauthorized unless ``caller`` is the principal for ``role``."""
        if not self.has_role(role, caller):
            logger.warning(
                "Authorization denied",
                operation="require",
                error_code=Unauthorized.code,
                role=role.value,
                caller=str(caller),
            )
            raise Unauthorized(f"caller is not the {role.value}", role=role.value, caller=caller)

    def require_issuer(self, caller: str) -> None:
        self.require(Role.ISSUER, caller)

    def require_claims_authority(self, caller: str) -> None:
        self.require(Role.CLAIMS_AUTHORITY, caller)

    def to_dict(self) -> Dict[str, str]:
        return {role.value: principal for role, principal in self._principals.items()}

    @classmethod
    def from_dict(cls, data: Mapping[str, str]) -> "AuthorizationGate":
        return cls(
            issuer=data[Role.ISSUER.value],
            claims_authority=data[Role.CLAIMS_AUTHORITY.value],
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AuthorizationGate):
            return NotImplemented
        return dict(self._principals) == dict(other._principals)

    def __hash__(self) -> int:
        return hash(tuple(sorted(self.to_dict().items())))

    def __repr__(self) -> str:
        return (
            f"AuthorizationGate(issuer={self.principal(Role.ISSUER)!r}, "
            f"claims_authority={self.principal(Role.CLAIMS_AUTHORITY)!r})"
        )


# =============================================================================
# RE-ENTRANCY GUARD
# =============================================================================

class ReentrancyGuard:
    """
    Scoped in-progress marker keyed by policy.

    Entering a key that is already in progress raises InvalidState. The
    marker is always cleared when the scope exits, whether the operation
    committed or rolled back.
    """

    def __init__(self):
        self._in_progress: Set[Hashable] = set()
        self._lock = threading.Lock()

    @contextmanager
    def enter(self, key: Hashable) -> Iterator[None]:
        with self._lock:
            if key in self._in_progress:
                raise InvalidState("operation already in progress for policy", key=repr(key))
            self._in_progress.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._in_progress.discard(key)

    def is_active(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._in_progress


__all__ = [
    "Role",
    "AuthorizationGate",
    "ReentrancyGuard",
]
