"""
Authorization gate and re-entrancy guard tests.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import pytest

from coverpool.hardening import InvalidState, Unauthorized, ValidationError
from coverpool.security import AuthorizationGate, ReentrancyGuard, Role


class TestAuthorizationGate:

    def test_principals_bound_at_construction(self):
        gate = AuthorizationGate(issuer="0xIssuer", claims_authority="0xClaims")
        assert gate.principal(Role.ISSUER) == "0xIssuer"
        assert gate.principal(Role.CLAIMS_AUTHORITY) == "0xClaims"

    def test_require_accepts_matching_caller(self):
        gate = AuthorizationGate(issuer="0xIssuer", claims_authority="0xClaims")
        gate.require_issuer("0xIssuer")
        gate.require_claims_authority("0xClaims")

    def test_roles_are_not_interchangeable(self):
        gate = AuthorizationGate(issuer="0xIssuer", claims_authority="0xClaims")
        with pytest.raises(Unauthorized):
            gate.require_issuer("0xClaims")
        with pytest.raises(Unauthorized):
            gate.require_claims_authority("0xIssuer")

    def test_unauthorized_carries_role(self):
        gate = AuthorizationGate(issuer="a", claims_authority="b")
        with pytest.raises(Unauthorized) as exc_info:
            gate.require(Role.CLAIMS_AUTHORITY, "eve")
        assert exc_info.value.code == "unauthorized"
        assert exc_info.value.details["role"] == "claims_authority"

    def test_non_string_caller_rejected(self):
        gate = AuthorizationGate(issuer="a", claims_authority="b")
        assert not gate.has_role(Role.ISSUER, None)
        with pytest.raises(Unauthorized):
            gate.require_issuer(42)

    def test_same_identity_may_hold_both_roles(self):
        gate = AuthorizationGate(issuer="ops", claims_authority="ops")
        gate.require_issuer("ops")
        gate.require_claims_authority("ops")

    def test_gate_is_immutable(self):
        gate = AuthorizationGate(issuer="a", claims_authority="b")
        with pytest.raises(AttributeError):
            gate._principals = {}
        with pytest.raises(TypeError):
            gate.principals[Role.ISSUER] = "eve"
        assert gate.principal(Role.ISSUER) == "a"

    @pytest.mark.parametrize("bad", ["", "has space", " padded", "padded ", "line\n", None, 7, "x" * 300])
    def test_invalid_principal_rejected(self, bad):
        with pytest.raises(ValidationError):
            AuthorizationGate(issuer=bad, claims_authority="b")

    def test_dict_round_trip_and_equality(self):
        gate = AuthorizationGate(issuer="a", claims_authority="b")
        restored = AuthorizationGate.from_dict(gate.to_dict())
        assert restored == gate
        assert hash(restored) == hash(gate)
        assert gate.to_dict() == {"issuer": "a", "claims_authority": "b"}


class TestReentrancyGuard:

    def test_nested_entry_same_key_rejected(self):
        guard = ReentrancyGuard()
        with guard.enter(("alice", 0)):
            assert guard.is_active(("alice", 0))
            with pytest.raises(InvalidState):
                with guard.enter(("alice", 0)):
                    pass

    def test_different_keys_independent(self):
        guard = ReentrancyGuard()
        with guard.enter(("alice", 0)):
            with guard.enter(("alice", 1)):
                assert guard.is_active(("alice", 1))

    def test_marker_cleared_after_failure(self):
        guard = ReentrancyGuard()
        with pytest.raises(RuntimeError):
            with guard.enter("k"):
                raise RuntimeError("boom")
        assert not guard.is_active("k")
        with guard.enter("k"):
            pass
