"""
COVERPOOL Validation and Hardening Module

This module provides the error taxonomy, input validation, and defensive
programming utilities shared by every COVERPOOL component. It addresses:

1. Operation failure kinds with stable error codes
2. Input validation for identities, amounts and content identifiers
3. Thread-safety primitives
4. Ledger invariant enforcement

Security Model:
    - All inputs are untrusted until validated
    - Identity comparisons use constant-time comparisons
    - All state mutations are atomic (journaled and rolled back on failure)
    - All amounts are non-negative integers

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hmac
import re
import threading
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable, List, Optional


# =============================================================================
# OPERATION ERRORS
# =============================================================================

class PoolError(Exception):
    """
    Base exception for every failure that aborts a pool operation.

    Each subclass carries a stable ``code`` used in structured logs and CLI
    output. Raising a PoolError inside a ledger transaction rolls back every
    effect of the operation.
    """

    code = "pool_error"

    def __init__(self, message: str = "", **details: Any):
        self.message = message or self.__class__.__name__
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


class Unauthorized(PoolError):
    """Caller is not the principal configured for the required role."""
    code = "unauthorized"


class InvalidReference(PoolError):
    """Policy id does not index an existing record for the holder."""
    code = "invalid_reference"


class InvalidState(PoolError):
    """Policy is not in a state that permits the requested transition."""
    code = "invalid_state"


class Expired(PoolError):
    """Claim submitted after the policy expiration time."""
    code = "expired"


class InsufficientFunds(PoolError):
    """Activation funding does not exceed the required deposit."""
    code = "insufficient_funds"


class LimitExceeded(PoolError):
    """Claim amount exceeds the policy secured amount."""
    code = "limit_exceeded"


class InsufficientPoolBalance(PoolError):
    """Custody balance cannot cover the requested payout."""
    code = "insufficient_pool_balance"


class TransferFailure(PoolError):
    """Outbound payment was rejected by the recipient."""
    code = "transfer_failure"


class ValidationError(PoolError):
    """Malformed operation input."""

    code = "validation_error"

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.value = value
        super().__init__(f"{field}: {message}", field=field)


class InvariantViolation(Exception):
    """Ledger invariant violated. Indicates a defect, not a caller error."""
    pass


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise the first ValidationError if validation failed."""
        if not self.is_valid:
            raise self.errors[0]

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> 'ValidationResult':
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    # Patterns
    IDENTITY_PATTERN = re.compile(r'^[A-Za-z0-9:._@#+-]{1,256}$')

    # Limits
    MAX_DOC_REF_LENGTH = 512

    @classmethod
    def validate_identity(cls, value: Any, field_name: str = "identity") -> ValidationResult:
        """
        Validate an opaque principal or holder identity.

        Identities are compared byte for byte, so they are never rewritten:
        surrounding whitespace is rejected rather than stripped.
        """
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError(field_name, f"must be string, got {type(value).__name__}", value)
            ])
        if value != value.strip():
            return ValidationResult.failure([
                ValidationError(field_name, "must not have surrounding whitespace", value)
            ])
        if not cls.IDENTITY_PATTERN.fullmatch(value):
            return ValidationResult.failure([
                ValidationError(field_name, "invalid identity format", value)
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_amount(
        cls,
        value: Any,
        field_name: str = "amount",
        allow_zero: bool = True,
    ) -> ValidationResult:
        """
        Validate a monetary amount in the smallest currency unit.

        Amounts are plain integers. Floats and bools are rejected so that
        premium arithmetic never loses precision.
        """
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure([
                ValidationError(field_name, f"must be integer, got {type(value).__name__}", value)
            ])
        if value < 0:
            return ValidationResult.failure([
                ValidationError(field_name, "cannot be negative", value)
            ])
        if value == 0 and not allow_zero:
            return ValidationResult.failure([
                ValidationError(field_name, "must be positive", value)
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_doc_ref(
        cls,
        value: Any,
        max_length: Optional[int] = None,
    ) -> ValidationResult:
        """Validate a content identifier. The value itself is never interpreted."""
        max_length = max_length or cls.MAX_DOC_REF_LENGTH
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError("doc_ref", f"must be string, got {type(value).__name__}", value)
            ])
        if not value:
            return ValidationResult.failure([ValidationError("doc_ref", "cannot be empty", value)])
        if len(value) > max_length:
            return ValidationResult.failure([
                ValidationError("doc_ref", f"exceeds max length {max_length}", len(value))
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_policy_id(cls, value: Any) -> ValidationResult:
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure([
                ValidationError("policy_id", f"must be integer, got {type(value).__name__}", value)
            ])
        return ValidationResult.success(value)


def secure_compare_str(a: str, b: str) -> bool:
    """Constant-time string comparison."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# =============================================================================
# THREAD SAFETY
# =============================================================================

class AtomicCounter:
    """Thread-safe counter."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    def increment(self, delta: int = 1) -> int:
        """Atomically increment and return new value."""
        with self._lock:
            self._value += delta
            return self._value

    def get(self) -> int:
        """Get current value."""
        with self._lock:
            return self._value

    def reset(self, value: int = 0) -> None:
        """Atomically reset the counter to the given value."""
        with self._lock:
            self._value = value


# =============================================================================
# LEDGER INVARIANTS
# =============================================================================

class InvariantChecker:
    """Enforces ledger invariants."""

    @staticmethod
    def check_non_negative(field_name: str, value: int) -> None:
        """Ensure value is non-negative."""
        if value < 0:
            raise InvariantViolation(f"{field_name} cannot be negative: {value}")

    @staticmethod
    def check_exposure(recorded: int, recomputed: int) -> None:
        """Ensure the exposure counter matches the sum over live policies."""
        if recorded != recomputed:
            raise InvariantViolation(
                f"Exposure counter drift: recorded {recorded}, "
                f"sum over live policies {recomputed}"
            )


# =============================================================================
# DECORATOR UTILITIES
# =============================================================================

def atomic(lock_attr: str = "_lock") -> Callable:
    """Decorator to serialize a method on the instance lock named ``lock_attr``."""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            with getattr(self, lock_attr):
                return func(self, *args, **kwargs)
        return wrapper
    return decorator


__all__ = [
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
    "ValidationResult",
    "Validators",
    "secure_compare_str",
    "AtomicCounter",
    "InvariantChecker",
    "atomic",
]
