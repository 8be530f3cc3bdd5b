"""
COVERPOOL Premium Model

Pooled-exposure pricing. The premium for new coverage is the secured amount
plus a risk loading proportional to the exposure the pool already carries,
diluted by the funds the pool holds:

    risk_loading = floor(secured * exposure / (treasury + secured))
    premium      = secured + risk_loading

The model is pure: it owns no state and never mutates its inputs. Higher
exposure yields a higher premium; a better funded pool yields a premium
closer to the bare secured amount.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict

from coverpool.hardening import Validators


@dataclass(frozen=True)
class PremiumQuote:
    """Premium with its breakdown and the pool state it was priced against."""
    secured_amount: int
    total_secured_amount: int
    treasury_balance: int
    risk_loading: int
    premium: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PremiumModel:
    """Stateless pricing function over (coverage, exposure, treasury)."""

    @staticmethod
    def risk_loading(secured_amount: int, total_secured_amount: int, treasury_balance: int) -> int:
        Validators.validate_amount(secured_amount, "secured_amount", allow_zero=False).raise_if_invalid()
        Validators.validate_amount(total_secured_amount, "total_secured_amount").raise_if_invalid()
        Validators.validate_amount(treasury_balance, "treasury_balance").raise_if_invalid()
        return (secured_amount * total_secured_amount) // (treasury_balance + secured_amount)

    @classmethod
    def premium(cls, secured_amount: int, total_secured_amount: int, treasury_balance: int) -> int:
        """
        Price coverage of ``secured_amount``.

        Examples:
            >>> PremiumModel.premium(100, 0, 1000)
            100
            >>> PremiumModel.premium(100, 500, 500)
            183
        """
        return secured_amount + cls.risk_loading(secured_amount, total_secured_amount, treasury_balance)

    @classmethod
    def quote(cls, secured_amount: int, total_secured_amount: int, treasury_balance: int) -> PremiumQuote:
        loading = cls.risk_loading(secured_amount, total_secured_amount, treasury_balance)
        return PremiumQuote(
            secured_amount=secured_amount,
            total_secured_amount=total_secured_amount,
            treasury_balance=treasury_balance,
            risk_loading=loading,
            premium=secured_amount + loading,
        )


__all__ = ["PremiumQuote", "PremiumModel"]
