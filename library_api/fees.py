from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Protocol

_CENTS = Decimal("0.01")


class FeePolicy(Protocol):
    """Strategy the lending service asks for the fee of a late return."""

    def compute_late_fee(self, days_overdue: int) -> Decimal:
        ...


class PerDayFeePolicy:
    """Fixed amount per overdue day, optionally capped."""

    def __init__(self, rate: Decimal | str | int = "0.50", cap: Optional[Decimal | str | int] = None) -> None:
        self.rate = Decimal(str(rate))
        self.cap = Decimal(str(cap)) if cap not in (None, "") else None
        if self.rate < 0:
            raise ValueError("Late fee rate cannot be negative.")
        if self.cap is not None and self.cap < 0:
            raise ValueError("Late fee cap cannot be negative.")

    def compute_late_fee(self, days_overdue: int) -> Decimal:
        fee = self.rate * max(0, days_overdue)
        if self.cap is not None:
            fee = min(fee, self.cap)
        return fee.quantize(_CENTS, rounding=ROUND_HALF_UP)


class NoFeePolicy:
    def compute_late_fee(self, days_overdue: int) -> Decimal:
        return Decimal("0.00")
