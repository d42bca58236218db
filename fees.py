# Meridian Fee Calculator
#
#   fees.platform   = gross × platform_rate
#   fees.processing = gross × processing_rate
#   fees.total      = platform + processing + gas
#   net             = gross − fees.total
#
# Amounts are Decimal end to end. Each part is quantized before the total is
# taken, and net is derived from the quantized total, so net + total == gross
# holds exactly for every Transaction.

import os
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from errors import ValidationError

Amount = Union[Decimal, int, float, str]

QUANTUM = Decimal("0.000001")

PLATFORM_FEE_RATE = os.environ.get("MERIDIAN_PLATFORM_FEE_RATE", "0.025")      # 2.5%
PROCESSING_FEE_RATE = os.environ.get("MERIDIAN_PROCESSING_FEE_RATE", "0.005")  # 0.5%
GAS_FEE = os.environ.get("MERIDIAN_GAS_FEE", "0")


def to_decimal(value: Amount, label: str = "amount") -> Decimal:
    """Coerce a user-supplied amount to Decimal. Floats go through str()."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {label}: {value!r}")
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid {label}: {value!r}")
    if not d.is_finite():
        raise ValidationError(f"Invalid {label}: {value!r}")
    return d


def quantize(value: Decimal) -> Decimal:
    return value.quantize(QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeeSchedule:
    """Fee rates. Configuration, never hardcoded at a call site."""
    platform_rate: Decimal = Decimal(PLATFORM_FEE_RATE)
    processing_rate: Decimal = Decimal(PROCESSING_FEE_RATE)
    gas: Decimal = Decimal(GAS_FEE)

    def __post_init__(self):
        for name in ("platform_rate", "processing_rate", "gas"):
            value = to_decimal(getattr(self, name), name)
            if value < 0:
                raise ValidationError(f"{name} must be >= 0, got {value}")
            object.__setattr__(self, name, value)
        if self.platform_rate + self.processing_rate >= 1:
            raise ValidationError("Combined fee rates must be below 100%")


NO_FEES = FeeSchedule(platform_rate=Decimal("0"), processing_rate=Decimal("0"), gas=Decimal("0"))


@dataclass(frozen=True)
class Fees:
    gross: Decimal
    platform: Decimal
    processing: Decimal
    gas: Decimal
    total: Decimal
    net: Decimal

    def to_dict(self) -> dict:
        return {
            "gross": str(self.gross),
            "platform": str(self.platform),
            "processing": str(self.processing),
            "gas": str(self.gas),
            "total": str(self.total),
            "net": str(self.net),
        }


class FeeCalculator:
    """Pure, deterministic fee computation against one FeeSchedule."""

    def __init__(self, schedule: FeeSchedule = None):
        self.schedule = schedule or FeeSchedule()

    def calculate(self, gross: Amount) -> Fees:
        gross = quantize(to_decimal(gross, "gross amount"))
        if gross <= 0:
            raise ValidationError(f"Gross amount must be > 0, got {gross}")

        platform = quantize(gross * self.schedule.platform_rate)
        processing = quantize(gross * self.schedule.processing_rate)
        gas = quantize(self.schedule.gas)
        total = platform + processing + gas
        if total > gross:
            raise ValidationError(
                f"Fees ({total}) exceed gross amount ({gross})"
            )
        return Fees(
            gross=gross,
            platform=platform,
            processing=processing,
            gas=gas,
            total=total,
            net=gross - total,
        )


def no_fees(gross: Amount) -> Fees:
    """Fee-free breakdown for movements that carry the full amount (deposit, refund)."""
    return FeeCalculator(NO_FEES).calculate(gross)


_calculator = None


def get_fee_calculator() -> FeeCalculator:
    global _calculator
    if _calculator is None:
        _calculator = FeeCalculator()
    return _calculator
