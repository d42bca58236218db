"""Tests for Meridian fee calculation: exact Decimal arithmetic."""

from decimal import Decimal

import pytest

from errors import ValidationError
from fees import FeeCalculator, FeeSchedule, no_fees, quantize, to_decimal


class TestFeeCalculator:
    """net + total == gross, always."""

    def test_default_schedule_on_100(self):
        fees = FeeCalculator().calculate("100")
        assert fees.platform == Decimal("2.500000")
        assert fees.processing == Decimal("0.500000")
        assert fees.total == Decimal("3.000000")
        assert fees.net == Decimal("97.000000")

    @pytest.mark.parametrize("gross", ["0.01", "0.333333", "1", "19.99", "12345.678901"])
    def test_net_plus_total_is_gross(self, gross):
        fees = FeeCalculator().calculate(gross)
        assert fees.net + fees.total == fees.gross
        assert fees.net >= 0

    def test_float_input_goes_through_str(self):
        fees = FeeCalculator().calculate(0.1)
        assert fees.gross == Decimal("0.100000")

    def test_gas_is_added_to_total(self):
        calc = FeeCalculator(FeeSchedule(platform_rate="0.01", processing_rate="0", gas="0.25"))
        fees = calc.calculate("10")
        assert fees.gas == Decimal("0.250000")
        assert fees.total == Decimal("0.350000")
        assert fees.net == Decimal("9.650000")

    def test_rejects_non_positive_gross(self):
        with pytest.raises(ValidationError):
            FeeCalculator().calculate("0")
        with pytest.raises(ValidationError):
            FeeCalculator().calculate("-5")

    def test_rejects_fees_exceeding_gross(self):
        calc = FeeCalculator(FeeSchedule(platform_rate="0", processing_rate="0", gas="5"))
        with pytest.raises(ValidationError):
            calc.calculate("1")

    def test_no_fees_moves_full_amount(self):
        fees = no_fees("42.5")
        assert fees.total == 0
        assert fees.net == fees.gross == Decimal("42.500000")

    def test_to_dict_is_strings(self):
        d = FeeCalculator().calculate("100").to_dict()
        assert d["net"] == "97.000000"
        assert all(isinstance(v, str) for v in d.values())


class TestFeeSchedule:
    def test_negative_rate_rejected(self):
        with pytest.raises(ValidationError):
            FeeSchedule(platform_rate="-0.1")

    def test_combined_rates_below_one(self):
        with pytest.raises(ValidationError):
            FeeSchedule(platform_rate="0.6", processing_rate="0.4")


class TestAmounts:
    def test_to_decimal_rejects_garbage(self):
        for bad in ("abc", None, True, float("nan"), float("inf")):
            with pytest.raises(ValidationError):
                to_decimal(bad)

    def test_quantize_half_up(self):
        assert quantize(Decimal("1.0000005")) == Decimal("1.000001")
