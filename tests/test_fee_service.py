from decimal import Decimal

import pytest

from taskinn.core.currencies import Currency
from taskinn.services.fee_service import FeeService


class TestCommission:

    def test_commission_rounds_half_up_to_cents(self):
        net, commission = FeeService.split_gross_amount(Decimal("33.33"), Decimal("0.05"), Currency.USD)
        assert commission == Decimal("1.67")
        assert net == Decimal("31.66")

    def test_usdt_keeps_six_decimals(self):
        net, commission = FeeService.split_gross_amount(
            Decimal("1.234567"), Decimal("0.05"), Currency.USDT_TRC20
        )
        assert commission == Decimal("0.061728")
        assert net == Decimal("1.172839")

    @pytest.mark.parametrize("amount,rate", [
        (Decimal("0.01"), Decimal("0.9999")),
        (Decimal("19.99"), Decimal("0.0333")),
        (Decimal("50000.00"), Decimal("0.05")),
    ])
    def test_net_and_commission_add_up(self, amount, rate):
        net, commission = FeeService.split_gross_amount(amount, rate, Currency.USD)
        assert net + commission == amount
        assert Decimal("0") <= commission <= amount

    def test_zero_rate_takes_nothing(self):
        assert FeeService.calculate_commission(Decimal("10.00"), Decimal("0"), Currency.USD) == Decimal("0")


class TestAmountParsing:

    def test_accepts_strings_ints_and_floats(self):
        assert FeeService.to_amount("10.50", Currency.USD) == Decimal("10.50")
        assert FeeService.to_amount(7, Currency.USD) == Decimal("7")
        assert FeeService.to_amount(10.5, Currency.USD) == Decimal("10.5")

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", "10.001"])
    def test_rejects_invalid_or_too_precise(self, value):
        with pytest.raises(ValueError):
            FeeService.to_amount(value, Currency.USD)

    def test_usdt_precision(self):
        assert FeeService.to_amount("0.000001", Currency.USDT_TRC20) == Decimal("0.000001")
        with pytest.raises(ValueError):
            FeeService.to_amount("0.0000001", Currency.USDT_TRC20)
