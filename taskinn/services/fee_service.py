from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Tuple

from taskinn.core.currencies import Currency, CURRENCY_QUANTUM


class FeeService:
    """Commission arithmetic for ledger settlements"""

    @staticmethod
    def quantize(amount: Decimal, currency: Currency) -> Decimal:
        """Round an amount to the currency's smallest unit (half-up)"""
        return Decimal(amount).quantize(CURRENCY_QUANTUM[currency], rounding=ROUND_HALF_UP)

    @staticmethod
    def to_amount(value, currency: Currency) -> Decimal:
        """
        Parse an amount without losing precision

        Args:
            value: Decimal, int or numeric string (floats go through str())
            currency: Currency the amount is expressed in

        Returns:
            The amount as a Decimal

        Raises:
            ValueError: if the value is not a finite number or carries more
                precision than the currency supports
        """
        try:
            amount = Decimal(str(value)) if not isinstance(value, Decimal) else value
        except (InvalidOperation, ValueError):
            raise ValueError(f"Invalid amount: {value!r}")

        if not amount.is_finite():
            raise ValueError(f"Invalid amount: {value!r}")

        if amount != FeeService.quantize(amount, currency):
            raise ValueError(
                f"{currency.value} amounts support at most "
                f"{-CURRENCY_QUANTUM[currency].as_tuple().exponent} decimal places"
            )
        return amount

    @staticmethod
    def calculate_commission(amount: Decimal, commission_rate: Decimal, currency: Currency) -> Decimal:
        """
        Calculate the commission on a gross amount

        Args:
            amount: The gross amount
            commission_rate: Fraction kept by the platform (e.g. 0.05 for 5%)
            currency: Currency used for rounding

        Returns:
            The commission amount, never more than the gross amount
        """
        if commission_rate <= 0:
            return Decimal('0')

        commission = FeeService.quantize(amount * commission_rate, currency)
        return min(commission, amount)

    @staticmethod
    def split_gross_amount(amount: Decimal, commission_rate: Decimal, currency: Currency) -> Tuple[Decimal, Decimal]:
        """
        Split a gross amount into commission and net

        Returns:
            Tuple of (net_amount, commission_amount); they always add back up
            to the gross amount exactly
        """
        commission = FeeService.calculate_commission(amount, commission_rate, currency)
        return amount - commission, commission
