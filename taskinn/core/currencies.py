"""Supported wallet currencies and the rail each one settles through."""
from decimal import Decimal
from enum import Enum


class Currency(str, Enum):
    USD = "USD"
    USDT_TRC20 = "USDT_TRC20"


class Rail(str, Enum):
    PAYPAL = "paypal"
    COINPAYMENTS = "coinpayments"
    INTERNAL = "internal"


# Smallest unit each currency is settled in
CURRENCY_QUANTUM = {
    Currency.USD: Decimal("0.01"),
    Currency.USDT_TRC20: Decimal("0.000001"),  # USDT has 6 decimals
}

CURRENCY_RAILS = {
    Currency.USD: Rail.PAYPAL,
    Currency.USDT_TRC20: Rail.COINPAYMENTS,
}

# Payouts on these rails wait for an operator before they are final
MANUAL_REVIEW_RAILS = {Rail.COINPAYMENTS}

# Currency codes as the crypto rail spells them
COINPAYMENTS_CODES = {
    Currency.USDT_TRC20: "USDT.TRC20",
}
