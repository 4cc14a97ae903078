"""
Credit tiers, unit conversion and the shared payment tolerance rule.

All chain comparisons happen in the chain's smallest unit (satoshis,
6-decimal token units). USD and credit amounts are derived quantities.
"""

from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Union

from .errors import InvalidTierError, ValidationError

Number = Union[int, float, str, Decimal]

# credits -> USD price
CREDIT_TIERS: dict[int, Decimal] = {
    10: Decimal("1"),
    1000: Decimal("100"),
    10000: Decimal("800"),
    100000: Decimal("5000"),
}

# Escrow/usage conversion: 1 credit = $0.10
CREDITS_PER_USD = Decimal("10")

# Ledger balances are stored in milli-credits
CREDIT_UNITS = 1000

SATS_PER_BTC = Decimal("100000000")
USDC_DECIMALS = 6

# Received >= 95% of required counts as paid (quote drift, provider rounding)
PAYMENT_TOLERANCE_PERCENT = 95


def to_decimal(value: Number) -> Decimal:
    """Convert via str so floats keep their printed precision."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, str):
        return Decimal(value)
    return Decimal(str(value))


def valid_tiers() -> list[int]:
    return sorted(CREDIT_TIERS)


def tier_price(credits: int) -> Decimal:
    """USD price of a credit tier; raises InvalidTierError for anything else."""
    if isinstance(credits, bool) or not isinstance(credits, int) or credits not in CREDIT_TIERS:
        raise InvalidTierError(credits, valid_tiers())
    return CREDIT_TIERS[credits]


def meets_tolerance(received: int, required: int, percent: int = PAYMENT_TOLERANCE_PERCENT) -> bool:
    """
    Integer tolerance check: received / required >= percent / 100.

    >>> meets_tolerance(950, 1000)
    True
    >>> meets_tolerance(949, 1000)
    False
    """
    if required <= 0:
        return received >= 0
    return received * 100 >= required * percent


def usd_to_token_units(usd: Number, decimals: int = USDC_DECIMALS) -> int:
    """USD -> stablecoin minor units (1:1 peg)."""
    scaled = to_decimal(usd) * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def token_units_to_decimal(units: int, decimals: int = USDC_DECIMALS) -> Decimal:
    return Decimal(units) / (Decimal(10) ** decimals)


def usd_to_sats(usd: Number, btc_price_usd: Number) -> int:
    """USD -> satoshis at the given BTC price, rounded up."""
    price = to_decimal(btc_price_usd)
    if price <= 0:
        raise ValueError("BTC price must be positive")
    sats = to_decimal(usd) / price * SATS_PER_BTC
    return int(sats.to_integral_value(rounding=ROUND_CEILING))


def sats_to_btc(sats: int) -> Decimal:
    return Decimal(sats) / SATS_PER_BTC


def usd_to_credits(amount_usd: Number) -> int:
    """Credits needed to cover a USD amount: ceil(amount_usd * 10)."""
    credits = to_decimal(amount_usd) * CREDITS_PER_USD
    return int(credits.to_integral_value(rounding=ROUND_CEILING))


def credits_to_units(credits: Number) -> int:
    """Credits -> ledger milli-credit units. Finer fractions are rejected."""
    scaled = to_decimal(credits) * CREDIT_UNITS
    if scaled != scaled.to_integral_value():
        raise ValidationError(f"Credit amount {credits} is finer than 0.001")
    return int(scaled)


def units_to_credits(units: int) -> Decimal:
    value = Decimal(units) / CREDIT_UNITS
    return value.quantize(Decimal(1)) if value == value.to_integral_value() else value.normalize()


def refund_credits(credits_held: int, refund_percent: int) -> int:
    """floor(credits_held * refund_percent / 100)."""
    return (credits_held * refund_percent) // 100
