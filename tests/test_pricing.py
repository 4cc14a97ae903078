"""
Tests for tiers, conversions and the payment tolerance rule.
"""

from decimal import Decimal

import pytest

from creditpay.errors import InvalidTierError, ValidationError
from creditpay.pricing import (
    credits_to_units,
    meets_tolerance,
    refund_credits,
    tier_price,
    units_to_credits,
    usd_to_credits,
    usd_to_sats,
    usd_to_token_units,
    valid_tiers,
)


class TestTiers:
    def test_prices(self) -> None:
        assert tier_price(10) == Decimal("1")
        assert tier_price(1000) == Decimal("100")
        assert tier_price(10000) == Decimal("800")
        assert tier_price(100000) == Decimal("5000")

    @pytest.mark.parametrize("credits", [0, 11, 500, -1000, True, "1000", 1000.0])
    def test_invalid_tier_lists_valid_amounts(self, credits) -> None:
        with pytest.raises(InvalidTierError) as exc_info:
            tier_price(credits)
        assert exc_info.value.to_dict()["valid_amounts"] == valid_tiers()
        assert exc_info.value.http_status == 400


class TestTolerance:
    """Received counts as paid at >= 95% of required."""

    def test_exactly_95_percent_passes(self) -> None:
        assert meets_tolerance(95_000_000, 100_000_000) is True

    def test_94_9_percent_fails(self) -> None:
        assert meets_tolerance(94_900_000, 100_000_000) is False

    def test_one_unit_below_boundary_fails(self) -> None:
        assert meets_tolerance(94_999_999, 100_000_000) is False

    def test_overpayment_passes(self) -> None:
        assert meets_tolerance(150, 100) is True

    def test_integer_rule_no_float_drift(self) -> None:
        # 0.95 * 19 = 18.05 -> 18 units is not enough
        assert meets_tolerance(18, 19) is False
        assert meets_tolerance(19, 19) is True


class TestConversions:
    def test_usd_to_usdc_units(self) -> None:
        assert usd_to_token_units(Decimal("100")) == 100_000_000
        assert usd_to_token_units("0.0000019") == 1

    def test_usd_to_sats_rounds_up(self) -> None:
        # $100 at $60,000 = 166666.67 sats
        assert usd_to_sats(Decimal("100"), Decimal("60000")) == 166_667

    def test_usd_to_sats_rejects_bad_price(self) -> None:
        with pytest.raises(ValueError):
            usd_to_sats(Decimal("1"), Decimal("0"))

    @pytest.mark.parametrize(
        "usd,credits",
        [("5", 50), ("8", 80), ("0.01", 1), ("0.11", 2), ("2.50", 25)],
    )
    def test_usd_to_credits_ceil(self, usd: str, credits: int) -> None:
        assert usd_to_credits(Decimal(usd)) == credits

    def test_usd_to_credits_from_float(self) -> None:
        # 0.3 * 10 must not become 3.0000000000000004 -> 4
        assert usd_to_credits(0.3) == 3

    def test_credit_units(self) -> None:
        assert credits_to_units(Decimal("1.5")) == 1500
        assert units_to_credits(1500) == Decimal("1.5")
        assert units_to_credits(40_000) == Decimal("40")

    def test_credit_units_too_fine(self) -> None:
        with pytest.raises(ValidationError):
            credits_to_units(Decimal("0.0001"))

    @pytest.mark.parametrize(
        "held,pct,refund",
        [(80, 50, 40), (80, 100, 80), (80, 0, 0), (7, 33, 2), (1, 99, 0)],
    )
    def test_refund_floor(self, held: int, pct: int, refund: int) -> None:
        assert refund_credits(held, pct) == refund
