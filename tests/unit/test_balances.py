"""
test_balances.py - Unit tests for balances.py

Tests:
- normalize / to_raw: exact fixed-point scaling
- aggregate: valuation, missing prices, reference asset
- Yield math: compound APY, RAY rates, levels
- BalanceAggregator.fetch_assets: per-token failure isolation
"""

import asyncio
import pytest
from decimal import Decimal

from deficity import (
    BalanceAggregator, NetworkError, StaticPricingSource, ValidationError,
    WalletAsset, DEFAULT_TOKENS, NATIVE_ASSET_ADDRESS, RAY,
    aggregate, building_level, compound_apy, normalize, ray_rate_to_apy,
    to_raw, yield_per_day,
)
from tests.helpers import SMART_ACCOUNT


def eth(balance: str) -> WalletAsset:
    return WalletAsset("ETH", balance, 18, NATIVE_ASSET_ADDRESS, is_native=True)


def usdc(balance: str) -> WalletAsset:
    return WalletAsset("USDC", balance, 6, "0xba50Cd2A20f6DA35D788639E581bca8d0B5d4D5f")


class TestNormalize:

    @pytest.mark.parametrize("raw,decimals,expected", [
        (1_500_000_000_000_000_000, 18, "1.5"),
        (1_000_000_000, 6, "1000"),
        (1, 18, "0.000000000000000001"),
        (0, 18, "0"),
        (123, 0, "123"),
        (-2_500_000, 6, "-2.5"),
    ])
    def test_examples(self, raw, decimals, expected):
        assert normalize(raw, decimals) == expected

    def test_huge_value_keeps_every_digit(self):
        raw = 2 ** 256 - 1
        text = normalize(raw, 18)
        assert text.replace(".", "") == str(raw)

    def test_rejects_float(self):
        with pytest.raises(ValidationError):
            normalize(1.5, 6)

    def test_rejects_negative_decimals(self):
        with pytest.raises(ValidationError):
            normalize(1, -1)


class TestToRaw:

    def test_inverse_of_normalize(self):
        assert to_raw("1.5", 18) == 1_500_000_000_000_000_000
        assert to_raw(Decimal("1000"), 6) == 1_000_000_000

    def test_too_many_fractional_digits(self):
        with pytest.raises(ValidationError):
            to_raw("0.0000001", 6)

    def test_rejects_garbage(self):
        with pytest.raises(ValidationError):
            to_raw("lots", 6)

    def test_rejects_float(self):
        with pytest.raises(ValidationError):
            to_raw(0.1, 6)


class TestAggregate:
    """Tests for portfolio valuation."""

    def test_native_plus_stablecoin(self):
        """1.5 ETH at 3000 plus 1000 USDC at 1 is worth 5500."""
        value = aggregate([eth("1.5"), usdc("1000")],
                          {'ETH': Decimal("3000"), 'USDC': Decimal("1")})
        assert value.total_value == Decimal("5500")
        assert value.total_value_in_reference == Decimal("5500") / Decimal("3000")
        assert not value.is_partial

    def test_accepts_pricing_source(self):
        source = StaticPricingSource({'ETH': 3000, 'USDC': 1})
        assert aggregate([eth("1.5"), usdc("1000")], source).total_value == Decimal("5500")

    def test_missing_price_counts_as_zero(self):
        value = aggregate([eth("2"), usdc("10")], {'ETH': Decimal("3000")})
        assert value.total_value == Decimal("6000")
        assert value.asset_values['USDC'] == 0
        assert value.unpriced == ("USDC",)
        assert value.is_partial

    def test_no_reference_price(self):
        value = aggregate([usdc("10")], {'USDC': Decimal("1")})
        assert value.total_value == Decimal("10")
        assert value.total_value_in_reference is None

    def test_empty(self):
        value = aggregate([], {'ETH': Decimal("3000")})
        assert value.total_value == 0
        assert value.total_value_in_reference == 0

    def test_failing_pricing_source_values_zero(self):
        class Down:
            base_currency = "USD"

            def get_price(self, symbol):
                raise NetworkError("feed down")

            def get_prices(self, symbols):
                raise NetworkError("feed down")

        value = aggregate([eth("1")], Down())
        assert value.total_value == 0
        assert value.unpriced == ("ETH",)


class TestYieldMath:

    def test_compounding_beats_simple_interest(self):
        apy = compound_apy(Decimal("0.0001"), 365)
        assert apy > Decimal("0.0365")
        assert apy == pytest.approx(Decimal("0.03717"), abs=Decimal("0.00001"))

    def test_single_period_is_the_rate(self):
        assert compound_apy(Decimal("0.05"), 1) == Decimal("0.05")

    def test_ray_rate(self):
        """A 5% annual rate compounded every second is about 5.127% APY."""
        apy = ray_rate_to_apy(RAY * 5 // 100)
        assert apy == pytest.approx(Decimal("0.05127"), abs=Decimal("0.00001"))

    def test_zero_periods_rejected(self):
        with pytest.raises(ValidationError):
            compound_apy(Decimal("0.1"), 0)

    def test_yield_per_day(self):
        assert yield_per_day(Decimal("3650"), Decimal("10")) == Decimal("1")

    @pytest.mark.parametrize("value,level", [
        (0, 1), (99, 1), (100, 2), (499, 2), (500, 3), (1000, 4), (2000, 5), (10 ** 9, 5),
    ])
    def test_building_level(self, value, level):
        assert building_level(Decimal(value)) == level


class FlakyBalanceReader:
    """Reader whose USDC balance read fails."""

    async def fetch_native_balance(self, address):
        return 1_500_000_000_000_000_000

    async def fetch_token_balance(self, token_address, address):
        raise NetworkError("rpc timeout")


class TestBalanceAggregator:

    def test_fetch_isolates_failing_token(self):
        aggregator = BalanceAggregator(DEFAULT_TOKENS)
        fetched = asyncio.run(aggregator.fetch_assets(FlakyBalanceReader(), SMART_ACCOUNT))
        assert [a.symbol for a in fetched.assets] == ["ETH"]
        assert fetched.assets[0].balance == "1.5"
        assert "USDC" in fetched.errors

    def test_aggregate_uses_configured_pricing(self, prices):
        aggregator = BalanceAggregator(DEFAULT_TOKENS, prices)
        assert aggregator.aggregate([eth("1.5"), usdc("1000")]).total_value == Decimal("5500")

    def test_aggregate_without_pricing_is_zero(self):
        aggregator = BalanceAggregator(DEFAULT_TOKENS)
        value = aggregator.aggregate([eth("1")])
        assert value.total_value == 0
        assert value.unpriced == ("ETH",)
