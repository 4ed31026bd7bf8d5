"""
balances.py - Balance normalization, valuation and yield math

Raw ledger balances are unbounded integers in an asset's smallest unit.
This module converts them to exact decimal quantities, values them against a
pricing source and derives the yield figures shown on buildings.

Valuation policy: an asset without a price contributes ZERO to every total.
This is never an error. Unpriced symbols are listed on PortfolioValue.unpriced
so that callers can show the total as partial.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .core import (
    LedgerReader, NetworkError, RAY, SECONDS_PER_YEAR, SyncError, TokenInfo,
    ValidationError, WalletAsset,
)
from .pricing_source import PricingSource


logger = logging.getLogger(__name__)


# Building level thresholds on deposited value (level 1 below the first).
LEVEL_THRESHOLDS: Tuple[Decimal, ...] = (
    Decimal("100"), Decimal("500"), Decimal("1000"), Decimal("2000"),
)

DAYS_PER_YEAR = 365


# ============================================================================
# FIXED-POINT CONVERSION
# ============================================================================

def normalize(raw_amount: int, decimals: int) -> str:
    """
    Scale a raw integer amount into a human-decimal string.

    Pure integer arithmetic: no digit of the integer part or of the fraction
    is ever rounded, for any magnitude. Trailing fractional zeros are
    stripped, and whole amounts have no decimal point.

    Args:
        raw_amount: Amount in the asset's smallest unit
        decimals: Number of fractional digits of the asset

    Returns:
        Decimal string, e.g. normalize(1_500_000, 6) == "1.5"

    Raises:
        ValidationError: If raw_amount is not an int or decimals is negative
    """
    if isinstance(raw_amount, bool) or not isinstance(raw_amount, int):
        raise ValidationError(f"raw_amount must be an int, got {type(raw_amount).__name__}")
    if isinstance(decimals, bool) or not isinstance(decimals, int) or decimals < 0:
        raise ValidationError(f"decimals must be a non-negative int, got {decimals!r}")

    sign = "-" if raw_amount < 0 else ""
    whole, fraction = divmod(abs(raw_amount), 10 ** decimals)
    if decimals == 0 or fraction == 0:
        return f"{sign}{whole}"
    digits = str(fraction).rjust(decimals, "0").rstrip("0")
    return f"{sign}{whole}.{digits}"


def to_raw(amount: Union[str, Decimal, int], decimals: int) -> int:
    """
    Scale a human-decimal amount back into the integer domain.

    Inverse of normalize(): to_raw(normalize(n, d), d) == n for every int n.

    Raises:
        ValidationError: If the amount is not a finite number or carries more
            fractional digits than the asset supports
    """
    if isinstance(decimals, bool) or not isinstance(decimals, int) or decimals < 0:
        raise ValidationError(f"decimals must be a non-negative int, got {decimals!r}")
    if isinstance(amount, float):
        raise ValidationError("Floats are not accepted; pass a string or Decimal")
    try:
        value = Decimal(amount) if not isinstance(amount, Decimal) else amount
    except InvalidOperation:
        raise ValidationError(f"Not a decimal amount: {amount!r}")
    if not value.is_finite():
        raise ValidationError(f"Amount must be finite, got {amount!r}")

    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValidationError(f"{amount} has more than {decimals} fractional digits")
    return int(scaled)


# ============================================================================
# YIELD MATH
# ============================================================================

def compound_apy(rate_per_period: Decimal, periods_per_year: int) -> Decimal:
    """
    Annualize a per-period rate by compounding: (1 + r) ** n - 1.

    Example: 0.0001 per day over 365 days is about 3.718%, not 3.65%.
    """
    if periods_per_year < 1:
        raise ValidationError(f"periods_per_year must be positive, got {periods_per_year}")
    return (Decimal(1) + Decimal(rate_per_period)) ** periods_per_year - Decimal(1)


def ray_rate_to_apy(rate_ray: int) -> Decimal:
    """
    Convert a lending-pool rate into an APY.

    Pools report an annual rate scaled by RAY (1e27) that accrues per second,
    so the per-period rate is rate / RAY / SECONDS_PER_YEAR compounded over
    SECONDS_PER_YEAR periods.
    """
    apr = Decimal(rate_ray) / Decimal(RAY)
    return compound_apy(apr / SECONDS_PER_YEAR, SECONDS_PER_YEAR)


def yield_per_day(total: Decimal, apr_percent: Decimal) -> Decimal:
    """Simple daily yield on `total` at `apr_percent` (e.g. 5 for 5%)."""
    return Decimal(total) * Decimal(apr_percent) / 100 / DAYS_PER_YEAR


def building_level(total_value: Decimal) -> int:
    """Level 1..5 of a building from the value deposited in it."""
    level = 1
    for threshold in LEVEL_THRESHOLDS:
        if Decimal(total_value) >= threshold:
            level += 1
    return level


# ============================================================================
# VALUATION
# ============================================================================

@dataclass(frozen=True, slots=True)
class PortfolioValue:
    """
    Result of aggregate().

    Attributes:
        total_value: Sum of balance x price in the valuation currency
        total_value_in_reference: total_value expressed in the reference asset
            (None when the reference asset has no price)
        reference_symbol: Asset the second total is expressed in
        asset_values: Per-symbol value in the valuation currency
        unpriced: Symbols that had no price and contributed zero
    """
    total_value: Decimal
    total_value_in_reference: Optional[Decimal]
    reference_symbol: str
    asset_values: Dict[str, Decimal] = field(default_factory=dict)
    unpriced: Tuple[str, ...] = ()

    @property
    def is_partial(self) -> bool:
        return bool(self.unpriced)


PriceInput = Union[Mapping[str, Decimal], PricingSource]


def _resolve_prices(prices: PriceInput, symbols: Iterable[str]) -> Dict[str, Decimal]:
    if isinstance(prices, Mapping):
        return {s: Decimal(str(prices[s])) for s in symbols if s in prices and prices[s] is not None}
    try:
        return dict(prices.get_prices(symbols))
    except NetworkError as exc:
        logger.warning("Price lookup failed, valuing every asset at zero: %s", exc)
        return {}


def aggregate(
    assets: Sequence[WalletAsset],
    prices: PriceInput,
    reference_symbol: str = "ETH",
) -> PortfolioValue:
    """
    Value a set of balances.

    Args:
        assets: Normalized balances
        prices: Price map or PricingSource, quoted in the valuation currency
        reference_symbol: Asset the total is also expressed in

    Returns:
        PortfolioValue. Missing prices contribute zero (see module docstring).
    """
    symbols = {a.symbol for a in assets} | {reference_symbol}
    price_map = _resolve_prices(prices, symbols)

    total = Decimal(0)
    asset_values: Dict[str, Decimal] = {}
    unpriced: List[str] = []
    for asset in assets:
        price = price_map.get(asset.symbol)
        if price is None:
            if asset.symbol not in unpriced:
                unpriced.append(asset.symbol)
            value = Decimal(0)
        else:
            value = asset.quantity * price
        asset_values[asset.symbol] = asset_values.get(asset.symbol, Decimal(0)) + value
        total += value

    if unpriced:
        logger.debug("No price for %s; counted as zero", ", ".join(unpriced))

    reference_price = price_map.get(reference_symbol)
    in_reference = total / reference_price if reference_price else None

    return PortfolioValue(
        total_value=total,
        total_value_in_reference=in_reference,
        reference_symbol=reference_symbol,
        asset_values=asset_values,
        unpriced=tuple(unpriced),
    )


# ============================================================================
# BALANCE AGGREGATOR
# ============================================================================

@dataclass(frozen=True, slots=True)
class BalanceFetch:
    """Balances read in one pass, plus the tokens that could not be read."""
    assets: Tuple[WalletAsset, ...]
    errors: Dict[str, str] = field(default_factory=dict)


class BalanceAggregator:
    """
    Reads and values the balances of one address.

    Holds the token table and the pricing collaborator; owns no balances
    itself. Every fetch derives a fresh tuple of WalletAsset values.
    """

    def __init__(self, tokens: Sequence[TokenInfo], pricing: Optional[PricingSource] = None,
                 reference_symbol: str = "ETH"):
        self.tokens: Tuple[TokenInfo, ...] = tuple(tokens)
        self.pricing = pricing
        self.reference_symbol = reference_symbol

    def to_asset(self, token: TokenInfo, raw_amount: int) -> WalletAsset:
        return WalletAsset(
            symbol=token.symbol,
            balance=normalize(raw_amount, token.decimals),
            decimals=token.decimals,
            address=token.address,
            is_native=token.is_native,
        )

    async def fetch_assets(self, reader: LedgerReader, address: str) -> BalanceFetch:
        """
        Read the native balance and every configured token balance of `address`.

        A token whose read fails (a transport error, or a value that is not a
        valid raw balance) is left out of the result and reported in
        BalanceFetch.errors; the remaining tokens are still read.
        """
        assets: List[WalletAsset] = []
        errors: Dict[str, str] = {}
        for token in self.tokens:
            try:
                if token.is_native:
                    raw = await reader.fetch_native_balance(address)
                else:
                    raw = await reader.fetch_token_balance(token.address, address)
                asset = self.to_asset(token, raw)
            except (SyncError, ValueError) as exc:
                logger.warning("Skipping %s balance of %s: %s", token.symbol, address, exc)
                errors[token.symbol] = str(exc)
                continue
            assets.append(asset)
        return BalanceFetch(tuple(assets), errors)

    def aggregate(self, assets: Sequence[WalletAsset],
                  prices: Optional[PriceInput] = None) -> PortfolioValue:
        """Value assets with the given prices, or the configured pricing source."""
        if prices is None:
            prices = self.pricing if self.pricing is not None else {}
        return aggregate(assets, prices, self.reference_symbol)

    def __repr__(self):
        return f"BalanceAggregator({len(self.tokens)} tokens, reference={self.reference_symbol})"
