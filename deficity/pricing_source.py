"""
pricing_source.py - Pricing infrastructure for portfolio valuation

Provides the price lookups used when valuing wallet balances.

Classes:
- PricingSource: Protocol defining the pricing interface
- StaticPricingSource: Fixed prices, updatable in place
- FallbackPricingSource: Primary source with a static fallback for outages

All prices are returned in a base currency (typically USD). A missing price
is None, never zero: callers decide how to value unpriced assets.
"""

import logging
from decimal import Decimal
from typing import Dict, Iterable, Optional, Protocol, runtime_checkable

from .core import NetworkError


logger = logging.getLogger(__name__)


DEFAULT_FALLBACK_PRICES: Dict[str, Decimal] = {
    'ETH': Decimal("3500"),
    'WETH': Decimal("3500"),
    'USDC': Decimal("1"),
    'USDT': Decimal("1"),
    'WBTC': Decimal("95000"),
}


@runtime_checkable
class PricingSource(Protocol):
    """
    Protocol for pricing sources.

    A pricing source provides current unit prices denominated in a base
    currency (typically USD).

    Implementations must provide get_price() and get_prices() methods.
    Transient feed failures surface as NetworkError.
    """
    base_currency: str

    def get_price(self, symbol: str) -> Optional[Decimal]:
        """Get the price of a single asset, or None if unknown."""
        ...

    def get_prices(self, symbols: Iterable[str]) -> Dict[str, Decimal]:
        """Get prices for several assets; unknown assets are omitted."""
        ...


class StaticPricingSource:
    """
    Pricing source with fixed prices.

    The base currency always has a price of 1.
    """

    def __init__(self, prices: Dict[str, Decimal], base_currency: str = "USD"):
        """
        Initialize with a static price map.

        Args:
            prices: Dictionary mapping asset symbols to prices in base currency
            base_currency: The currency in which prices are quoted
        """
        self.base_currency = base_currency
        self.prices = {symbol: Decimal(str(price)) for symbol, price in prices.items()}
        # Base currency always prices at 1
        self.prices[base_currency] = Decimal("1")

    def get_price(self, symbol: str) -> Optional[Decimal]:
        return self.prices.get(symbol)

    def get_prices(self, symbols: Iterable[str]) -> Dict[str, Decimal]:
        return {s: self.prices[s] for s in symbols if s in self.prices}

    def update_price(self, symbol: str, price: Decimal):
        """Update the price of an asset."""
        self.prices[symbol] = Decimal(str(price))

    def update_prices(self, prices: Dict[str, Decimal]):
        """Update multiple prices at once."""
        for symbol, price in prices.items():
            self.update_price(symbol, price)

    def __repr__(self):
        return f"StaticPricingSource({len(self.prices)} prices, base={self.base_currency})"


class FallbackPricingSource:
    """
    Pricing source that consults a primary feed and falls back on outage.

    A NetworkError from the primary is logged and the fallback answers
    instead. An asset the primary does not know is also looked up in the
    fallback.
    """

    def __init__(self, primary: PricingSource, fallback: Optional[PricingSource] = None):
        self.primary = primary
        self.fallback = fallback or StaticPricingSource(
            DEFAULT_FALLBACK_PRICES, base_currency=primary.base_currency
        )
        if self.fallback.base_currency != primary.base_currency:
            raise ValueError(
                f"Base currency mismatch: {primary.base_currency} vs {self.fallback.base_currency}"
            )
        self.base_currency = primary.base_currency

    def get_price(self, symbol: str) -> Optional[Decimal]:
        try:
            price = self.primary.get_price(symbol)
        except NetworkError as exc:
            logger.warning("Primary price feed failed for %s, using fallback: %s", symbol, exc)
            price = None
        if price is None:
            price = self.fallback.get_price(symbol)
        return price

    def get_prices(self, symbols: Iterable[str]) -> Dict[str, Decimal]:
        symbols = list(symbols)
        try:
            prices = dict(self.primary.get_prices(symbols))
        except NetworkError as exc:
            logger.warning("Primary price feed failed, using fallback prices: %s", exc)
            prices = {}
        missing = [s for s in symbols if s not in prices]
        if missing:
            prices.update(self.fallback.get_prices(missing))
        return prices

    def __repr__(self):
        return f"FallbackPricingSource(primary={self.primary!r}, fallback={self.fallback!r})"
