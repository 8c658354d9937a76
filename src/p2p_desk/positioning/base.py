"""Pricing strategy abstract base class and shared pricing rules."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal

from p2p_desk.config.schema import PositioningConfig, PositioningSettings
from p2p_desk.models import CompetitorListing, Listing, TradeDirection, quantize_price
from p2p_desk.models.listing import CENT
from p2p_desk.positioning.fetcher import CompetitorFetcher


@dataclass(frozen=True)
class PriceQuote:
    """Target price for one of our listings plus what it was derived from."""

    price: Decimal
    reason: str
    reference_nickname: str | None = None
    reference_price: Decimal | None = None


def rank(listings: list[CompetitorListing], direction: TradeDirection) -> list[CompetitorListing]:
    """Most competitive first: cheapest for SELL, highest for BUY.

    Stable, so equal prices keep the marketplace's order.
    """
    return sorted(listings, key=lambda c: c.price, reverse=direction is TradeDirection.BUY)


def apply_rule(reference: Decimal, direction: TradeDirection, config: PositioningConfig) -> Decimal:
    """Match or undercut a reference price, rounded to cents."""
    if config.match_price:
        return quantize_price(reference)
    step = Decimal(config.undercut_cents) / 100
    if direction is TradeDirection.SELL:
        return quantize_price(reference - step)
    return quantize_price(reference + step)


def floor_for(direction: TradeDirection, config: PositioningConfig) -> Decimal | None:
    if direction is not TradeDirection.SELL or config.price_floor is None:
        return None
    return Decimal(config.price_floor).quantize(CENT, rounding=ROUND_CEILING)


class PricingStrategy(ABC):
    """Base class for pricing modes.

    Subclasses set ``mode`` and implement ``price()``, a pure function of a
    competitor snapshot. ``quote()`` fetches the snapshot and prices it.
    """

    mode: str

    def __init__(self, fetcher: CompetitorFetcher, settings: PositioningSettings) -> None:
        self.fetcher = fetcher
        self.settings = settings
        self._ignored = {n.lower() for n in settings.ignored_advertisers}

    def is_self(self, nickname: str) -> bool:
        return bool(self.settings.my_nickname) and nickname.lower() == self.settings.my_nickname.lower()

    def is_ignored(self, nickname: str) -> bool:
        return nickname.lower() in self._ignored

    @abstractmethod
    async def quote(self, listing: Listing, config: PositioningConfig) -> PriceQuote | None:
        """Fetch competitors for *listing* and return a quote, or None for no data."""
        ...

    @abstractmethod
    def price(
        self,
        competitors: list[CompetitorListing],
        direction: TradeDirection,
        config: PositioningConfig,
    ) -> PriceQuote | None:
        ...
