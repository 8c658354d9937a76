"""Ad Manager — owns our listings for one direction and keeps them priced."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from p2p_desk.config.resolver import resolve_positioning
from p2p_desk.config.schema import PositioningSettings
from p2p_desk.events.bus import EventBus
from p2p_desk.marketplace.client import MarketplaceClient
from p2p_desk.marketplace.errors import MarketplaceError
from p2p_desk.models import Listing, PriceUpdateEvent, TradeDirection, quantize_price
from p2p_desk.positioning.base import PriceQuote, PricingStrategy
from p2p_desk.positioning.fetcher import CompetitorFetcher
from p2p_desk.positioning.registry import PRICING_REGISTRY

# Ensure all pricing modules are imported so @register fires
import p2p_desk.positioning.strategies  # noqa: F401

log = structlog.get_logger("ad_manager")

_TRANSIENT = (httpx.HTTPError, MarketplaceError, asyncio.TimeoutError)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AdManager:
    """Reprices our active listings for one trade direction.

    Listings are processed one at a time with a fixed pause between
    marketplace calls. Only this instance mutates its listings.
    """

    def __init__(
        self,
        direction: TradeDirection,
        client: MarketplaceClient,
        fetcher: CompetitorFetcher,
        settings: PositioningSettings,
        bus: EventBus | None = None,
        call_timeout_s: float = 15.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
        settings_provider: Callable[[], PositioningSettings] | None = None,
    ) -> None:
        self.direction = direction
        self.client = client
        self.fetcher = fetcher
        self.settings = settings
        self._settings_provider = settings_provider
        self.bus = bus
        self.call_timeout_s = call_timeout_s
        self.listings: dict[str, Listing] = {}
        self.last_cycle_at: datetime | None = None
        self._sleep = sleep
        self._clock = clock
        self._strategies = self._build_strategies(settings)
        self.log = log.bind(direction=direction.value)

    def _build_strategies(self, settings: PositioningSettings) -> dict[str, PricingStrategy]:
        return {mode: cls(self.fetcher, settings) for mode, cls in PRICING_REGISTRY.items()}

    def apply_settings(self, settings: PositioningSettings) -> None:
        """Swap in new positioning settings for every listing from here on."""
        if settings is self.settings:
            return
        self.settings = settings
        self._strategies = self._build_strategies(settings)
        self.log.info("positioning_settings_applied")

    async def discover(self) -> None:
        """Sync the owned set with the marketplace's active listings."""
        ads = await asyncio.wait_for(self.client.list_my_ads(), timeout=self.call_timeout_s)
        active = {ad.listing_id: ad for ad in ads if ad.direction is self.direction}

        for listing_id in set(self.listings) - set(active):
            self.listings.pop(listing_id)
            self.log.info("listing_removed", listing_id=listing_id)

        for listing_id, ad in active.items():
            owned = self.listings.get(listing_id)
            if owned is None:
                self.listings[listing_id] = ad
                self.log.info("listing_added", listing_id=listing_id, asset=ad.asset, price=str(ad.price))
            else:
                owned.price = ad.price
                owned.available_quantity = ad.available_quantity

    async def quote(self, listing: Listing) -> PriceQuote | None:
        config = resolve_positioning(self.settings, self.direction, listing.asset)
        if not config.enabled:
            return None

        quote = await self._strategies[config.mode].quote(listing, config)
        if quote is None and config.mode != "smart":
            self.log.info("follow_fallback_to_smart", listing_id=listing.listing_id, target=config.follow_target)
            quote = await self._strategies["smart"].quote(listing, config)
        return quote

    async def reprice(self, listing: Listing) -> PriceUpdateEvent | None:
        """Push a new price for *listing* when it moved by at least the minimum delta."""
        quote = await self.quote(listing)
        if quote is None:
            return None

        delta = quantize_price(abs(listing.price - quote.price))
        if delta < self.settings.min_price_delta:
            return None

        try:
            await asyncio.wait_for(
                self.client.update_ad_price(listing.listing_id, quote.price),
                timeout=self.call_timeout_s,
            )
        except _TRANSIENT as e:
            self.log.warning("price_update_failed", listing_id=listing.listing_id, error=str(e) or type(e).__name__)
            return None

        old_price = listing.price
        listing.price = quote.price
        listing.last_update = self._clock()
        event = PriceUpdateEvent(
            listing_id=listing.listing_id,
            asset=listing.asset,
            direction=self.direction,
            old_price=old_price,
            new_price=quote.price,
            reason=quote.reason,
            timestamp=listing.last_update,
        )
        if self.bus is not None:
            self.bus.publish(event)
        self.log.info(
            "price_updated",
            listing_id=listing.listing_id,
            asset=listing.asset,
            old_price=str(old_price),
            new_price=str(quote.price),
            reason=quote.reason,
            reference=quote.reference_nickname,
        )
        return event

    async def run_cycle(self) -> list[PriceUpdateEvent]:
        if self._settings_provider is not None:
            self.apply_settings(self._settings_provider())

        try:
            await self.discover()
        except _TRANSIENT as e:
            self.log.warning("listing_refresh_failed", error=str(e) or type(e).__name__)

        updates: list[PriceUpdateEvent] = []
        for i, listing in enumerate(list(self.listings.values())):
            if i:
                await self._sleep(self.settings.inter_call_delay_s)
            try:
                event = await self.reprice(listing)
            except Exception:
                self.log.exception("reprice_error", listing_id=listing.listing_id)
                continue
            if event is not None:
                updates.append(event)

        self.last_cycle_at = self._clock()
        return updates

    async def run(self, stop: asyncio.Event) -> None:
        """Cycle until *stop* is set; the cycle in progress always completes."""
        self.log.info("ad_manager_started", poll_interval_s=self.settings.poll_interval_s)
        while not stop.is_set():
            try:
                await self.run_cycle()
            except Exception:
                self.log.exception("cycle_error")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.settings.poll_interval_s)
            except asyncio.TimeoutError:
                pass
        self.log.info("ad_manager_stopped")

    def status(self) -> dict:
        return {
            "direction": self.direction.value,
            "listings": [
                {"listing_id": ad.listing_id, "asset": ad.asset, "price": str(ad.price)}
                for ad in self.listings.values()
            ],
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
        }
