"""Competitor snapshot fetcher — one search page, or a bounded page scan."""

from __future__ import annotations

import asyncio

import httpx
import structlog

from p2p_desk.marketplace.client import MarketplaceClient
from p2p_desk.marketplace.errors import MarketplaceError
from p2p_desk.models import CompetitorListing, TradeDirection

log = structlog.get_logger("fetcher")


class CompetitorFetcher:
    """Fetches listings that compete with ours on the same side.

    Our SELL ads compete with other SELL ads, which the public search shows
    to a taker searching as a buyer, so the search always uses the inverse
    direction. An empty result means "no data this cycle", never "no
    competitors".
    """

    def __init__(self, client: MarketplaceClient, timeout_s: float = 15.0) -> None:
        self.client = client
        self.timeout_s = timeout_s

    async def fetch(
        self,
        asset: str,
        fiat: str,
        direction: TradeDirection,
        page: int = 1,
        rows: int = 20,
    ) -> list[CompetitorListing]:
        try:
            return await asyncio.wait_for(
                self.client.search_ads(asset, fiat, direction.inverse(), page=page, rows=rows),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError:
            log.warning("competitor_fetch_timeout", asset=asset, fiat=fiat, direction=direction.value, page=page)
        except (httpx.HTTPError, MarketplaceError, ValueError) as e:
            log.warning(
                "competitor_fetch_failed",
                asset=asset, fiat=fiat, direction=direction.value, page=page, error=str(e),
            )
        return []

    async def fetch_pages(
        self,
        asset: str,
        fiat: str,
        direction: TradeDirection,
        max_pages: int = 3,
        rows: int = 20,
    ) -> list[CompetitorListing]:
        """Concatenate pages 1..max_pages, stopping at the first empty page."""
        listings: list[CompetitorListing] = []
        for page in range(1, max_pages + 1):
            batch = await self.fetch(asset, fiat, direction, page=page, rows=rows)
            if not batch:
                break
            listings.extend(batch)
        return listings
