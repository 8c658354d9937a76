"""Follow pricing — track one named competitor, defended by a price floor."""

from __future__ import annotations

from decimal import Decimal

import structlog

from p2p_desk.config.schema import PositioningConfig
from p2p_desk.models import CompetitorListing, Listing, TradeDirection, quantize_price
from p2p_desk.positioning.base import PriceQuote, PricingStrategy, apply_rule, floor_for, rank
from p2p_desk.positioning.registry import register

log = structlog.get_logger("pricing.follow")


@register
class FollowPricing(PricingStrategy):
    """Follow a target advertiser across all of its listings.

    With a SELL floor configured, the target listing chosen is the cheapest
    one whose resulting price still clears the floor, so a low "trap" listing
    posted by the target cannot drag us under it. If our price would still
    land below the floor, we match the cheapest other competitor at or above
    the floor, or pin to the floor when there is none.

    Returns None when the target is not visible; the Ad Manager then prices
    the listing with smart mode for this cycle.
    """

    mode = "follow"

    async def quote(self, listing: Listing, config: PositioningConfig) -> PriceQuote | None:
        target = config.follow_target
        if not target:
            log.warning("follow_target_not_configured", listing_id=listing.listing_id)
            return None
        if self.is_ignored(target):
            log.warning("follow_target_ignored", target=target, listing_id=listing.listing_id)
            return None

        competitors = await self.fetcher.fetch_pages(
            listing.asset,
            listing.fiat,
            listing.direction,
            max_pages=self.settings.follow_max_pages,
            rows=self.settings.search_rows,
        )
        return self.price(competitors, listing.direction, config)

    def price(
        self,
        competitors: list[CompetitorListing],
        direction: TradeDirection,
        config: PositioningConfig,
    ) -> PriceQuote | None:
        target_nick = (config.follow_target or "").lower()
        if not target_nick or self.is_ignored(target_nick):
            return None

        target_listings = rank([c for c in competitors if c.nickname.lower() == target_nick], direction)
        if not target_listings:
            log.info("follow_target_not_found", target=config.follow_target, scanned=len(competitors))
            return None

        floor = floor_for(direction, config)
        chosen = target_listings[0]
        if floor is not None and len(target_listings) > 1:
            clearing = [t for t in target_listings if apply_rule(t.price, direction, config) >= floor]
            if clearing:
                chosen = clearing[0]
                if len(clearing) < len(target_listings):
                    log.info(
                        "follow_skipped_below_floor_listings",
                        target=config.follow_target,
                        skipped=len(target_listings) - len(clearing),
                        followed_price=chosen.price,
                    )

        target_price = apply_rule(chosen.price, direction, config)
        if floor is None or target_price >= floor:
            return PriceQuote(target_price, "follow", chosen.nickname, chosen.price)

        return self._defend_floor(competitors, floor, chosen, target_price)

    def _defend_floor(
        self,
        competitors: list[CompetitorListing],
        floor: Decimal,
        chosen: CompetitorListing,
        breached_price: Decimal,
    ) -> PriceQuote:
        target_nick = chosen.nickname.lower()
        above_floor = [
            c for c in competitors
            if c.price >= floor
            and not self.is_self(c.nickname)
            and not self.is_ignored(c.nickname)
            and c.nickname.lower() != target_nick
        ]
        if above_floor:
            nearest = rank(above_floor, TradeDirection.SELL)[0]
            # At the cost limit already: match, never undercut
            price = max(quantize_price(nearest.price), floor)
            log.info(
                "follow_floor_breach_matched",
                target=chosen.nickname,
                breached_price=breached_price,
                floor=floor,
                matched_nickname=nearest.nickname,
                matched_price=price,
            )
            return PriceQuote(price, "follow_floor_competitor", nearest.nickname, nearest.price)

        log.info("follow_floor_pinned", target=chosen.nickname, breached_price=breached_price, floor=floor)
        return PriceQuote(floor, "follow_floor_pinned", chosen.nickname, chosen.price)
