"""Smart pricing — match or undercut the best qualifying competitor."""

from __future__ import annotations

import structlog

from p2p_desk.config.schema import PositioningConfig
from p2p_desk.models import CompetitorListing, Listing, TradeDirection, quantize_price
from p2p_desk.positioning.base import PriceQuote, PricingStrategy, apply_rule, floor_for, rank
from p2p_desk.positioning.registry import register

log = structlog.get_logger("pricing.smart")


def qualifies(c: CompetitorListing, config: PositioningConfig) -> bool:
    """Reputation and liquidity filters. Liquidity is in fiat, not crypto units."""
    if c.user_grade < config.min_user_grade:
        return False
    if c.month_order_count < config.min_month_orders:
        return False
    if c.month_finish_rate < config.min_month_finish_rate:
        return False
    if c.positive_rate < config.min_positive_rate:
        return False
    if config.require_online and not c.is_online:
        return False
    return c.fiat_liquidity >= config.min_liquidity


@register
class SmartPricing(PricingStrategy):
    """Reference = best-priced competitor that passes every filter.

    When nobody qualifies, the best unfiltered competitor is matched exactly
    (no undercut) rather than leaving the ad unpriced.
    """

    mode = "smart"

    async def quote(self, listing: Listing, config: PositioningConfig) -> PriceQuote | None:
        competitors = await self.fetcher.fetch(
            listing.asset, listing.fiat, listing.direction, rows=self.settings.search_rows,
        )
        return self.price(competitors, listing.direction, config)

    def price(
        self,
        competitors: list[CompetitorListing],
        direction: TradeDirection,
        config: PositioningConfig,
    ) -> PriceQuote | None:
        if not competitors:
            return None

        others = [c for c in competitors if not self.is_self(c.nickname) and not self.is_ignored(c.nickname)]
        qualifying = [c for c in others if qualifies(c, config)]

        if qualifying:
            reference = rank(qualifying, direction)[0]
            target = apply_rule(reference.price, direction, config)
            reason = "smart_match" if config.match_price else "smart_undercut"
        elif others:
            reference = rank(others, direction)[0]
            target = quantize_price(reference.price)
            reason = "smart_fallback"
            log.info(
                "smart_no_qualifying_competitor",
                direction=direction.value,
                fallback_nickname=reference.nickname,
                fallback_price=reference.price,
                candidates=len(others),
            )
        else:
            log.info("smart_no_competitor", direction=direction.value, listings=len(competitors))
            return None

        floor = floor_for(direction, config)
        if floor is not None and target < floor:
            log.info("smart_floor_pinned", target=target, floor=floor, reference=reference.nickname)
            return PriceQuote(floor, "smart_floor", reference.nickname, reference.price)

        return PriceQuote(target, reason, reference.nickname, reference.price)
