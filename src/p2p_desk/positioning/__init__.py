"""Positioning engine — competitor fetch, pricing strategies, ad managers."""

from p2p_desk.positioning.ad_manager import AdManager
from p2p_desk.positioning.base import PriceQuote, PricingStrategy
from p2p_desk.positioning.fetcher import CompetitorFetcher
from p2p_desk.positioning.registry import PRICING_REGISTRY, register

__all__ = ["PRICING_REGISTRY", "AdManager", "CompetitorFetcher", "PriceQuote", "PricingStrategy", "register"]
