"""Pricing strategy registry — decorated classes are auto-registered by mode."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from p2p_desk.positioning.base import PricingStrategy

PRICING_REGISTRY: dict[str, type[PricingStrategy]] = {}


def register(cls: type[PricingStrategy]) -> type[PricingStrategy]:
    """Class decorator that adds a pricing strategy to the global registry."""
    if not hasattr(cls, "mode") or not cls.mode:
        raise ValueError(f"Pricing strategy {cls.__name__} must define a 'mode' attribute")
    if cls.mode in PRICING_REGISTRY:
        raise ValueError(f"Duplicate pricing mode: {cls.mode!r}")
    PRICING_REGISTRY[cls.mode] = cls
    return cls
