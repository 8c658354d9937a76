"""Import all pricing strategies so @register fires."""

from p2p_desk.positioning.strategies.follow import FollowPricing
from p2p_desk.positioning.strategies.smart import SmartPricing

__all__ = ["FollowPricing", "SmartPricing"]
