"""Marketplace access — signed client, errors, chat poller."""

from p2p_desk.marketplace.chat import ChatPoller
from p2p_desk.marketplace.client import MarketplaceClient
from p2p_desk.marketplace.errors import MarketplaceError, ReleaseRejectedError

__all__ = ["ChatPoller", "MarketplaceClient", "MarketplaceError", "ReleaseRejectedError"]
