"""Pydantic domain models."""

from p2p_desk.models.events import PriceUpdateEvent, ReasonCode, ReleaseEvent, ReleaseStage
from p2p_desk.models.listing import CompetitorListing, Listing, TradeDirection, quantize_price
from p2p_desk.models.order import (
    AuthType,
    BankPayment,
    ChatMessage,
    CounterpartyStats,
    MarketplaceOrderStatus,
    Order,
)

__all__ = [
    "AuthType",
    "BankPayment",
    "ChatMessage",
    "CompetitorListing",
    "CounterpartyStats",
    "Listing",
    "MarketplaceOrderStatus",
    "Order",
    "PriceUpdateEvent",
    "ReasonCode",
    "ReleaseEvent",
    "ReleaseStage",
    "TradeDirection",
    "quantize_price",
]
