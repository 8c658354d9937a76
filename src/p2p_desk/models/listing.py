"""Listing models: our own ads and competitor snapshots."""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict

CENT = Decimal("0.01")


def quantize_price(value: Decimal) -> Decimal:
    """Round a fiat price to 2 decimal places, half-up."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class TradeDirection(str, Enum):
    """Side of a listing from the advertiser's point of view."""

    BUY = "BUY"
    SELL = "SELL"

    def inverse(self) -> TradeDirection:
        """Side a taker searches with to find listings on this side."""
        return TradeDirection.SELL if self is TradeDirection.BUY else TradeDirection.BUY


class Listing(BaseModel):
    """One of our own active ads. Mutated only by its Ad Manager."""

    listing_id: str
    asset: str
    fiat: str
    direction: TradeDirection
    price: Decimal
    available_quantity: Decimal = Decimal("0")
    last_update: datetime | None = None


class CompetitorListing(BaseModel):
    """Immutable snapshot of another advertiser's ad."""

    model_config = ConfigDict(frozen=True)

    listing_id: str
    price: Decimal
    available_quantity: Decimal
    advertiser_id: str = ""
    nickname: str
    user_grade: int = 0
    month_order_count: int = 0
    month_finish_rate: float = 0.0
    positive_rate: float = 0.0
    is_online: bool = False

    @property
    def fiat_liquidity(self) -> Decimal:
        return self.price * self.available_quantity
