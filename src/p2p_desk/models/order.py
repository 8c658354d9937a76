"""Order, payment and counterparty models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict

from p2p_desk.models.listing import TradeDirection


class MarketplaceOrderStatus(str, Enum):
    TRADING = "TRADING"
    BUYER_PAYED = "BUYER_PAYED"
    APPEALING = "APPEALING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    CANCELLED_BY_SYSTEM = "CANCELLED_BY_SYSTEM"

    @property
    def is_final(self) -> bool:
        return self in _FINAL_STATUSES


_FINAL_STATUSES = {
    MarketplaceOrderStatus.COMPLETED,
    MarketplaceOrderStatus.CANCELLED,
    MarketplaceOrderStatus.CANCELLED_BY_SYSTEM,
}

# Legacy numeric codes still returned by some endpoints
NUMERIC_ORDER_STATUS: dict[int, MarketplaceOrderStatus] = {
    1: MarketplaceOrderStatus.TRADING,
    2: MarketplaceOrderStatus.BUYER_PAYED,
    3: MarketplaceOrderStatus.APPEALING,
    4: MarketplaceOrderStatus.COMPLETED,
    5: MarketplaceOrderStatus.CANCELLED,
    6: MarketplaceOrderStatus.CANCELLED_BY_SYSTEM,
    7: MarketplaceOrderStatus.CANCELLED_BY_SYSTEM,
}


class AuthType(str, Enum):
    """Second factor the marketplace accepts for a release."""

    GOOGLE = "GOOGLE"
    SMS = "SMS"
    FIDO2 = "FIDO2"
    FUND_PWD = "FUND_PWD"


class Order(BaseModel):
    """A marketplace order in which we are the seller of crypto."""

    order_number: str
    direction: TradeDirection = TradeDirection.SELL
    asset: str
    fiat: str
    amount: Decimal
    counterparty_nickname: str = ""
    counterparty_id: str = ""
    counterparty_name: str = ""
    status: MarketplaceOrderStatus
    created_at: datetime

    @property
    def display_name(self) -> str:
        """Name used for payment matching, KYC name first."""
        return self.counterparty_name or self.counterparty_nickname


class BankPayment(BaseModel):
    """An incoming bank transfer as reported by the bank integration."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    amount: Decimal
    currency: str = "MXN"
    sender_name: str
    timestamp: datetime
    status: str = "COMPLETED"


class CounterpartyStats(BaseModel):
    total_orders: int
    orders_30d: int
    account_age_days: int
    positive_rate: float


class ChatMessage(BaseModel):
    message_id: int
    order_number: str
    content: str = ""
    image_url: str | None = None
    sender_nickname: str = ""
    created_at: datetime | None = None

    @property
    def is_image(self) -> bool:
        return bool(self.image_url)
