"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import BigInteger, Integer, JSON, create_engine, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import p2p_desk.db.tables  # noqa: F401  registers tables on Base.metadata
from p2p_desk.db.base import Base
from p2p_desk.marketplace.errors import MarketplaceError
from p2p_desk.models import (
    AuthType,
    ChatMessage,
    CompetitorListing,
    CounterpartyStats,
    Listing,
    MarketplaceOrderStatus,
    Order,
    TradeDirection,
)
from p2p_desk.release.codes import VerificationCodeProvider

NOW = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    """In-memory SQLite engine with all schemas/tables created.

    Patches JSONB→JSON and BigInteger→Integer for SQLite compatibility.
    StaticPool keeps one connection so every session sees the same database.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, _rec):
        dbapi_conn.execute("PRAGMA foreign_keys=ON")

    # SQLite doesn't support schemas, JSONB, or BigInteger autoincrement
    for table in Base.metadata.tables.values():
        table.schema = None
        for col in table.columns:
            if isinstance(col.type, JSONB):
                col.type = JSON()
            if isinstance(col.type, BigInteger):
                col.type = Integer()

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def db_session(engine):
    session = Session(engine)
    yield session
    session.close()


# --- fakes ---


class FakeMarketplace:
    """In-memory stand-in for MarketplaceClient.

    ``release_results`` is a queue of outcomes for successive release calls:
    None succeeds (and completes the order), an exception instance is raised,
    and "timeout_completed" completes the order but raises a read timeout.
    """

    def __init__(self) -> None:
        self.search_pages: dict[tuple[TradeDirection, int], list[CompetitorListing]] = {}
        self.search_calls: list[tuple[str, str, TradeDirection, int]] = []
        self.search_error: Exception | None = None
        self.my_ads: list[Listing] = []
        self.price_updates: list[tuple[str, Decimal]] = []
        self.update_error: Exception | None = None
        self.orders: dict[str, Order] = {}
        self.detail_errors: set[str] = set()
        self.stats: dict[str, CounterpartyStats] = {}
        self.release_calls: list[tuple[str, AuthType, str]] = []
        self.release_results: list = []
        self.chat: dict[str, list[ChatMessage]] = {}
        self.closed = False

    async def search_ads(self, asset, fiat, trade_type, page=1, rows=20):
        self.search_calls.append((asset, fiat, trade_type, page))
        if self.search_error is not None:
            raise self.search_error
        return list(self.search_pages.get((trade_type, page), []))

    async def list_my_ads(self, page=1, rows=50):
        return [ad.model_copy() for ad in self.my_ads]

    async def update_ad_price(self, listing_id, price):
        if self.update_error is not None:
            raise self.update_error
        self.price_updates.append((listing_id, price))
        for ad in self.my_ads:
            if ad.listing_id == listing_id:
                ad.price = price

    async def list_orders(self, statuses=None, trade_type=TradeDirection.SELL, page=1, rows=20):
        return [o for o in self.orders.values() if not statuses or o.status in statuses]

    async def get_order_detail(self, order_number):
        if order_number in self.detail_errors:
            raise httpx.ConnectError("connection refused")
        return self.orders[order_number]

    async def get_counterparty_stats(self, order_number):
        if order_number not in self.stats:
            raise MarketplaceError("stats not available", code="83001")
        return self.stats[order_number]

    async def release_coin(self, order_number, auth_type, code):
        self.release_calls.append((order_number, auth_type, code))
        outcome = self.release_results.pop(0) if self.release_results else None
        if outcome == "timeout_completed":
            self.set_status(order_number, MarketplaceOrderStatus.COMPLETED)
            raise httpx.ReadTimeout("read timed out")
        if isinstance(outcome, BaseException):
            raise outcome
        self.set_status(order_number, MarketplaceOrderStatus.COMPLETED)

    async def get_chat_messages(self, order_number, page=1, rows=50):
        return list(self.chat.get(order_number, []))

    async def close(self):
        self.closed = True

    def set_status(self, order_number: str, status: MarketplaceOrderStatus) -> None:
        self.orders[order_number] = self.orders[order_number].model_copy(update={"status": status})


class FakeCodeProvider(VerificationCodeProvider):
    auth_type = AuthType.GOOGLE

    def __init__(self) -> None:
        self.issued: list[str] = []

    async def get_code(self, order_number: str) -> str:
        code = f"{len(self.issued) + 1:06d}"
        self.issued.append(code)
        return code


@pytest.fixture
def fake_market():
    return FakeMarketplace()


@pytest.fixture
def fake_codes():
    return FakeCodeProvider()


def make_competitor(
    nickname: str,
    price: str,
    qty: str = "1000",
    *,
    grade: int = 3,
    orders: int = 200,
    finish_rate: float = 0.98,
    positive_rate: float = 0.99,
    online: bool = True,
    listing_id: str | None = None,
) -> CompetitorListing:
    return CompetitorListing(
        listing_id=listing_id or f"{nickname}-{price}",
        price=Decimal(price),
        available_quantity=Decimal(qty),
        advertiser_id=f"uid-{nickname}",
        nickname=nickname,
        user_grade=grade,
        month_order_count=orders,
        month_finish_rate=finish_rate,
        positive_rate=positive_rate,
        is_online=online,
    )


def make_order(
    order_number: str = "ORD1",
    amount: str = "1000.00",
    name: str = "JUAN GARCIA LOPEZ",
    counterparty_id: str = "buyer-1",
    status: MarketplaceOrderStatus = MarketplaceOrderStatus.BUYER_PAYED,
    created_at: datetime = NOW,
) -> Order:
    return Order(
        order_number=order_number,
        direction=TradeDirection.SELL,
        asset="USDT",
        fiat="MXN",
        amount=Decimal(amount),
        counterparty_nickname=f"nick-{counterparty_id}",
        counterparty_id=counterparty_id,
        counterparty_name=name,
        status=status,
        created_at=created_at,
    )
