"""Marketplace C2C client — signed REST over httpx."""

from __future__ import annotations

import hashlib
import hmac
import time
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog

from p2p_desk.marketplace.errors import MarketplaceError, ReleaseRejectedError
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
from p2p_desk.models.order import NUMERIC_ORDER_STATUS

log = structlog.get_logger("marketplace")

OK_CODE = "000000"
ACTIVE_AD_STATUS = 1

_STATUS_CODES = {status: code for code, status in NUMERIC_ORDER_STATUS.items() if code != 7}


def _decimal(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal(default)


def _from_ms(value: Any) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class MarketplaceClient:
    """Async client for the marketplace's C2C endpoints.

    Private endpoints are signed with HMAC-SHA256 over the query string;
    ``signature`` is always the last query parameter. The competitor search
    uses the public P2P endpoint and is not signed.
    """

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        base_url: str = "https://api.binance.com",
        search_url: str = "https://p2p.binance.com/bapi/c2c/v2/friendly/c2c/adv/search",
        timeout_s: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.search_url = search_url
        self.timeout_s = timeout_s
        self._transport = transport
        self._clock = clock
        self._http: httpx.AsyncClient | None = None

    async def _get_http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=self.timeout_s,
                transport=self._transport,
                headers={"X-MBX-APIKEY": self.api_key, "clientType": "web"},
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    # --- signing ---

    def sign(self, query: str) -> str:
        return hmac.new(
            self.api_secret.encode("utf8"),
            query.encode("utf8"),
            hashlib.sha256,
        ).hexdigest()

    def signed_query(self, params: dict[str, Any] | None = None) -> str:
        """Query string with timestamp appended and signature last."""
        items = [(k, v) for k, v in (params or {}).items() if v is not None]
        items.append(("timestamp", int(self._clock() * 1000)))
        query = urlencode(items, doseq=True)
        return f"{query}&signature={self.sign(query)}"

    @staticmethod
    def unwrap(payload: Any) -> Any:
        """Return ``data`` from the response envelope, raising on error codes."""
        if not isinstance(payload, dict):
            return payload
        code = payload.get("code")
        if code is not None and str(code) != OK_CODE:
            raise MarketplaceError(
                payload.get("message") or payload.get("msg") or "marketplace error",
                code=str(code),
            )
        if payload.get("success") is False:
            raise MarketplaceError(payload.get("message") or "request not successful", code=code)
        return payload.get("data")

    async def _signed(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> Any:
        http = await self._get_http()
        url = f"{self.base_url}{endpoint}?{self.signed_query(params)}"
        resp = await http.request(method, url, json=body if method == "POST" else None)
        if resp.is_error:
            try:
                detail = resp.json()
            except ValueError:
                detail = {}
            raise MarketplaceError(
                detail.get("msg") or detail.get("message") or f"HTTP {resp.status_code}",
                code=str(detail["code"]) if "code" in detail else None,
                status_code=resp.status_code,
            )
        return self.unwrap(resp.json())

    # --- ads ---

    async def search_ads(
        self,
        asset: str,
        fiat: str,
        trade_type: TradeDirection,
        page: int = 1,
        rows: int = 20,
    ) -> list[CompetitorListing]:
        """Search public listings. ``trade_type`` is the taker's side."""
        http = await self._get_http()
        resp = await http.post(self.search_url, json={
            "asset": asset,
            "fiat": fiat,
            "tradeType": trade_type.value,
            "page": page,
            "rows": rows,
            "payTypes": [],
            "publisherType": None,
        })
        resp.raise_for_status()
        data = self.unwrap(resp.json()) or []
        return [self.parse_competitor(item) for item in data]

    async def list_my_ads(self, page: int = 1, rows: int = 50) -> list[Listing]:
        """Own listings that are currently active, both directions."""
        data = await self._signed("GET", "/sapi/v1/c2c/ads/list", params={"page": page, "rows": rows})
        return self.parse_my_ads(data)

    async def update_ad_price(self, listing_id: str, price: Decimal) -> None:
        await self._signed("POST", "/sapi/v1/c2c/ads/update", body={
            "advNo": listing_id,
            "price": float(price),
        })

    # --- orders ---

    async def list_orders(
        self,
        statuses: list[MarketplaceOrderStatus] | None = None,
        trade_type: TradeDirection = TradeDirection.SELL,
        page: int = 1,
        rows: int = 20,
    ) -> list[Order]:
        body: dict[str, Any] = {"tradeType": trade_type.value, "page": page, "rows": rows}
        if statuses:
            body["orderStatusList"] = [_STATUS_CODES[s] for s in statuses]
        data = await self._signed("POST", "/sapi/v1/c2c/orderMatch/listOrders", body=body)
        if isinstance(data, dict):
            data = data.get("data") or []
        return [self.parse_order(raw) for raw in data or []]

    async def get_order_detail(self, order_number: str) -> Order:
        data = await self._signed(
            "POST", "/sapi/v1/c2c/orderMatch/getUserOrderDetail", body={"adOrderNo": order_number},
        )
        return self.parse_order(data or {})

    async def get_counterparty_stats(self, order_number: str) -> CounterpartyStats:
        data = await self._signed(
            "POST",
            "/sapi/v1/c2c/orderMatch/queryCounterPartyOrderStatistic",
            body={"orderNumber": order_number},
        )
        return self.parse_counterparty_stats(data or {})

    async def release_coin(self, order_number: str, auth_type: AuthType, code: str) -> None:
        """Release escrow for an order. Raises ReleaseRejectedError on refusal."""
        body = {"orderNumber": order_number, "authType": auth_type.value, "code": code}
        if auth_type is AuthType.GOOGLE:
            body["googleVerifyCode"] = code
        try:
            await self._signed("POST", "/sapi/v1/c2c/orderMatch/releaseCoin", body=body)
        except ReleaseRejectedError:
            raise
        except MarketplaceError as e:
            raise ReleaseRejectedError(str(e), code=e.code, status_code=e.status_code) from e
        log.info("release_coin_ok", order_number=order_number)

    # --- chat ---

    async def get_chat_messages(self, order_number: str, page: int = 1, rows: int = 50) -> list[ChatMessage]:
        data = await self._signed(
            "GET",
            "/sapi/v1/c2c/chat/retrieveChatMessagesWithPagination",
            params={"orderNo": order_number, "page": page, "rows": rows},
        )
        if isinstance(data, dict):
            data = data.get("data") or []
        return [self.parse_chat_message(order_number, raw) for raw in data or []]

    # --- parsing ---

    @staticmethod
    def parse_competitor(item: dict) -> CompetitorListing:
        adv = item.get("adv") or {}
        advertiser = item.get("advertiser") or {}
        return CompetitorListing(
            listing_id=str(adv.get("advNo", "")),
            price=_decimal(adv.get("price")),
            available_quantity=_decimal(adv.get("surplusAmount")),
            advertiser_id=str(advertiser.get("userNo") or ""),
            nickname=advertiser.get("nickName") or "",
            user_grade=int(advertiser.get("userGrade") or 0),
            month_order_count=int(advertiser.get("monthOrderCount") or 0),
            month_finish_rate=float(advertiser.get("monthFinishRate") or 0.0),
            positive_rate=float(advertiser.get("positiveRate") or 0.0),
            is_online=bool(advertiser.get("isOnline", False)),
        )

    @staticmethod
    def parse_my_ads(data: Any) -> list[Listing]:
        """Accepts either ``{sellList, buyList}`` or a flat list of ads."""
        if isinstance(data, dict):
            raw_ads = [*(data.get("sellList") or []), *(data.get("buyList") or [])]
        else:
            raw_ads = list(data or [])

        listings = []
        for raw in raw_ads:
            if int(raw.get("advStatus", ACTIVE_AD_STATUS)) != ACTIVE_AD_STATUS:
                continue
            listings.append(Listing(
                listing_id=str(raw["advNo"]),
                asset=raw.get("asset", ""),
                fiat=raw.get("fiatUnit") or raw.get("fiat") or "",
                direction=TradeDirection(raw.get("tradeType", "SELL")),
                price=_decimal(raw.get("price")),
                available_quantity=_decimal(raw.get("surplusAmount")),
            ))
        return listings

    @staticmethod
    def parse_status(value: Any) -> MarketplaceOrderStatus:
        if isinstance(value, int) or (isinstance(value, str) and value.isdigit()):
            return NUMERIC_ORDER_STATUS.get(int(value), MarketplaceOrderStatus.TRADING)
        return MarketplaceOrderStatus(value)

    @staticmethod
    def parse_order(raw: dict) -> Order:
        buyer = raw.get("buyer") or {}
        return Order(
            order_number=str(raw.get("orderNumber") or raw.get("adOrderNo") or ""),
            direction=TradeDirection(raw.get("tradeType", "SELL")),
            asset=raw.get("asset", ""),
            fiat=raw.get("fiat") or raw.get("fiatUnit") or "",
            amount=_decimal(raw.get("totalPrice")),
            counterparty_nickname=(
                raw.get("buyerNickname") or raw.get("counterPartNickName") or buyer.get("nickName") or ""
            ),
            counterparty_id=str(raw.get("buyerUserNo") or buyer.get("userNo") or ""),
            counterparty_name=raw.get("buyerName") or buyer.get("realName") or "",
            status=MarketplaceClient.parse_status(raw.get("orderStatus", "TRADING")),
            created_at=_from_ms(raw.get("createTime")),
        )

    @staticmethod
    def parse_counterparty_stats(raw: dict) -> CounterpartyStats:
        return CounterpartyStats(
            total_orders=int(raw.get("completedOrderNum") or 0),
            orders_30d=int(raw.get("completedOrderNumOfLatest30day") or 0),
            account_age_days=int(raw.get("registerDays") or 0),
            positive_rate=float(raw.get("finishRate") or 0.0),
        )

    @staticmethod
    def parse_chat_message(order_number: str, raw: dict) -> ChatMessage:
        created = raw.get("createTime")
        return ChatMessage(
            message_id=int(raw.get("id", 0)),
            order_number=order_number,
            content=raw.get("content") or "",
            image_url=raw.get("imageUrl") or None,
            sender_nickname=raw.get("fromNickName") or "",
            created_at=_from_ms(created) if created else None,
        )
