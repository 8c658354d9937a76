"""Tests for domain models."""

from __future__ import annotations

from decimal import Decimal

import pytest
from conftest import make_competitor, make_order
from pydantic import ValidationError

from p2p_desk.models import MarketplaceOrderStatus, TradeDirection, quantize_price


class TestTradeDirection:
    def test_inverse(self):
        assert TradeDirection.SELL.inverse() is TradeDirection.BUY
        assert TradeDirection.BUY.inverse() is TradeDirection.SELL

    def test_from_string(self):
        assert TradeDirection("SELL") is TradeDirection.SELL


class TestQuantizePrice:
    def test_rounds_half_up_to_cents(self):
        assert quantize_price(Decimal("19.985")) == Decimal("19.99")
        assert quantize_price(Decimal("19.984")) == Decimal("19.98")

    def test_keeps_two_places(self):
        assert str(quantize_price(Decimal("20"))) == "20.00"


class TestCompetitorListing:
    def test_fiat_liquidity_is_price_times_quantity(self):
        c = make_competitor("X", "1250000.00", qty="0.002")
        assert c.fiat_liquidity == Decimal("2500.00000")

    def test_is_immutable(self):
        c = make_competitor("X", "20.00")
        with pytest.raises(ValidationError):
            c.price = Decimal("1")


class TestOrder:
    def test_display_name_prefers_real_name(self):
        order = make_order(name="JUAN GARCIA")
        assert order.display_name == "JUAN GARCIA"

    def test_display_name_falls_back_to_nickname(self):
        order = make_order(name="")
        assert order.display_name == order.counterparty_nickname

    def test_final_statuses(self):
        assert MarketplaceOrderStatus.COMPLETED.is_final
        assert MarketplaceOrderStatus.CANCELLED.is_final
        assert MarketplaceOrderStatus.CANCELLED_BY_SYSTEM.is_final
        assert not MarketplaceOrderStatus.BUYER_PAYED.is_final
        assert not MarketplaceOrderStatus.APPEALING.is_final
