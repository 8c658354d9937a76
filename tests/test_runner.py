"""Tests for the desk wiring: intake polls and shutdown."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
from conftest import NOW, make_order

from p2p_desk.config.schema import AppConfig, ReleaseConfig, TotpConfig
from p2p_desk.models import (
    BankPayment,
    ChatMessage,
    CounterpartyStats,
    MarketplaceOrderStatus,
    ReasonCode,
    ReleaseStage,
)
from p2p_desk.runner import Desk


@pytest.fixture
def desk(fake_market, session_factory):
    config = AppConfig(
        release=ReleaseConfig(enabled=True),
        totp=TotpConfig(secret="JBSWY3DPEHPK3PXP"),
    )
    return Desk(config, fake_market, session_factory)


def _payment(tx: str = "TX1") -> BankPayment:
    return BankPayment(transaction_id=tx, amount=Decimal("1000.00"), sender_name="JUAN GARCIA LOPEZ", timestamp=NOW)


class TestPolls:
    @pytest.mark.asyncio
    async def test_paid_orders_are_tracked(self, desk, fake_market):
        fake_market.orders["ORD1"] = make_order("ORD1")
        fake_market.orders["ORD2"] = make_order("ORD2", status=MarketplaceOrderStatus.TRADING)
        await desk.poll_orders()
        assert desk.orchestrator.get("ORD1") is not None
        assert desk.orchestrator.get("ORD2") is None

    @pytest.mark.asyncio
    async def test_closed_orders_are_refreshed_and_dropped(self, desk, fake_market):
        fake_market.orders["ORD1"] = make_order("ORD1")
        await desk.poll_orders()
        fake_market.set_status("ORD1", MarketplaceOrderStatus.CANCELLED)
        await desk.poll_orders()
        assert desk.orchestrator.get("ORD1") is None

    @pytest.mark.asyncio
    async def test_ledger_payments_drive_release(self, desk, fake_market):
        fake_market.orders["ORD1"] = make_order("ORD1")
        fake_market.stats["ORD1"] = CounterpartyStats(
            total_orders=300, orders_30d=40, account_age_days=500, positive_rate=0.99,
        )
        await desk.poll_orders()
        desk.ledger.record(_payment())
        await desk.poll_payments()
        await desk.orchestrator.drain()
        assert desk.orchestrator.get("ORD1").stage is ReleaseStage.RELEASED
        assert len(fake_market.release_calls) == 1

    @pytest.mark.asyncio
    async def test_reversal_picked_up_from_ledger(self, desk, fake_market):
        fake_market.orders["ORD1"] = make_order("ORD1")
        await desk.poll_orders()
        desk.ledger.record(_payment())
        await desk.poll_payments()
        desk.ledger.mark_reversed("TX1")
        await desk.poll_payments()
        await desk.orchestrator.drain()
        attempt = desk.orchestrator.get("ORD1")
        assert attempt.stage is ReleaseStage.MANUAL_REQUIRED
        assert attempt.reason_code is ReasonCode.PAYMENT_REVERSED
        assert fake_market.release_calls == []
        assert desk.ledger.reversed_claims() == []

    @pytest.mark.asyncio
    async def test_chat_cursor_advances_for_awaiting_orders(self, desk, fake_market):
        fake_market.orders["ORD1"] = make_order("ORD1")
        fake_market.chat["ORD1"] = [
            ChatMessage(message_id=7, order_number="ORD1", image_url="https://img/receipt.jpg"),
        ]
        await desk.poll_orders()
        await desk.poll_chat()
        assert desk.chat.cursor("ORD1") == 7


class TestTracking:
    @pytest.mark.asyncio
    async def test_manual_order_dropped_once_closed(self, desk, fake_market):
        fake_market.orders["ORD1"] = make_order("ORD1")
        await desk.poll_orders()
        desk.ledger.record(_payment())
        await desk.poll_payments()
        await desk.orchestrator.drain()
        # no counterparty stats: the risk check fails closed
        assert desk.orchestrator.get("ORD1").stage is ReleaseStage.MANUAL_REQUIRED

        fake_market.set_status("ORD1", MarketplaceOrderStatus.COMPLETED)
        await desk.poll_orders()
        assert desk.orchestrator.get("ORD1") is None

    @pytest.mark.asyncio
    async def test_released_orders_and_seen_payments_do_not_accumulate(self, fake_market, session_factory, fake_codes):
        config = AppConfig(
            release=ReleaseConfig(enabled=True, released_retention_s=0, low_risk_threshold=Decimal("5000")),
            totp=TotpConfig(secret="JBSWY3DPEHPK3PXP"),
        )
        desk = Desk(config, fake_market, session_factory)
        desk.orchestrator.code_provider = fake_codes
        for n in range(5):
            fake_market.orders[f"ORD{n}"] = make_order(f"ORD{n}")
            await desk.poll_orders()
            desk.ledger.record(_payment(f"TX{n}"))
            await desk.poll_payments()
            await desk.orchestrator.drain()

        await desk.poll_orders()
        await desk.poll_payments()
        assert len(fake_market.release_calls) == 5
        assert desk.orchestrator.tracked() == []
        assert desk._seen_payments == set()


class TestShutdown:
    @pytest.mark.asyncio
    async def test_run_exits_cleanly_when_stopped(self, desk, fake_market):
        stop = asyncio.Event()
        stop.set()
        await asyncio.wait_for(desk.run(stop), timeout=5)
        assert fake_market.closed
