"""Tests for the operator query API."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from conftest import NOW
from fastapi.testclient import TestClient

from p2p_desk.api.app import create_app
from p2p_desk.events import EventRecorder
from p2p_desk.models import PriceUpdateEvent, ReasonCode, ReleaseEvent, ReleaseStage, TradeDirection


def _event(order_number: str, stage: ReleaseStage, minutes: int, reason_code: ReasonCode | None = None) -> ReleaseEvent:
    return ReleaseEvent(
        order_number=order_number,
        stage=stage,
        reason_code=reason_code,
        timestamp=NOW + timedelta(minutes=minutes),
    )


@pytest.fixture
def api(session_factory):
    recorder = EventRecorder(session_factory)
    for event in [
        _event("ORD1", ReleaseStage.AWAITING_PAYMENT, 0),
        _event("ORD1", ReleaseStage.PAYMENT_DETECTED, 1),
        _event("ORD1", ReleaseStage.MANUAL_REQUIRED, 2, ReasonCode.ABOVE_CEILING),
        _event("ORD2", ReleaseStage.AWAITING_PAYMENT, 0),
        _event("ORD2", ReleaseStage.RELEASED, 3),
        _event("ORD3", ReleaseStage.MANUAL_REQUIRED, 1, ReasonCode.AUTO_RELEASE_DISABLED),
        _event("ORD3", ReleaseStage.CODE_ACQUIRED, 4),
    ]:
        recorder.record(event)
    for listing_id, new_price in [("S1", "19.99"), ("S2", "19.80"), ("S1", "19.98")]:
        recorder.record(PriceUpdateEvent(
            listing_id=listing_id,
            asset="USDT",
            direction=TradeDirection.SELL,
            old_price=Decimal("20.50"),
            new_price=Decimal(new_price),
            reason="smart_undercut",
            timestamp=NOW,
        ))
    return TestClient(create_app(session_factory))


class TestApi:
    def test_health(self, api):
        assert api.get("/api/health").json()["status"] == "healthy"

    def test_manual_queue_uses_latest_event(self, api):
        body = api.get("/api/releases/manual").json()
        assert [r["order_number"] for r in body] == ["ORD1"]
        assert body[0]["reason_code"] == "ABOVE_CEILING"

    def test_order_history(self, api):
        body = api.get("/api/releases/ORD1/events").json()
        assert [r["stage"] for r in body] == ["AWAITING_PAYMENT", "PAYMENT_DETECTED", "MANUAL_REQUIRED"]

    def test_unknown_order_is_404(self, api):
        assert api.get("/api/releases/NOPE/events").status_code == 404

    def test_price_updates_newest_first(self, api):
        body = api.get("/api/price-updates", params={"listing_id": "S1"}).json()
        assert [r["new_price"] for r in body] == ["19.98", "19.99"]

    def test_price_updates_limit(self, api):
        assert len(api.get("/api/price-updates", params={"limit": 2}).json()) == 2
