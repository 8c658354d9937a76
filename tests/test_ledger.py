"""Tests for the payment ledger's at-most-once claims."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from conftest import NOW

from p2p_desk.models import BankPayment
from p2p_desk.release import DoubleClaimError, PaymentLedger


def _payment(tx: str = "TX1", amount: str = "1000.00", offset_s: int = 0) -> BankPayment:
    return BankPayment(
        transaction_id=tx,
        amount=Decimal(amount),
        sender_name="JUAN GARCIA LOPEZ",
        timestamp=NOW + timedelta(seconds=offset_s),
    )


@pytest.fixture
def ledger(session_factory):
    return PaymentLedger(session_factory)


class TestRecord:
    def test_record_is_idempotent(self, ledger):
        assert ledger.record(_payment()) is True
        assert ledger.record(_payment()) is False
        assert len(ledger.unclaimed()) == 1

    def test_unclaimed_oldest_first(self, ledger):
        ledger.record(_payment("TX2", offset_s=10))
        ledger.record(_payment("TX1"))
        assert [p.transaction_id for p in ledger.unclaimed()] == ["TX1", "TX2"]

    def test_amount_round_trips_as_decimal(self, ledger):
        ledger.record(_payment(amount="1234.56"))
        assert ledger.unclaimed()[0].amount == Decimal("1234.56")

    def test_bank_status_round_trips(self, ledger):
        ledger.record(_payment().model_copy(update={"status": "PENDING"}))
        assert ledger.unclaimed()[0].status == "PENDING"


class TestClaim:
    def test_first_claim_wins(self, ledger):
        ledger.record(_payment())
        assert ledger.claim("TX1", "ORD1", now=NOW) is True
        assert ledger.claim("TX1", "ORD2", now=NOW) is False
        assert ledger.claimed_by("TX1") == "ORD1"

    def test_claimed_payment_leaves_unclaimed(self, ledger):
        ledger.record(_payment())
        ledger.claim("TX1", "ORD1", now=NOW)
        assert ledger.unclaimed() == []
        assert ledger.payment_for_order("ORD1").transaction_id == "TX1"

    def test_unknown_payment_cannot_be_claimed(self, ledger):
        assert ledger.claim("NOPE", "ORD1", now=NOW) is False

    def test_order_cannot_own_two_payments(self, ledger):
        ledger.record(_payment("TX1"))
        ledger.record(_payment("TX2"))
        assert ledger.claim("TX1", "ORD1", now=NOW)
        with pytest.raises(DoubleClaimError):
            ledger.claim("TX2", "ORD1", now=NOW)
        assert ledger.claimed_by("TX2") is None

    def test_reversed_payment_cannot_be_claimed(self, ledger):
        ledger.record(_payment())
        ledger.mark_reversed("TX1")
        assert ledger.claim("TX1", "ORD1", now=NOW) is False
        assert ledger.unclaimed() == []


class TestReversal:
    def test_mark_reversed_returns_claiming_order(self, ledger):
        ledger.record(_payment())
        ledger.claim("TX1", "ORD1", now=NOW)
        assert ledger.mark_reversed("TX1") == "ORD1"
        assert ledger.reversed_claims() == [("TX1", "ORD1")]

    def test_unclaimed_reversal_is_not_a_reversed_claim(self, ledger):
        ledger.record(_payment())
        assert ledger.mark_reversed("TX1") is None
        assert ledger.reversed_claims() == []

    def test_unknown_payment(self, ledger):
        assert ledger.mark_reversed("NOPE") is None

    def test_acknowledged_reversal_is_reported_once(self, ledger):
        ledger.record(_payment())
        ledger.claim("TX1", "ORD1", now=NOW)
        ledger.mark_reversed("TX1")
        ledger.acknowledge_reversal("TX1", now=NOW)
        assert ledger.reversed_claims() == []
        assert ledger.claimed_by("TX1") == "ORD1"
