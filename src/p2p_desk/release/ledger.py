"""Payment ledger — records bank payments and hands out at-most-once claims."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from p2p_desk.db.tables.payments import BankPaymentRow
from p2p_desk.models import BankPayment

log = structlog.get_logger("ledger")


class DoubleClaimError(Exception):
    """An order that already owns a payment tried to claim a second one."""


def _to_model(row: BankPaymentRow) -> BankPayment:
    return BankPayment(
        transaction_id=row.transaction_id,
        amount=Decimal(str(row.amount)),
        currency=row.currency,
        sender_name=row.sender_name,
        timestamp=row.received_at,
        status=row.status,
    )


class PaymentLedger:
    """SQL-backed claim table.

    ``claim`` is a single conditional UPDATE: it only succeeds while the
    payment is unclaimed and not reversed, and the unique constraint on
    ``claimed_order_number`` keeps an order from owning two payments.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def record(self, payment: BankPayment) -> bool:
        """Insert a payment; returns False if the transaction id is already known."""
        with self._session_factory() as session:
            if session.get(BankPaymentRow, payment.transaction_id) is not None:
                return False
            session.add(BankPaymentRow(
                transaction_id=payment.transaction_id,
                amount=payment.amount,
                currency=payment.currency,
                sender_name=payment.sender_name,
                received_at=payment.timestamp,
                status=payment.status,
            ))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        log.info("payment_recorded", transaction_id=payment.transaction_id, amount=str(payment.amount))
        return True

    def claim(self, transaction_id: str, order_number: str, now: datetime | None = None) -> bool:
        """Atomically bind a payment to an order. True only for the winning caller."""
        with self._session_factory() as session:
            stmt = (
                update(BankPaymentRow)
                .where(
                    BankPaymentRow.transaction_id == transaction_id,
                    BankPaymentRow.claimed_order_number.is_(None),
                    BankPaymentRow.reversed.is_(False),
                )
                .values(claimed_order_number=order_number, claimed_at=now or datetime.now(timezone.utc))
            )
            try:
                result = session.execute(stmt)
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise DoubleClaimError(
                    f"order {order_number} already owns a payment, refused {transaction_id}"
                ) from e
        return result.rowcount == 1

    def claimed_by(self, transaction_id: str) -> str | None:
        with self._session_factory() as session:
            row = session.get(BankPaymentRow, transaction_id)
            return row.claimed_order_number if row else None

    def payment_for_order(self, order_number: str) -> BankPayment | None:
        with self._session_factory() as session:
            row = session.execute(
                select(BankPaymentRow).where(BankPaymentRow.claimed_order_number == order_number)
            ).scalar_one_or_none()
            return _to_model(row) if row else None

    def unclaimed(self) -> list[BankPayment]:
        with self._session_factory() as session:
            rows = session.execute(
                select(BankPaymentRow)
                .where(BankPaymentRow.claimed_order_number.is_(None), BankPaymentRow.reversed.is_(False))
                .order_by(BankPaymentRow.received_at)
            ).scalars().all()
            return [_to_model(r) for r in rows]

    def reversed_claims(self) -> list[tuple[str, str]]:
        """(transaction_id, order_number) for claimed payments whose reversal is not yet acknowledged."""
        with self._session_factory() as session:
            rows = session.execute(
                select(BankPaymentRow.transaction_id, BankPaymentRow.claimed_order_number)
                .where(
                    BankPaymentRow.reversed.is_(True),
                    BankPaymentRow.claimed_order_number.is_not(None),
                    BankPaymentRow.reversal_acknowledged_at.is_(None),
                )
            ).all()
            return [(tx, order) for tx, order in rows]

    def mark_reversed(self, transaction_id: str) -> str | None:
        """Flag a payment as reversed by the bank; returns the claiming order, if any."""
        with self._session_factory() as session:
            row = session.get(BankPaymentRow, transaction_id)
            if row is None:
                log.warning("reversal_for_unknown_payment", transaction_id=transaction_id)
                return None
            row.reversed = True
            session.commit()
            return row.claimed_order_number

    def acknowledge_reversal(self, transaction_id: str, now: datetime | None = None) -> None:
        """Stop reporting a reversal once the release pipeline has acted on it."""
        with self._session_factory() as session:
            session.execute(
                update(BankPaymentRow)
                .where(BankPaymentRow.transaction_id == transaction_id)
                .values(reversal_acknowledged_at=now or datetime.now(timezone.utc))
            )
            session.commit()
