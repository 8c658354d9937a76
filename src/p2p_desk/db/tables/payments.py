"""Bank payment ledger table (p2p_release schema)."""

from datetime import datetime

from sqlalchemy import Boolean, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from p2p_desk.db.base import Base

SCHEMA = "p2p_release"


class BankPaymentRow(Base):
    __tablename__ = "bank_payments"
    __table_args__ = {"schema": SCHEMA}

    transaction_id: Mapped[str] = mapped_column(Text, primary_key=True)
    amount: Mapped[float] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(Text, nullable=False)
    sender_name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="COMPLETED")
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # An order may be backed by at most one payment
    claimed_order_number: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reversed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reversal_acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
