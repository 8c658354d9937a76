"""Trusted counterparty registry table."""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, Integer, Numeric, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from p2p_desk.db.base import Base
from p2p_desk.db.tables.payments import SCHEMA


class TrustedCounterpartyRow(Base):
    __tablename__ = "trusted_counterparties"
    __table_args__ = {"schema": SCHEMA}

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    counterparty_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    display_names: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    release_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    released_volume: Mapped[float] = mapped_column(Numeric(18, 2), nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_release_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
