"""Trusted counterparty registry keyed by immutable account id."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from p2p_desk.db.tables.counterparties import TrustedCounterpartyRow

log = structlog.get_logger("registry")


@dataclass(frozen=True)
class TrustedCounterparty:
    counterparty_id: str
    display_names: tuple[str, ...]
    release_count: int
    released_volume: Decimal
    active: bool


def _to_model(row: TrustedCounterpartyRow) -> TrustedCounterparty:
    return TrustedCounterparty(
        counterparty_id=row.counterparty_id,
        display_names=tuple(row.display_names or ()),
        release_count=row.release_count,
        released_volume=Decimal(str(row.released_volume)),
        active=row.active,
    )


class TrustedCounterpartyRegistry:
    """Read-mostly allowlist that lets trusted buyers skip the risk check.

    Lookups hit an in-memory snapshot that is replaced wholesale on
    ``refresh()``, so concurrent readers never see a half-built map.
    Nicknames are kept for display only; they are never a lookup key.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._snapshot: dict[str, TrustedCounterparty] = {}

    def refresh(self) -> int:
        with self._session_factory() as session:
            rows = session.execute(
                select(TrustedCounterpartyRow).where(TrustedCounterpartyRow.active.is_(True))
            ).scalars().all()
            snapshot = {r.counterparty_id: _to_model(r) for r in rows}
        self._snapshot = snapshot
        return len(snapshot)

    def is_trusted(self, counterparty_id: str) -> bool:
        return bool(counterparty_id) and counterparty_id in self._snapshot

    def get(self, counterparty_id: str) -> TrustedCounterparty | None:
        return self._snapshot.get(counterparty_id)

    def add(self, counterparty_id: str, display_name: str = "", notes: str | None = None) -> TrustedCounterparty:
        """Trust a counterparty (manual verification). Re-activates a retired entry."""
        if not counterparty_id:
            raise ValueError("counterparty_id is required")
        with self._session_factory() as session:
            row = session.execute(
                select(TrustedCounterpartyRow).where(TrustedCounterpartyRow.counterparty_id == counterparty_id)
            ).scalar_one_or_none()
            if row is None:
                row = TrustedCounterpartyRow(
                    counterparty_id=counterparty_id,
                    display_names=[display_name] if display_name else [],
                    release_count=0,
                    released_volume=0,
                    active=True,
                    notes=notes,
                    created_at=self._clock(),
                )
                session.add(row)
            else:
                row.active = True
                if display_name and display_name not in (row.display_names or []):
                    row.display_names = [*(row.display_names or []), display_name]
                if notes:
                    row.notes = notes
            session.commit()
            model = _to_model(row)
        self.refresh()
        log.info("counterparty_trusted", counterparty_id=counterparty_id)
        return model

    def retire(self, counterparty_id: str) -> bool:
        with self._session_factory() as session:
            row = session.execute(
                select(TrustedCounterpartyRow).where(TrustedCounterpartyRow.counterparty_id == counterparty_id)
            ).scalar_one_or_none()
            if row is None or not row.active:
                return False
            row.active = False
            session.commit()
        self.refresh()
        log.info("counterparty_retired", counterparty_id=counterparty_id)
        return True

    def record_release(self, counterparty_id: str, amount: Decimal) -> None:
        """Bump activity counters after a release; no-op for untrusted ids."""
        if not self.is_trusted(counterparty_id):
            return
        with self._session_factory() as session:
            row = session.execute(
                select(TrustedCounterpartyRow).where(TrustedCounterpartyRow.counterparty_id == counterparty_id)
            ).scalar_one_or_none()
            if row is None:
                return
            row.release_count += 1
            row.released_volume = Decimal(str(row.released_volume)) + amount
            row.last_release_at = self._clock()
            session.commit()
            self._snapshot = {**self._snapshot, counterparty_id: _to_model(row)}
