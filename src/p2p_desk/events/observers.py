"""Event observers: structured log feed and durable SQL recorder."""

from __future__ import annotations

import structlog
from sqlalchemy.orm import Session, sessionmaker

from p2p_desk.db.tables.events import PriceUpdateRow, ReleaseEventRow
from p2p_desk.events.bus import DeskEvent
from p2p_desk.models import PriceUpdateEvent, ReleaseEvent, ReleaseStage

log = structlog.get_logger("events")

_NEGATIVE_STAGES = {ReleaseStage.MANUAL_REQUIRED, ReleaseStage.RELEASE_FAILED}


def log_event(event: DeskEvent) -> None:
    if isinstance(event, ReleaseEvent):
        emit = log.warning if event.stage in _NEGATIVE_STAGES else log.info
        emit(
            "release_stage",
            order_number=event.order_number,
            stage=event.stage.value,
            reason_code=event.reason_code.value if event.reason_code else None,
            reason=event.reason,
        )
    else:
        log.info(
            "price_update",
            listing_id=event.listing_id,
            asset=event.asset,
            direction=event.direction.value,
            old_price=str(event.old_price),
            new_price=str(event.new_price),
            reason=event.reason,
        )


class EventRecorder:
    """Persists every event so operators can query outcomes without logs."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def record(self, event: DeskEvent) -> int:
        with self._session_factory() as session:
            row = self._to_row(event)
            session.add(row)
            session.commit()
            return row.id

    __call__ = record

    @staticmethod
    def _to_row(event: DeskEvent) -> ReleaseEventRow | PriceUpdateRow:
        if isinstance(event, PriceUpdateEvent):
            return PriceUpdateRow(
                ts=event.timestamp,
                listing_id=event.listing_id,
                asset=event.asset,
                direction=event.direction.value,
                old_price=event.old_price,
                new_price=event.new_price,
                reason=event.reason,
            )
        return ReleaseEventRow(
            ts=event.timestamp,
            order_number=event.order_number,
            stage=event.stage.value,
            reason_code=event.reason_code.value if event.reason_code else None,
            reason=event.reason,
            data=event.model_dump(mode="json")["data"],
        )
