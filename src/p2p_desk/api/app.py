"""FastAPI application for operators: release outcomes and price history."""

from collections.abc import Generator
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from p2p_desk.db.tables.events import PriceUpdateRow, ReleaseEventRow
from p2p_desk.models import ReleaseStage

logger = structlog.get_logger("api")

_NEGATIVE_STAGES = (ReleaseStage.MANUAL_REQUIRED.value, ReleaseStage.RELEASE_FAILED.value)


def _release_event_dict(row: ReleaseEventRow) -> dict:
    return {
        "order_number": row.order_number,
        "stage": row.stage,
        "reason_code": row.reason_code,
        "reason": row.reason,
        "timestamp": row.ts.isoformat() if row.ts else None,
        "data": row.data or {},
    }


def create_app(session_factory: sessionmaker[Session]) -> FastAPI:
    app = FastAPI(
        title="P2P Desk API",
        description="Release outcomes and price updates recorded by the desk",
        version="0.1.0",
    )

    def get_db() -> Generator[Session, None, None]:
        """Dependency to get DB session."""
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    @app.get("/api/health")
    async def health_check():
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/api/releases/manual")
    async def manual_queue(limit: int = 100, session: Session = Depends(get_db)):
        """Orders whose latest event is a negative terminal outcome."""
        latest = (
            select(ReleaseEventRow.order_number, func.max(ReleaseEventRow.id).label("last_id"))
            .group_by(ReleaseEventRow.order_number)
            .subquery()
        )
        rows = session.execute(
            select(ReleaseEventRow)
            .join(latest, ReleaseEventRow.id == latest.c.last_id)
            .where(ReleaseEventRow.stage.in_(_NEGATIVE_STAGES))
            .order_by(ReleaseEventRow.ts.desc())
            .limit(limit)
        ).scalars().all()
        return [_release_event_dict(r) for r in rows]

    @app.get("/api/releases/{order_number}/events")
    async def release_events(order_number: str, session: Session = Depends(get_db)):
        rows = session.execute(
            select(ReleaseEventRow)
            .where(ReleaseEventRow.order_number == order_number)
            .order_by(ReleaseEventRow.id)
        ).scalars().all()
        if not rows:
            raise HTTPException(status_code=404, detail=f"No events for order {order_number}")
        return [_release_event_dict(r) for r in rows]

    @app.get("/api/price-updates")
    async def price_updates(
        listing_id: Optional[str] = None,
        limit: int = 100,
        session: Session = Depends(get_db),
    ):
        query = select(PriceUpdateRow).order_by(PriceUpdateRow.id.desc()).limit(limit)
        if listing_id:
            query = query.where(PriceUpdateRow.listing_id == listing_id)
        rows = session.execute(query).scalars().all()
        return [
            {
                "listing_id": r.listing_id,
                "asset": r.asset,
                "direction": r.direction,
                "old_price": str(r.old_price),
                "new_price": str(r.new_price),
                "reason": r.reason,
                "timestamp": r.ts.isoformat() if r.ts else None,
            }
            for r in rows
        ]

    return app
