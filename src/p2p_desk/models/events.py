"""Release pipeline stages and the events both engines publish."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from p2p_desk.models.listing import TradeDirection


class ReleaseStage(str, Enum):
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAYMENT_DETECTED = "PAYMENT_DETECTED"
    RISK_EVALUATED = "RISK_EVALUATED"
    CODE_ACQUIRED = "CODE_ACQUIRED"
    RELEASED = "RELEASED"
    MANUAL_REQUIRED = "MANUAL_REQUIRED"
    RELEASE_FAILED = "RELEASE_FAILED"


class ReasonCode(str, Enum):
    """Stable machine-readable codes attached to negative outcomes."""

    AUTO_RELEASE_DISABLED = "AUTO_RELEASE_DISABLED"
    RISK_CHECK_FAILED = "RISK_CHECK_FAILED"
    RISK_DATA_UNAVAILABLE = "RISK_DATA_UNAVAILABLE"
    ABOVE_CEILING = "ABOVE_CEILING"
    TWO_FA_UNAVAILABLE = "TWO_FA_UNAVAILABLE"
    RELEASE_REJECTED = "RELEASE_REJECTED"
    ORDER_NOT_RELEASABLE = "ORDER_NOT_RELEASABLE"
    MAX_ATTEMPTS_EXCEEDED = "MAX_ATTEMPTS_EXCEEDED"
    RELEASE_OUTCOME_UNKNOWN = "RELEASE_OUTCOME_UNKNOWN"
    NAME_MISMATCH = "NAME_MISMATCH"
    PAYMENT_REVERSED = "PAYMENT_REVERSED"
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"


class ReleaseEvent(BaseModel):
    """One transition of an order through the release pipeline."""

    model_config = ConfigDict(frozen=True)

    order_number: str
    stage: ReleaseStage
    reason_code: ReasonCode | None = None
    reason: str | None = None
    timestamp: datetime
    data: dict[str, Any] = Field(default_factory=dict)


class PriceUpdateEvent(BaseModel):
    """Emitted after a successful price update on one of our listings."""

    model_config = ConfigDict(frozen=True)

    listing_id: str
    asset: str
    direction: TradeDirection
    old_price: Decimal
    new_price: Decimal
    reason: str
    timestamp: datetime
