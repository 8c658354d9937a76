"""Auto-release orchestrator — the per-order release state machine.

Stages per order::

    AWAITING_PAYMENT -> PAYMENT_DETECTED -> RISK_EVALUATED -> CODE_ACQUIRED -> RELEASED
                                                                            -> RELEASE_FAILED -> CODE_ACQUIRED (retry)

Any non-terminal stage may drop to MANUAL_REQUIRED. RELEASED and
MANUAL_REQUIRED are terminal; RELEASE_FAILED is terminal once the order can
no longer be released. The marketplace's order status stays authoritative:
it is re-read before every release call and after any call whose outcome is
unknown.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import httpx
import structlog

from p2p_desk.config.schema import ReleaseConfig
from p2p_desk.events.bus import EventBus
from p2p_desk.marketplace.client import MarketplaceClient
from p2p_desk.marketplace.errors import MarketplaceError, ReleaseRejectedError
from p2p_desk.models import (
    BankPayment,
    MarketplaceOrderStatus,
    Order,
    ReasonCode,
    ReleaseEvent,
    ReleaseStage,
)
from p2p_desk.release.codes import CodeUnavailableError, VerificationCodeProvider
from p2p_desk.release.ledger import DoubleClaimError, PaymentLedger
from p2p_desk.release.matcher import MatchResult, PaymentMatcher, name_similarity
from p2p_desk.release.registry import TrustedCounterpartyRegistry
from p2p_desk.release.risk import BuyerRiskAssessor

log = structlog.get_logger("auto_release")

S = ReleaseStage

TRANSITIONS: dict[ReleaseStage, set[ReleaseStage]] = {
    S.AWAITING_PAYMENT: {S.PAYMENT_DETECTED, S.MANUAL_REQUIRED},
    S.PAYMENT_DETECTED: {S.RISK_EVALUATED, S.MANUAL_REQUIRED},
    S.RISK_EVALUATED: {S.CODE_ACQUIRED, S.MANUAL_REQUIRED},
    S.CODE_ACQUIRED: {S.RELEASED, S.RELEASE_FAILED, S.MANUAL_REQUIRED},
    S.RELEASE_FAILED: {S.CODE_ACQUIRED, S.MANUAL_REQUIRED},
    S.RELEASED: set(),
    S.MANUAL_REQUIRED: set(),
}

# Only a human approval re-opens a MANUAL_REQUIRED order
MANUAL_OVERRIDES: dict[ReleaseStage, set[ReleaseStage]] = {
    S.MANUAL_REQUIRED: {S.CODE_ACQUIRED},
}

_TRANSPORT_ERRORS = (httpx.HTTPError, MarketplaceError, asyncio.TimeoutError)


class InvariantViolation(Exception):
    """A state change that the concurrency design should have made impossible."""


class _Outcome(Enum):
    RELEASED = "released"
    RETRY = "retry"
    STOP = "stop"


@dataclass
class ReleaseAttempt:
    """Working record for one order. Observability only, not authoritative."""

    order: Order
    stage: ReleaseStage = ReleaseStage.AWAITING_PAYMENT
    payment: BankPayment | None = None
    name_score: float | None = None
    attempts: int = 0
    trusted: bool = False
    low_risk: bool = False
    retryable: bool = True
    reason_code: ReasonCode | None = None
    reason: str | None = None
    history: list[ReleaseStage] = field(default_factory=list)
    updated_at: datetime | None = None

    @property
    def order_number(self) -> str:
        return self.order.order_number

    @property
    def is_terminal(self) -> bool:
        if self.stage in (S.RELEASED, S.MANUAL_REQUIRED):
            return True
        return self.stage is S.RELEASE_FAILED and not self.retryable


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AutoReleaseOrchestrator:
    """Drives matched orders from payment detection to release.

    One instance serves one marketplace account. Claiming a payment and
    moving its order to PAYMENT_DETECTED happen together under the
    account lock, backed by the ledger's conditional update.
    """

    def __init__(
        self,
        client: MarketplaceClient,
        config: ReleaseConfig,
        matcher: PaymentMatcher,
        ledger: PaymentLedger,
        assessor: BuyerRiskAssessor,
        registry: TrustedCounterpartyRegistry,
        code_provider: VerificationCodeProvider | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.config = config
        self.matcher = matcher
        self.ledger = ledger
        self.assessor = assessor
        self.registry = registry
        self.code_provider = code_provider
        self.bus = bus
        self._clock = clock
        self._sleep = sleep
        self._attempts: dict[str, ReleaseAttempt] = {}
        self._claim_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._accepting = True
        self._stats: Counter[str] = Counter()
        self.log = log.bind(account=config.account)

    # --- intake ---

    async def handle_order(self, order: Order) -> ReleaseAttempt | None:
        """Track a new order or apply a status change reported by the order poller."""
        attempt = self._attempts.get(order.order_number)

        if order.status.is_final:
            if attempt is not None and not self._in_flight(attempt):
                self._attempts.pop(order.order_number)
                self.log.info("order_closed", order_number=order.order_number, status=order.status.value)
            return attempt

        if attempt is None:
            attempt = ReleaseAttempt(order=order, updated_at=self._clock())
            self._attempts[order.order_number] = attempt
            self._stats["orders_tracked"] += 1
            self._emit(attempt, data={"amount": str(order.amount), "counterparty": order.counterparty_nickname})
        elif attempt.stage is S.AWAITING_PAYMENT:
            attempt.order = order

        if self._matchable(attempt):
            await self._match_unclaimed(attempt)
        return attempt

    async def handle_payment(self, payment: BankPayment) -> MatchResult | None:
        """Record a bank payment and try to match it to an awaiting order."""
        self._stats["payments_received"] += 1
        if not self.ledger.record(payment) and self.ledger.claimed_by(payment.transaction_id):
            self.log.info("payment_already_claimed", transaction_id=payment.transaction_id)
            return None

        awaiting = [a.order for a in self._attempts.values() if self._matchable(a)]
        result = self.matcher.match(payment, awaiting)

        if result.match is not None:
            attempt = self._attempts[result.match.order.order_number]
            await self._claim_and_start(attempt, payment, result.match.name_score)
            return result

        self._stats["payments_unmatched"] += 1
        if len(result.amount_candidates) == 1:
            # The only order with this amount was paid by someone else: possible third-party payment
            candidate = result.amount_candidates[0]
            attempt = self._attempts[candidate.order.order_number]
            self._manual(
                attempt,
                ReasonCode.NAME_MISMATCH,
                f"sender {payment.sender_name!r} does not match {candidate.order.display_name!r}",
                data={"transaction_id": payment.transaction_id, "name_score": round(candidate.name_score, 3)},
            )
        else:
            self.log.warning(
                "payment_unmatched",
                transaction_id=payment.transaction_id,
                amount=str(payment.amount),
                sender_name=payment.sender_name,
                amount_candidates=len(result.amount_candidates),
            )
        return result

    async def handle_reversal(self, transaction_id: str) -> None:
        """Bank reported a claimed payment as reversed."""
        order_number = self.ledger.mark_reversed(transaction_id)
        if order_number is None:
            return
        attempt = self._attempts.get(order_number)
        if attempt is None:
            self.log.critical("payment_reversed_for_untracked_order", order_number=order_number,
                              transaction_id=transaction_id)
            return
        if attempt.stage is S.RELEASED:
            self.log.critical("payment_reversed_after_release", order_number=order_number, transaction_id=transaction_id)
            return
        if not attempt.is_terminal:
            self._manual(attempt, ReasonCode.PAYMENT_REVERSED, "bank payment reversed",
                         data={"transaction_id": transaction_id})

    async def approve_manually(self, order_number: str) -> ReleaseStage:
        """Operator approval: release a MANUAL_REQUIRED order with a fresh code."""
        attempt = self._attempts.get(order_number)
        if attempt is None or attempt.stage is not S.MANUAL_REQUIRED:
            raise ValueError(f"order {order_number} is not waiting for manual approval")
        provider = self.code_provider
        if provider is None or provider.auth_type != self.config.auth_type:
            raise CodeUnavailableError("2FA unavailable")
        attempt.attempts = 0
        attempt.retryable = True
        self.log.info("manual_approval", order_number=order_number)
        try:
            await self._release_loop(attempt, manual=True)
        except InvariantViolation as e:
            self._violation(attempt, str(e))
        return attempt.stage

    # --- queries ---

    def get(self, order_number: str) -> ReleaseAttempt | None:
        return self._attempts.get(order_number)

    def tracked(self) -> list[ReleaseAttempt]:
        return list(self._attempts.values())

    def pending(self) -> list[ReleaseAttempt]:
        return [a for a in self._attempts.values() if not a.is_terminal]

    def manual_queue(self) -> list[ReleaseAttempt]:
        return [a for a in self._attempts.values() if a.stage is S.MANUAL_REQUIRED]

    def stats(self) -> dict[str, int]:
        by_stage = Counter(a.stage.value for a in self._attempts.values())
        return {**self._stats, **{f"stage_{k.lower()}": v for k, v in by_stage.items()}}

    # --- lifecycle ---

    def prune(self, now: datetime | None = None) -> int:
        """Forget RELEASED orders older than the retention window. Returns how many went."""
        cutoff = (now or self._clock()) - timedelta(seconds=self.config.released_retention_s)
        expired = [
            number for number, a in self._attempts.items()
            if a.stage is S.RELEASED and a.updated_at is not None and a.updated_at <= cutoff
        ]
        for number in expired:
            del self._attempts[number]
        if expired:
            self.log.debug("released_orders_pruned", count=len(expired))
        return len(expired)

    def stop_accepting(self) -> None:
        self._accepting = False

    async def drain(self) -> None:
        """Wait for every in-flight release pipeline to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- matching ---

    @staticmethod
    def _matchable(attempt: ReleaseAttempt) -> bool:
        return (
            attempt.stage is S.AWAITING_PAYMENT
            and attempt.order.status is MarketplaceOrderStatus.BUYER_PAYED
        )

    def _in_flight(self, attempt: ReleaseAttempt) -> bool:
        return attempt.stage is not S.AWAITING_PAYMENT and not attempt.is_terminal

    async def _match_unclaimed(self, attempt: ReleaseAttempt) -> None:
        payment = self.matcher.best_payment_for(attempt.order, self.ledger.unclaimed())
        if payment is not None:
            score = name_similarity(payment.sender_name, attempt.order.display_name)
            await self._claim_and_start(attempt, payment, score)

    async def _claim_and_start(self, attempt: ReleaseAttempt, payment: BankPayment, name_score: float) -> bool:
        if not self._accepting:
            self.log.info("claim_deferred_shutdown", order_number=attempt.order_number)
            return False

        async with self._claim_lock:
            if attempt.stage is not S.AWAITING_PAYMENT:
                return False
            try:
                claimed = self.ledger.claim(payment.transaction_id, attempt.order_number, self._clock())
            except DoubleClaimError as e:
                self._violation(attempt, str(e))
                return False
            if not claimed:
                self.log.info(
                    "payment_claim_lost",
                    transaction_id=payment.transaction_id,
                    order_number=attempt.order_number,
                )
                return False

            attempt.payment = payment
            attempt.name_score = name_score
            self._transition(attempt, S.PAYMENT_DETECTED, data={
                "transaction_id": payment.transaction_id,
                "paid_amount": str(payment.amount),
                "sender_name": payment.sender_name,
                "name_score": round(name_score, 3),
            })
            self._stats["payments_matched"] += 1

        self._track(asyncio.create_task(self._settle(attempt), name=f"settle-{attempt.order_number}"))
        return True

    # --- pipeline ---

    async def _settle(self, attempt: ReleaseAttempt) -> None:
        try:
            if not self.config.enabled:
                self._manual(attempt, ReasonCode.AUTO_RELEASE_DISABLED, "auto-release disabled")
                return
            if not await self._evaluate_risk(attempt):
                return
            if attempt.order.amount > self.config.max_auto_release_amount:
                self._manual(
                    attempt,
                    ReasonCode.ABOVE_CEILING,
                    f"amount {attempt.order.amount} above auto-release ceiling {self.config.max_auto_release_amount}",
                )
                return
            await self._release_loop(attempt)
        except InvariantViolation as e:
            self._violation(attempt, str(e))
        except Exception:
            self.log.exception("release_pipeline_error", order_number=attempt.order_number)
            if not attempt.is_terminal:
                self._manual(attempt, ReasonCode.RELEASE_OUTCOME_UNKNOWN, "unexpected error in release pipeline")

    async def _evaluate_risk(self, attempt: ReleaseAttempt) -> bool:
        order = attempt.order
        attempt.trusted = self.registry.is_trusted(order.counterparty_id)
        attempt.low_risk = order.amount <= self.config.low_risk_threshold

        if attempt.trusted:
            skipped = "trusted counterparty"
        elif attempt.low_risk:
            skipped = "below low-risk threshold"
        elif not self.assessor.config.enabled:
            skipped = "risk check disabled"
        else:
            skipped = None

        if skipped is not None:
            self._transition(attempt, S.RISK_EVALUATED, data={"risk_check": "skipped", "why": skipped})
            return True

        verdict = await self.assessor.assess(order)
        if not verdict.allowed:
            code = ReasonCode.RISK_CHECK_FAILED if verdict.data_available else ReasonCode.RISK_DATA_UNAVAILABLE
            self._manual(attempt, code, f"risk check failed: {verdict.reason}",
                         data={"failed_criteria": verdict.failed_criteria})
            return False

        self._transition(attempt, S.RISK_EVALUATED, data={"risk_check": "passed"})
        return True

    async def _release_loop(self, attempt: ReleaseAttempt, manual: bool = False) -> None:
        while True:
            code = await self._acquire_code(attempt, manual=manual)
            manual = False
            if code is None:
                return
            outcome = await self._release_once(attempt, code)
            if outcome is not _Outcome.RETRY:
                return
            if attempt.attempts >= self.config.max_release_attempts:
                self._manual(
                    attempt,
                    ReasonCode.MAX_ATTEMPTS_EXCEEDED,
                    f"release failed after {attempt.attempts} attempts",
                )
                return

    async def _acquire_code(self, attempt: ReleaseAttempt, manual: bool = False) -> str | None:
        provider = self.code_provider
        if provider is None or provider.auth_type != self.config.auth_type:
            self._manual(attempt, ReasonCode.TWO_FA_UNAVAILABLE, "2FA unavailable", data={
                "configured_auth_type": self.config.auth_type.value,
                "provider_auth_type": provider.auth_type.value if provider else None,
            })
            return None
        try:
            code = await provider.get_code(attempt.order_number)
        except CodeUnavailableError as e:
            self.log.warning("code_unavailable", order_number=attempt.order_number, error=str(e))
            if attempt.stage is S.MANUAL_REQUIRED:
                raise
            self._manual(attempt, ReasonCode.TWO_FA_UNAVAILABLE, "2FA unavailable")
            return None

        self._transition(attempt, S.CODE_ACQUIRED, data={"attempt": attempt.attempts + 1}, manual=manual)
        return code

    async def _order_status(self, order_number: str) -> MarketplaceOrderStatus | None:
        try:
            order = await asyncio.wait_for(
                self.client.get_order_detail(order_number), timeout=self.config.call_timeout_s,
            )
        except (*_TRANSPORT_ERRORS, ValueError) as e:
            self.log.warning("order_status_unavailable", order_number=order_number, error=str(e) or type(e).__name__)
            return None
        return order.status

    async def _release_once(self, attempt: ReleaseAttempt, code: str) -> _Outcome:
        order_number = attempt.order_number

        status = await self._order_status(order_number)
        if status is MarketplaceOrderStatus.COMPLETED:
            self._released(attempt, already_completed=True)
            return _Outcome.RELEASED
        if status is None:
            attempt.attempts += 1
            self._failed(attempt, ReasonCode.RELEASE_OUTCOME_UNKNOWN, "order status unavailable before release")
            return _Outcome.RETRY
        if status is not MarketplaceOrderStatus.BUYER_PAYED:
            self._failed(attempt, ReasonCode.ORDER_NOT_RELEASABLE, f"order status is {status.value}", retryable=False)
            return _Outcome.STOP

        if self.config.release_delay_s > 0:
            await self._sleep(self.config.release_delay_s)

        if attempt.stage is not S.CODE_ACQUIRED:
            # Moved to MANUAL_REQUIRED by a reversal while we waited
            self.log.warning("release_aborted", order_number=order_number, stage=attempt.stage.value)
            return _Outcome.STOP

        attempt.attempts += 1
        call = asyncio.create_task(
            self.client.release_coin(order_number, self.config.auth_type, code),
            name=f"release-{order_number}",
        )
        self._track(call)
        call.add_done_callback(lambda t: self._release_call_done(order_number, t))

        # Waiting never cancels the call; no retry is sent while it is still running
        done, _ = await asyncio.wait({call}, timeout=self.config.call_timeout_s)
        if not done:
            self.log.warning("release_call_slow", order_number=order_number, timeout_s=self.config.call_timeout_s)
            done, _ = await asyncio.wait({call}, timeout=self.config.release_grace_s)
        if not done:
            return await self._resolve_in_flight(attempt)

        try:
            call.result()
        except ReleaseRejectedError as e:
            self._failed(attempt, ReasonCode.RELEASE_REJECTED, str(e) or "release rejected",
                         data={"marketplace_code": e.code})
            return _Outcome.RETRY
        except _TRANSPORT_ERRORS as e:
            self.log.warning("release_outcome_unknown", order_number=order_number, error=str(e) or type(e).__name__)
            return await self._resolve_unknown(attempt)

        self._released(attempt)
        return _Outcome.RELEASED

    async def _resolve_unknown(self, attempt: ReleaseAttempt) -> _Outcome:
        """A release call timed out or lost its connection: ask the marketplace what happened."""
        status = await self._order_status(attempt.order_number)
        if status is None:
            self._manual(attempt, ReasonCode.RELEASE_OUTCOME_UNKNOWN,
                         "release outcome unknown and order status unavailable")
            return _Outcome.STOP
        if status is MarketplaceOrderStatus.COMPLETED:
            self._released(attempt, after_unknown=True)
            return _Outcome.RELEASED
        if status is MarketplaceOrderStatus.BUYER_PAYED:
            self._failed(attempt, ReasonCode.RELEASE_OUTCOME_UNKNOWN, "release call timed out, order still awaiting release")
            return _Outcome.RETRY
        self._failed(attempt, ReasonCode.ORDER_NOT_RELEASABLE, f"order status is {status.value}", retryable=False)
        return _Outcome.STOP

    async def _resolve_in_flight(self, attempt: ReleaseAttempt) -> _Outcome:
        """The release call outlived its grace period and may still land."""
        status = await self._order_status(attempt.order_number)
        if status is MarketplaceOrderStatus.COMPLETED:
            self._released(attempt, after_unknown=True)
            return _Outcome.RELEASED
        self._manual(
            attempt,
            ReasonCode.RELEASE_OUTCOME_UNKNOWN,
            "release call still in flight after grace period",
            data={"order_status": status.value if status else None},
        )
        return _Outcome.STOP

    def _release_call_done(self, order_number: str, call: asyncio.Task) -> None:
        if call.cancelled():
            self.log.warning("release_call_cancelled", order_number=order_number)
            return
        error = call.exception()
        if error is not None:
            self.log.info("release_call_failed", order_number=order_number, error=str(error) or type(error).__name__)

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # --- transitions ---

    def _released(self, attempt: ReleaseAttempt, **data: Any) -> None:
        self._transition(attempt, S.RELEASED, data={"attempts": attempt.attempts, **data})
        self._stats["released"] += 1
        self.registry.record_release(attempt.order.counterparty_id, attempt.order.amount)

    def _failed(
        self,
        attempt: ReleaseAttempt,
        code: ReasonCode,
        reason: str,
        retryable: bool = True,
        data: dict | None = None,
    ) -> None:
        attempt.retryable = retryable
        self._transition(attempt, S.RELEASE_FAILED, code, reason, data={"attempt": attempt.attempts, **(data or {})})
        self._stats["release_failures"] += 1

    def _manual(self, attempt: ReleaseAttempt, code: ReasonCode, reason: str, data: dict | None = None) -> None:
        self._transition(attempt, S.MANUAL_REQUIRED, code, reason, data=data)
        self._stats["manual_required"] += 1

    def _transition(
        self,
        attempt: ReleaseAttempt,
        stage: ReleaseStage,
        reason_code: ReasonCode | None = None,
        reason: str | None = None,
        data: dict | None = None,
        manual: bool = False,
    ) -> None:
        allowed = TRANSITIONS[attempt.stage] | (MANUAL_OVERRIDES.get(attempt.stage, set()) if manual else set())
        if stage not in allowed:
            raise InvariantViolation(
                f"order {attempt.order_number}: illegal transition {attempt.stage.value} -> {stage.value}"
            )
        attempt.history.append(attempt.stage)
        attempt.stage = stage
        attempt.reason_code = reason_code
        attempt.reason = reason
        attempt.updated_at = self._clock()
        self._emit(attempt, data=data)

    def _violation(self, attempt: ReleaseAttempt, message: str) -> None:
        if attempt.is_terminal and attempt.reason_code is not None:
            # Pipeline lost a race with a reversal; the earlier outcome stands
            self.log.warning("release_preempted", order_number=attempt.order_number, stage=attempt.stage.value, error=message)
            return
        self.log.critical("invariant_violation", order_number=attempt.order_number, stage=attempt.stage.value, error=message)
        self._stats["invariant_violations"] += 1
        if not attempt.is_terminal:
            attempt.history.append(attempt.stage)
            attempt.stage = S.MANUAL_REQUIRED
        attempt.reason_code = ReasonCode.INVARIANT_VIOLATION
        attempt.reason = message
        attempt.updated_at = self._clock()
        self._emit(attempt)

    def _emit(self, attempt: ReleaseAttempt, data: dict | None = None) -> None:
        event = ReleaseEvent(
            order_number=attempt.order_number,
            stage=attempt.stage,
            reason_code=attempt.reason_code,
            reason=attempt.reason,
            timestamp=attempt.updated_at or self._clock(),
            data=data or {},
        )
        self.log.info(
            "release_transition",
            order_number=attempt.order_number,
            stage=attempt.stage.value,
            reason_code=attempt.reason_code.value if attempt.reason_code else None,
        )
        if self.bus is not None:
            self.bus.publish(event)
