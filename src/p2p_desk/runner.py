"""Desk runner — wires the engines together and runs their loops until shutdown."""

from __future__ import annotations

import argparse
import asyncio
import signal
from collections.abc import Awaitable, Callable

import structlog
from sqlalchemy.orm import Session, sessionmaker

from p2p_desk.config.loader import PositioningWatcher, load_config
from p2p_desk.config.schema import AppConfig, PositioningSettings
from p2p_desk.db.engine import create_tables, get_engine, get_session_factory, init_engine
from p2p_desk.events import EventBus, EventRecorder, consume, log_event
from p2p_desk.logging.setup import setup_logging
from p2p_desk.marketplace import ChatPoller, MarketplaceClient
from p2p_desk.models import MarketplaceOrderStatus, ReleaseStage, TradeDirection
from p2p_desk.positioning import AdManager, CompetitorFetcher
from p2p_desk.release import (
    AutoReleaseOrchestrator,
    BuyerRiskAssessor,
    PaymentLedger,
    PaymentMatcher,
    ReleaseAttempt,
    TotpCodeProvider,
    TrustedCounterpartyRegistry,
)

log = structlog.get_logger("desk")


def _needs_refresh(attempt: ReleaseAttempt) -> bool:
    if attempt.stage is ReleaseStage.AWAITING_PAYMENT:
        return True
    return attempt.is_terminal and attempt.stage is not ReleaseStage.RELEASED


class Desk:
    """All long-lived collaborators, built once and passed explicitly."""

    def __init__(
        self,
        config: AppConfig,
        client: MarketplaceClient,
        session_factory: sessionmaker[Session],
        bus: EventBus | None = None,
        settings_provider: Callable[[], PositioningSettings] | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.bus = bus or EventBus()

        fetcher = CompetitorFetcher(client, timeout_s=config.marketplace.timeout_s)
        self.ad_managers = [
            AdManager(direction, client, fetcher, config.positioning, bus=self.bus,
                      call_timeout_s=config.marketplace.timeout_s, settings_provider=settings_provider)
            for direction in (TradeDirection.SELL, TradeDirection.BUY)
        ]

        self.ledger = PaymentLedger(session_factory)
        self.registry = TrustedCounterpartyRegistry(session_factory)
        self.orchestrator = AutoReleaseOrchestrator(
            client=client,
            config=config.release,
            matcher=PaymentMatcher(config.release.amount_tolerance, config.release.name_match_threshold),
            ledger=self.ledger,
            assessor=BuyerRiskAssessor(client, config.risk, timeout_s=config.release.call_timeout_s),
            registry=self.registry,
            code_provider=TotpCodeProvider.from_config(config.totp),
            bus=self.bus,
        )
        self.chat = ChatPoller(client, timeout_s=config.marketplace.timeout_s)
        self.recorder = EventRecorder(session_factory)
        self._seen_payments: set[str] = set()

    # --- order / payment intake ---

    async def poll_orders(self) -> None:
        """Feed BUYER_PAYED orders to the orchestrator and refresh the ones that left that state.

        Orders waiting on a payment or on an operator are re-read so a
        completed or cancelled order stops being tracked.
        """
        timeout = self.config.release.call_timeout_s
        paid = await asyncio.wait_for(
            self.client.list_orders(statuses=[MarketplaceOrderStatus.BUYER_PAYED]), timeout=timeout,
        )
        seen = set()
        for order in paid:
            seen.add(order.order_number)
            await self.orchestrator.handle_order(order)

        for attempt in self.orchestrator.tracked():
            if attempt.order_number in seen or not _needs_refresh(attempt):
                continue
            detail = await asyncio.wait_for(self.client.get_order_detail(attempt.order_number), timeout=timeout)
            await self.orchestrator.handle_order(detail)

        self.orchestrator.prune()

    async def poll_payments(self) -> None:
        """Pick up payments the bank integration wrote to the ledger, plus reversals."""
        unclaimed = self.ledger.unclaimed()
        # Claimed payments leave the ledger's unclaimed set, so they leave this one too
        self._seen_payments &= {p.transaction_id for p in unclaimed}
        for payment in unclaimed:
            if payment.transaction_id in self._seen_payments:
                continue
            self._seen_payments.add(payment.transaction_id)
            await self.orchestrator.handle_payment(payment)

        for transaction_id, _order_number in self.ledger.reversed_claims():
            await self.orchestrator.handle_reversal(transaction_id)
            self.ledger.acknowledge_reversal(transaction_id)

    async def poll_chat(self) -> None:
        """Surface receipt images for orders still waiting on a bank payment."""
        awaiting = [a for a in self.orchestrator.tracked() if a.stage is ReleaseStage.AWAITING_PAYMENT]
        self.chat.retain({a.order_number for a in awaiting})
        for attempt in awaiting:
            for message in await self.chat.poll(attempt.order_number):
                if message.is_image:
                    log.info(
                        "receipt_image_received",
                        order_number=attempt.order_number,
                        message_id=message.message_id,
                        image_url=message.image_url,
                    )

    # --- loops ---

    async def _every(self, name: str, interval_s: float, stop: asyncio.Event, fn: Callable[[], Awaitable[None]]) -> None:
        while not stop.is_set():
            try:
                await fn()
            except Exception:
                log.exception("tick_error", loop=name)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                pass

    async def run(self, stop: asyncio.Event) -> None:
        self.registry.refresh()
        consumers = [
            asyncio.create_task(consume(self.bus.subscribe(), log_event)),
            asyncio.create_task(consume(self.bus.subscribe(), self.recorder)),
        ]
        interval = self.config.release.order_poll_interval_s
        loops = [
            *(asyncio.create_task(m.run(stop)) for m in self.ad_managers),
            asyncio.create_task(self._every("orders", interval, stop, self.poll_orders)),
            asyncio.create_task(self._every("payments", interval, stop, self.poll_payments)),
            asyncio.create_task(self._every("chat", interval * 3, stop, self.poll_chat)),
            asyncio.create_task(self._every("registry", 300, stop, self._refresh_registry)),
        ]
        log.info("desk_started", account=self.config.release.account, auto_release=self.config.release.enabled)

        await asyncio.gather(*loops)
        self.orchestrator.stop_accepting()
        await self.orchestrator.drain()
        self.bus.close()
        await asyncio.gather(*consumers)
        await self.client.close()
        log.info("desk_stopped", stats=self.orchestrator.stats())

    async def _refresh_registry(self) -> None:
        self.registry.refresh()


async def run_desk(config: AppConfig, config_path: str | None = None) -> None:
    init_engine(config.database.url)
    create_tables(get_engine())
    client = MarketplaceClient(
        api_key=config.marketplace.api_key,
        api_secret=config.marketplace.api_secret,
        base_url=config.marketplace.base_url,
        search_url=config.marketplace.search_url,
        timeout_s=config.marketplace.timeout_s,
    )
    desk = Desk(
        config, client, get_session_factory(),
        settings_provider=PositioningWatcher(config_path, config.positioning),
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await desk.run(stop)


def main(config_path: str | None = None) -> None:
    """Load config, set up logging, run the desk until SIGINT or SIGTERM."""
    config = load_config(config_path)
    setup_logging(level=config.logging.level, log_format=config.logging.format)
    asyncio.run(run_desk(config, config_path))


def cli() -> None:
    parser = argparse.ArgumentParser(description="P2P desk: ad positioning and auto-release")
    parser.add_argument("--config", default=None, help="Path to config.yaml")
    args = parser.parse_args()
    main(config_path=args.config)
