"""Buyer risk assessment against counterparty trade history."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import httpx
import structlog

from p2p_desk.config.schema import RiskConfig
from p2p_desk.marketplace.client import MarketplaceClient
from p2p_desk.marketplace.errors import MarketplaceError
from p2p_desk.models import CounterpartyStats, Order

log = structlog.get_logger("risk")


@dataclass
class RiskVerdict:
    """Whether a release may proceed, and which criteria failed if not."""

    allowed: bool
    reason: str = ""
    failed_criteria: list[str] = field(default_factory=list)
    data_available: bool = True


def evaluate_stats(stats: CounterpartyStats, config: RiskConfig) -> RiskVerdict:
    """Pure threshold check; every failing criterion is reported."""
    failed = []
    if stats.total_orders < config.min_total_orders:
        failed.append(f"total_orders {stats.total_orders} < {config.min_total_orders}")
    if stats.orders_30d < config.min_orders_30d:
        failed.append(f"orders_30d {stats.orders_30d} < {config.min_orders_30d}")
    if stats.account_age_days < config.min_account_age_days:
        failed.append(f"account_age_days {stats.account_age_days} < {config.min_account_age_days}")
    if stats.positive_rate < config.min_positive_rate:
        failed.append(f"positive_rate {stats.positive_rate:.2f} < {config.min_positive_rate:.2f}")

    if failed:
        return RiskVerdict(allowed=False, reason="; ".join(failed), failed_criteria=failed)
    return RiskVerdict(allowed=True)


class BuyerRiskAssessor:
    def __init__(self, client: MarketplaceClient, config: RiskConfig, timeout_s: float = 15.0) -> None:
        self.client = client
        self.config = config
        self.timeout_s = timeout_s

    async def assess(self, order: Order) -> RiskVerdict:
        """Fetch the counterparty's stats for *order* and evaluate them.

        Missing data fails the check: without history there is nothing to
        justify an unattended release.
        """
        try:
            stats = await asyncio.wait_for(
                self.client.get_counterparty_stats(order.order_number), timeout=self.timeout_s,
            )
        except (httpx.HTTPError, MarketplaceError, asyncio.TimeoutError, ValueError) as e:
            log.warning("counterparty_stats_unavailable", order_number=order.order_number, error=str(e) or type(e).__name__)
            return RiskVerdict(
                allowed=False,
                reason="counterparty statistics unavailable",
                failed_criteria=["stats_unavailable"],
                data_available=False,
            )

        verdict = evaluate_stats(stats, self.config)
        log.info(
            "risk_assessed",
            order_number=order.order_number,
            allowed=verdict.allowed,
            total_orders=stats.total_orders,
            orders_30d=stats.orders_30d,
            account_age_days=stats.account_age_days,
            positive_rate=stats.positive_rate,
        )
        return verdict
