"""Read-only chat poller with a per-order last-seen cursor."""

from __future__ import annotations

import asyncio

import structlog

from p2p_desk.marketplace.client import MarketplaceClient
from p2p_desk.models import ChatMessage

log = structlog.get_logger("chat")


class ChatPoller:
    """Returns each chat message at most once per order."""

    def __init__(self, client: MarketplaceClient, rows: int = 50, timeout_s: float = 15.0) -> None:
        self.client = client
        self.rows = rows
        self.timeout_s = timeout_s
        self._cursors: dict[str, int] = {}

    def cursor(self, order_number: str) -> int:
        return self._cursors.get(order_number, 0)

    async def poll(self, order_number: str) -> list[ChatMessage]:
        messages = await asyncio.wait_for(
            self.client.get_chat_messages(order_number, rows=self.rows), timeout=self.timeout_s,
        )
        last_seen = self.cursor(order_number)
        fresh = sorted(
            (m for m in messages if m.message_id > last_seen),
            key=lambda m: m.message_id,
        )
        if fresh:
            self._cursors[order_number] = fresh[-1].message_id
            log.debug("chat_messages_new", order_number=order_number, count=len(fresh))
        return fresh

    def forget(self, order_number: str) -> None:
        self._cursors.pop(order_number, None)

    def retain(self, order_numbers: set[str]) -> None:
        """Drop cursors for every order not in *order_numbers*."""
        for order_number in set(self._cursors) - order_numbers:
            self.forget(order_number)
