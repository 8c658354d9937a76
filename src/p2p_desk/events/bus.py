"""Typed in-process event channel with per-subscriber queues."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Union

import structlog

from p2p_desk.models import PriceUpdateEvent, ReleaseEvent

log = structlog.get_logger("events")

DeskEvent = Union[ReleaseEvent, PriceUpdateEvent]

_CLOSED = object()


class EventBus:
    """Fan-out channel: every subscriber gets every event published after it subscribed."""

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue] = []
        self._closed = False

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def publish(self, event: DeskEvent) -> None:
        if self._closed:
            log.warning("event_after_close", event_type=type(event).__name__)
            return
        for queue in self._subscribers:
            queue.put_nowait(event)

    def close(self) -> None:
        """Let consumers drain what is queued, then stop."""
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(_CLOSED)


async def consume(
    queue: asyncio.Queue,
    handler: Callable[[DeskEvent], Awaitable[None] | None],
) -> int:
    """Feed queued events to *handler* until the bus closes. Returns events handled."""
    handled = 0
    while True:
        event = await queue.get()
        if event is _CLOSED:
            return handled
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
            handled += 1
        except Exception:
            log.exception("event_handler_error", event_type=type(event).__name__)
