"""
Time-windowed coalescing of store change events.

SubscriptionBuffer is a small state machine:

    idle ──push──▶ buffering ──window elapsed / max_pending──▶ flushing
      ▲                                                          │
      └──────────────────── ready queue drained ◀────────────────┘

Events are appended to a pending list. The pending list is cut into a
ready batch when it reaches max_pending (immediately) or when the window
timer fires. The timer is single-shot, armed by the first unflushed event
and never extended by later events. Ready batches are delivered strictly
one at a time by a single drain task.

Invariants:
    - At most one flush handler invocation is in flight per buffer
    - Batches are delivered in the order they were cut
    - close() cancels the timer, flushes what is pending and waits; calling
      it again is a no-op
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from ..store.base import ChangeEvent

logger = logging.getLogger(__name__)

FlushHandler = Callable[[List[ChangeEvent]], Awaitable[None]]


class BufferState(Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    FLUSHING = "flushing"


class SubscriptionBuffer:
    """Coalesces change events into batches for a flush handler.

    Must be used from within a running event loop.
    """

    def __init__(
        self,
        on_flush: FlushHandler,
        window_ms: int = 1000,
        max_pending: int = 100,
        name: str = "",
    ) -> None:
        self._on_flush = on_flush
        self.window_ms = window_ms
        self.max_pending = max_pending
        self.name = name
        self._pending: List[ChangeEvent] = []
        self._ready: Deque[List[ChangeEvent]] = deque()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._drain_task: Optional[asyncio.Task[None]] = None
        self._closed = False
        self.flush_count = 0
        self.last_snapshot: Dict[str, Any] = {}

    @property
    def state(self) -> BufferState:
        if self._drain_task is not None and not self._drain_task.done():
            return BufferState.FLUSHING
        if self._pending or self._ready:
            return BufferState.BUFFERING
        return BufferState.IDLE

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, events: List[ChangeEvent]) -> None:
        """Append events; cuts a batch whenever max_pending is reached."""
        if self._closed:
            return
        for event in events:
            self._pending.append(event)
            if len(self._pending) >= self.max_pending:
                self._cut()
        if self._pending and self._timer is None:
            self._timer = asyncio.get_running_loop().call_later(
                self.window_ms / 1000.0, self._on_timer
            )

    def _on_timer(self) -> None:
        self._timer = None
        self._cut()

    def _cut(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self._pending:
            return
        batch, self._pending = self._pending, []
        self._ready.append(batch)
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._ready:
            batch = self._ready.popleft()
            self.flush_count += 1
            try:
                await self._on_flush(batch)
            except Exception as e:
                logger.error(
                    f"Subscription flush failed: {e}",
                    extra={"subscription": self.name, "events": len(batch)},
                )

    async def flush(self) -> None:
        """Cut whatever is pending and wait until every ready batch is delivered."""
        self._cut()
        task = self._drain_task
        if task is not None and task is not asyncio.current_task():
            await task

    async def close(self) -> None:
        """Cancel the timer, flush pending events and stop accepting new ones."""
        if self._closed:
            return
        self._closed = True
        await self.flush()
