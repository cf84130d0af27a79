"""Single ordered stream for the two admin-side store subscriptions.

The ideas collection and the session document are separate subscriptions
whose updates may interleave arbitrarily. Both callbacks only enqueue; one
consumer task applies events in arrival order, so controller state is never
mutated from two places at once.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from ideatank.data.session_store import ChangeCallback, Snapshot

logger = logging.getLogger(__name__)


class EventSource(str, Enum):
    IDEAS = "ideas"
    SESSION = "session"


@dataclass(frozen=True)
class SessionEvent:
    source: EventSource
    session_id: str
    epoch: int
    snapshot: Any


class SessionEventReconciler:
    def __init__(self, handler: Callable[[SessionEvent], None]):
        self._handler = handler
        self._queue: "asyncio.Queue[SessionEvent]" = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.get_running_loop().create_task(self._consume())

    def publish(self, event: SessionEvent) -> None:
        self._queue.put_nowait(event)

    def callback_for(self, source: EventSource, session_id: str, epoch: int) -> ChangeCallback:
        def on_change(snapshot: Snapshot) -> None:
            self.publish(SessionEvent(source, session_id, epoch, snapshot))

        return on_change

    async def drain(self) -> None:
        """Wait until every event published so far has been applied."""
        if self._consumer is None or self._consumer.done():
            return
        await self._queue.join()

    async def stop(self) -> None:
        if self._consumer is None:
            return
        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                self._handler(event)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Failed to apply %s event for session %s", event.source.value, event.session_id
                )
            finally:
                self._queue.task_done()
