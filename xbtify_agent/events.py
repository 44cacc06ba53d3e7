"""
Event subscription for the XBTify agent.

Consumes the transport's event stream and fans each event out to the
subscribed handlers. Every event is handled in its own task so a slow
handler never holds up delivery of the next event.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, AsyncIterator, Callable, Coroutine

from xbtify_agent.types import TransportEvent

logger = logging.getLogger(__name__)

# Transport event types
MESSAGE = "message"
GROUP = "group"
START = "start"
STOP = "stop"
UNHANDLED_ERROR = "unhandled_error"

EventHandler = Callable[[TransportEvent], Coroutine[Any, Any, None] | None]


class EventManager:
    """Dispatches transport events to subscribed handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._wildcard_handlers: list[EventHandler] = []
        self._listen_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        """Number of events still being handled."""
        return len(self._tasks)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for a specific event type."""
        self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Register a handler for all event types."""
        self._wildcard_handlers.append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler | None = None) -> None:
        """Remove a handler (or all handlers) for an event type."""
        if handler is None:
            self._handlers.pop(event_type, None)
        else:
            handlers = self._handlers.get(event_type, [])
            self._handlers[event_type] = [h for h in handlers if h is not handler]

    async def dispatch(self, event: TransportEvent) -> None:
        """Run all matching handlers for ``event``; handler errors are logged."""
        handlers = list(self._handlers.get(event.type, []))
        handlers.extend(self._wildcard_handlers)

        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Error in event handler for %s", event.type)

    def emit(self, event: TransportEvent) -> asyncio.Task[None]:
        """Schedule ``event`` for dispatch without waiting for it."""
        task = asyncio.create_task(self.dispatch(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _listen_loop(self, stream: AsyncIterator[TransportEvent]) -> None:
        try:
            async for event in stream:
                self.emit(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Transport event stream failed")
            await self.dispatch(TransportEvent(type=UNHANDLED_ERROR, data={"error": str(e)}))
        else:
            logger.debug("Transport event stream ended")

    def start(self, stream: AsyncIterator[TransportEvent]) -> None:
        """Start consuming ``stream`` in the background."""
        self._listen_task = asyncio.create_task(self._listen_loop(stream))

    async def wait_closed(self) -> None:
        """Wait until the stream ends and every in-flight event is handled."""
        if self._listen_task is not None:
            await asyncio.gather(self._listen_task, return_exceptions=True)
        await self.drain()

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        """Stop consuming events and cancel handlers still running."""
        if self._listen_task and not self._listen_task.done():
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
        self._listen_task = None

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
