"""Per-session ordered event channel."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from labquery.schemas.events import MessageEndEvent, OutboundEvent
from labquery.services.errors import StreamAlreadyAttached

logger = logging.getLogger("labquery.channel")


class EventChannel:
    """Single ordered outbound queue between a session and its stream reader.

    ``publish`` never blocks. Events published before the first reader
    attaches are buffered; events published while a reader that had attached
    is gone are discarded. Nothing is delivered for a message id after its
    ``message_end``.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[OutboundEvent]] = asyncio.Queue()
        self._attached = False
        self._ever_attached = False
        self._closed = False
        self._ended: set[str] = set()
        self.dropped = 0

    @property
    def attached(self) -> bool:
        return self._attached

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: OutboundEvent) -> bool:
        """Queue ``event`` for delivery. Returns False when it was discarded."""
        message_id = getattr(event, "message_id", None)
        if self._closed or (message_id and message_id in self._ended):
            self.dropped += 1
            return False
        if isinstance(event, MessageEndEvent):
            self._ended.add(event.message_id)
        if self._ever_attached and not self._attached:
            self.dropped += 1
            return False
        self._queue.put_nowait(event)
        return True

    def attach(self) -> None:
        if self._attached:
            raise StreamAlreadyAttached()
        self._attached = True
        self._ever_attached = True

    def detach(self) -> None:
        self._attached = False

    def close(self) -> None:
        """End the stream; the reader gets ``None`` after pending events."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def next_event(self, timeout: Optional[float] = None) -> Optional[OutboundEvent]:
        """Wait for the next event; ``None`` means the channel closed.

        Raises:
            TimeoutError: Nothing arrived within ``timeout`` seconds
        """
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)
