"""Interface of the external AI execution process and its event channel."""

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Optional, Protocol, Sequence, runtime_checkable

from threadkeeper.events import ProcessEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class AIProcess(Protocol):
    """Opaque asynchronous service that produces assistant replies.

    ``send`` and ``cancel`` are fire-and-forget: results arrive later on the
    event channel, tagged with the session that produced them. Events of one
    session are delivered in the order they were produced.
    """

    async def start_session(self, workspace_path: str) -> str:
        """Open a session for a workspace and return its id."""
        ...

    def send(self, session_id: str, text: str, attachments: Sequence[str] = ()) -> None: ...

    def cancel(self, session_id: str) -> None: ...

    async def close_session(self, session_id: str) -> None: ...

    def events(self) -> AsyncIterator[ProcessEvent]: ...


class EventChannel:
    """Ordered single-consumer channel backed by an asyncio.Queue."""

    _CLOSED = object()

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProcessEvent) -> None:
        """Enqueue an event. Publishing on a closed channel is dropped."""
        if self._closed:
            logger.debug("Dropping %s published after channel close", event.event_type.name)
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    async def get(self) -> Optional[ProcessEvent]:
        """Next event, or None once the channel is closed and drained."""
        item = await self._queue.get()
        if item is self._CLOSED:
            return None
        return item

    def __aiter__(self) -> AsyncIterator[ProcessEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProcessEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event
