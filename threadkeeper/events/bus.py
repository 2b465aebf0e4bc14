"""Notification bus between a conversation session and its renderers.

The session, the ingestion controller and the compaction engine emit
timeline notifications here; renderers, the console chat and tests
subscribe. Emission is synchronous on the event loop, so a handler sees
the store exactly as it was when the notification was raised.
"""

import logging
from typing import Callable, FrozenSet, Iterable, List, Optional, Tuple

from .base import BaseEvent, EventType

logger = logging.getLogger(__name__)

Handler = Callable[[BaseEvent], None]


class EventBus:
    """Delivers session notifications to subscribers.

    A subscriber may restrict itself to some event types. One subscriber
    raising never prevents delivery to the rest, and never propagates into
    the session code that emitted the notification.
    """

    def __init__(self):
        # (handler, accepted types or None for all), in subscription order
        self._subscriptions: List[Tuple[Handler, Optional[FrozenSet[EventType]]]] = []

    def subscribe(self, handler: Handler, event_types: Optional[Iterable[EventType]] = None) -> None:
        """Subscribe a handler, optionally to some event types only.

        Subscribing an already subscribed handler replaces its type filter.
        """
        accepted = frozenset(event_types) if event_types is not None else None
        for i, (existing, _) in enumerate(self._subscriptions):
            if existing == handler:
                self._subscriptions[i] = (handler, accepted)
                return
        self._subscriptions.append((handler, accepted))

    def unsubscribe(self, handler: Handler) -> None:
        self._subscriptions = [s for s in self._subscriptions if s[0] != handler]

    def emit(self, event: BaseEvent) -> None:
        """Deliver ``event`` to every matching handler; failures are logged."""
        for handler, accepted in list(self._subscriptions):
            if accepted is not None and event.event_type not in accepted:
                continue
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler %r failed on %s", handler, event.event_type.name)

    def has_handlers(self) -> bool:
        return bool(self._subscriptions)

    def handler_count(self) -> int:
        return len(self._subscriptions)
