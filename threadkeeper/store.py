"""In-memory message store for one conversation timeline.

The store is the single source of truth for rendering. All access happens on
the event loop thread, so operations never interleave mid-mutation and no
locking is needed.
"""

from typing import Any, Dict, Iterable, List, Mapping, Tuple

from .exceptions import DuplicateIdError, MessageNotFoundError
from .models import Message


class MessageStore:
    """Ordered, append-friendly collection of messages."""

    def __init__(self, messages: Iterable[Message] = ()):
        self._messages: List[Message] = []
        self._index: Dict[str, int] = {}
        self.replace(messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._index

    def _reindex(self) -> None:
        self._index = {msg.id: i for i, msg in enumerate(self._messages)}

    def append(self, message: Message) -> Message:
        """Add a message at the end of the timeline.

        Raises:
            DuplicateIdError: If a message with the same id exists
        """
        if message.id in self._index:
            raise DuplicateIdError(message.id)
        stored = message.model_copy(deep=True)
        self._index[stored.id] = len(self._messages)
        self._messages.append(stored)
        return stored.model_copy(deep=True)

    def patch(self, message_id: str, updates: Mapping[str, Any]) -> Message:
        """Merge fields into an existing message.

        ``metadata`` is merged key by key; every other field is replaced.
        The id cannot be changed.

        Args:
            message_id: Message to update
            updates: Partial field values

        Returns:
            Copy of the patched message

        Raises:
            MessageNotFoundError: If the message is not in the store
        """
        position = self._index.get(message_id)
        if position is None:
            raise MessageNotFoundError(message_id)

        current = self._messages[position]
        data = current.model_dump()
        for key, value in updates.items():
            if key == "id":
                continue
            if key == "metadata" and value is not None:
                data["metadata"] = {**data.get("metadata", {}), **value}
            else:
                data[key] = value

        patched = Message.model_validate(data)
        self._messages[position] = patched
        return patched.model_copy(deep=True)

    def remove(self, message_ids: Iterable[str]) -> List[str]:
        """Bulk delete messages. Unknown ids are ignored.

        Returns:
            Ids that were removed, in timeline order
        """
        doomed = set(message_ids)
        removed = [msg.id for msg in self._messages if msg.id in doomed]
        if removed:
            self._messages = [msg for msg in self._messages if msg.id not in doomed]
            self._reindex()
        return removed

    def replace(self, messages: Iterable[Message]) -> None:
        """Swap in a whole new timeline.

        Raises:
            DuplicateIdError: If the new timeline repeats an id; the store is left unchanged
        """
        new_messages = [msg.model_copy(deep=True) for msg in messages]
        seen = set()
        for msg in new_messages:
            if msg.id in seen:
                raise DuplicateIdError(msg.id)
            seen.add(msg.id)
        self._messages = new_messages
        self._reindex()

    def get(self, message_id: str) -> Message:
        """Return a copy of one message.

        Raises:
            MessageNotFoundError: If the message is not in the store
        """
        position = self._index.get(message_id)
        if position is None:
            raise MessageNotFoundError(message_id)
        return self._messages[position].model_copy(deep=True)

    def index_of(self, message_id: str) -> int:
        position = self._index.get(message_id)
        if position is None:
            raise MessageNotFoundError(message_id)
        return position

    def ids(self) -> List[str]:
        return [msg.id for msg in self._messages]

    def snapshot(self) -> List[Message]:
        """Ordered defensive copy of the timeline for renderers."""
        return [msg.model_copy(deep=True) for msg in self._messages]

    def view(self) -> Tuple[Message, ...]:
        """Uncopied read-only view for internal readers that never mutate."""
        return tuple(self._messages)
