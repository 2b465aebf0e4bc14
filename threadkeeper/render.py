"""Size estimates for the virtualized timeline viewport.

Estimates only need to avoid gross under-allocation. The viewport measures
each entry after it is painted and the measured size wins from then on.
"""

import bisect
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from .models import Message, StepsSnapshot

DEFAULT_SIZE = 200
BASE_SIZE = 150
BLOCK_SIZE = 250
PANEL_HEADER_SIZE = 50
FILE_CHANGE_ROW_SIZE = 40
COLLAPSED_FILE_CHANGE_ROWS = 3
STEP_ROW_SIZE = 28

# (min exclusive content length, size), longest first
CONTENT_BANDS = ((1000, 400), (500, 300), (200, 200))


def _content_size(content_length: int) -> int:
    for threshold, size in CONTENT_BANDS:
        if content_length > threshold:
            return size
    return BASE_SIZE


def estimate_size(message: Message, steps_count: int = 0, expanded: bool = False) -> int:
    """Estimate the on-screen height of a message in pixels.

    Pure function of content length, block count, reasoning step count and
    whether the reasoning panel is expanded. Monotonic in content length.
    """
    size = max(_content_size(len(message.content or "")), BASE_SIZE + BLOCK_SIZE * len(message.blocks or ()))

    if steps_count > 0:
        size += PANEL_HEADER_SIZE
        if expanded:
            size += STEP_ROW_SIZE * steps_count
        else:
            # collapsed panel only lists file changes
            size += COLLAPSED_FILE_CHANGE_ROWS * FILE_CHANGE_ROW_SIZE
    return size


MessagesProvider = Callable[[], Sequence[Message]]
StepsProvider = Callable[[], Dict[str, StepsSnapshot]]


class RenderWindowEstimator:
    """Per-index sizes for a fixed-memory virtual list.

    Args:
        messages_provider: Returns the current ordered timeline
        steps_provider: Returns reasoning buffers keyed by message id
        overscan: Extra entries rendered on each side of the viewport
    """

    def __init__(
        self,
        messages_provider: MessagesProvider,
        steps_provider: Optional[StepsProvider] = None,
        overscan: int = 5,
    ):
        self._messages = messages_provider
        self._steps = steps_provider or dict
        self.overscan = overscan
        self._expanded: Set[str] = set()
        self._measured: Dict[str, int] = {}
        self.generation = 0

    def is_expanded(self, message_id: str) -> bool:
        return message_id in self._expanded

    def set_expanded(self, message_id: str, expanded: bool) -> None:
        if expanded == (message_id in self._expanded):
            return
        if expanded:
            self._expanded.add(message_id)
        else:
            self._expanded.discard(message_id)
        # the old measurement no longer matches what will be painted
        self._measured.pop(message_id, None)
        self.generation += 1

    def toggle_expanded(self, message_id: str) -> bool:
        """Flip a reasoning panel and return its new state."""
        expanded = message_id not in self._expanded
        self.set_expanded(message_id, expanded)
        return expanded

    def _size_at(self, messages: Sequence[Message], steps: Dict[str, StepsSnapshot], index: int) -> int:
        if not 0 <= index < len(messages):
            return DEFAULT_SIZE
        message = messages[index]
        live = steps.get(message.id)
        steps_count = len(live.steps) if live is not None else len(message.metadata.get("steps") or ())
        return estimate_size(message, steps_count, message.id in self._expanded)

    def estimate_size(self, index: int) -> int:
        return self._size_at(self._messages(), self._steps(), index)

    def estimates(self) -> List[int]:
        """Estimates for every index; re-invoked in full after any toggle."""
        messages, steps = self._messages(), self._steps()
        return [self._size_at(messages, steps, i) for i in range(len(messages))]

    def record_measurement(self, message_id: str, size: int) -> None:
        """Store the size observed after painting."""
        if size > 0:
            self._measured[message_id] = size

    def forget(self, message_ids) -> None:
        for message_id in message_ids:
            self._measured.pop(message_id, None)
            self._expanded.discard(message_id)

    def _measured_or_estimated(self, messages: Sequence[Message], steps: Dict[str, StepsSnapshot], index: int) -> int:
        if 0 <= index < len(messages):
            measured = self._measured.get(messages[index].id)
            if measured is not None:
                return measured
        return self._size_at(messages, steps, index)

    def size_of(self, index: int) -> int:
        return self._measured_or_estimated(self._messages(), self._steps(), index)

    def _offsets(self, messages: Sequence[Message]) -> List[int]:
        steps = self._steps()
        offsets = [0]
        for i in range(len(messages)):
            offsets.append(offsets[-1] + self._measured_or_estimated(messages, steps, i))
        return offsets

    def total_size(self) -> int:
        return self._offsets(self._messages())[-1]

    def visible_range(self, scroll_offset: int, viewport_height: int) -> Tuple[int, int]:
        """Half-open index range to render, overscan included."""
        messages = self._messages()
        count = len(messages)
        if count == 0:
            return (0, 0)

        offsets = self._offsets(messages)
        start = max(0, bisect.bisect_right(offsets, max(0, scroll_offset)) - 1)
        end = bisect.bisect_left(offsets, scroll_offset + max(0, viewport_height))
        start = max(0, start - self.overscan)
        end = min(count, max(end, start + 1) + self.overscan)
        return (start, end)
