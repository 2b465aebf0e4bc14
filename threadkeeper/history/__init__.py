"""Conversation persistence: JSONL message storage and index."""

from .index import (
    get_conversation_metadata,
    query_index,
    rebuild_index,
    remove_from_index,
    update_index,
)
from .models import IndexEntry
from .storage import ConversationStorage, get_history_dir

__all__ = [
    "ConversationStorage",
    "IndexEntry",
    "get_conversation_metadata",
    "get_history_dir",
    "query_index",
    "rebuild_index",
    "remove_from_index",
    "update_index",
]
