"""Conversation index for fast listing without reading JSONL files."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import portalocker

from .models import IndexEntry

logger = logging.getLogger(__name__)


def _get_index_path(history_dir: Path) -> Path:
    return history_dir / "index.json"


def load_index(history_dir: Path) -> Dict[str, IndexEntry]:
    """Load conversation index from JSON file.

    Returns:
        Dictionary mapping conversation IDs to IndexEntry models.
        Empty dict if the index doesn't exist or is corrupted (rebuild on next update).
    """
    index_path = _get_index_path(history_dir)

    if not index_path.exists():
        return {}

    try:
        with open(index_path, "r", encoding="utf-8") as f:
            raw_index = json.load(f)

        return {conv_id: IndexEntry.model_validate(metadata) for conv_id, metadata in raw_index.items()}

    except (json.JSONDecodeError, OSError, ValueError) as e:
        logger.warning("Conversation index at %s is unreadable: %s", index_path, e)
        return {}


def save_index(history_dir: Path, index: Dict[str, IndexEntry]) -> None:
    """Save conversation index to JSON file.

    Raises:
        RuntimeError: If save fails or lock timeout
    """
    index_path = _get_index_path(history_dir)
    index_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        serializable_index = {
            conv_id: entry.model_dump(mode="json", exclude_none=True) for conv_id, entry in index.items()
        }

        # Use file locking to prevent concurrent write corruption
        with open(index_path, "w", encoding="utf-8") as f:
            portalocker.lock(f, portalocker.LOCK_EX)
            try:
                json.dump(serializable_index, f, indent=2, ensure_ascii=False)
                f.flush()
            finally:
                portalocker.unlock(f)
    except portalocker.exceptions.LockException:
        raise RuntimeError(f"Failed to acquire lock on {index_path}")
    except OSError as e:
        raise RuntimeError(f"Failed to save index to {index_path}: {e}")


def update_index(
    history_dir: Path,
    conversation_id: str,
    message_count: int,
    workspace_path: Optional[str] = None,
    compacted: bool = False,
) -> IndexEntry:
    """Create or update the index entry for a conversation.

    Preserves ``created_at`` and an already known workspace path.

    Raises:
        RuntimeError: If save fails
    """
    index = load_index(history_dir)
    now = datetime.now(timezone.utc)
    existing = index.get(conversation_id)

    entry = IndexEntry(
        workspace_path=workspace_path or (existing.workspace_path if existing else None),
        created_at=existing.created_at if existing else now,
        updated_at=now,
        message_count=message_count,
        compaction_count=(existing.compaction_count if existing else 0) + (1 if compacted else 0),
    )
    index[conversation_id] = entry
    save_index(history_dir, index)
    return entry


def remove_from_index(history_dir: Path, conversation_id: str) -> bool:
    """Drop a conversation from the index.

    Returns:
        True if an entry was removed
    """
    index = load_index(history_dir)
    if conversation_id not in index:
        return False
    del index[conversation_id]
    save_index(history_dir, index)
    return True


def rebuild_index(history_dir: Path) -> int:
    """Rebuild index from all conversation files.

    Returns:
        Number of conversations indexed
    """
    from .storage import ConversationStorage

    storage = ConversationStorage(history_dir)
    new_index = {}

    for file_path in storage.list_conversation_files():
        conversation_id = file_path.stem
        try:
            messages = storage._read(conversation_id)
        except Exception as e:
            logger.warning("Failed to index %s: %s", conversation_id, e)
            continue

        if not messages:
            continue

        workspace = next((m.metadata.get("workspace_path") for m in messages if m.metadata.get("workspace_path")), None)
        new_index[conversation_id] = IndexEntry(
            workspace_path=workspace,
            created_at=messages[0].timestamp,
            updated_at=max(m.timestamp for m in messages),
            message_count=len(messages),
            compaction_count=sum(1 for m in messages if m.is_compaction_summary),
        )

    save_index(history_dir, new_index)
    return len(new_index)


def query_index(
    history_dir: Path,
    workspace_path: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Query conversation index with filters.

    Returns:
        List of entry dicts with ``conversation_id`` included (newest first)
    """
    results = []
    for conv_id, entry in load_index(history_dir).items():
        entry_dict = entry.model_dump(mode="json")
        entry_dict["conversation_id"] = conv_id
        results.append(entry_dict)

    if workspace_path:
        results = [r for r in results if r.get("workspace_path") == workspace_path]

    results.sort(key=lambda r: r.get("updated_at", ""), reverse=True)

    if limit:
        results = results[:limit]

    return results


def get_conversation_metadata(history_dir: Path, conversation_id: str) -> Optional[IndexEntry]:
    return load_index(history_dir).get(conversation_id)
