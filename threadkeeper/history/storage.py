"""JSONL-based conversation message storage.

One file per conversation, one ``Message`` per line in timeline order. The
store is keyed by conversation id and message id: saving an existing id
replaces the record in place, so streamed messages can be saved repeatedly.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import portalocker
from pydantic import ValidationError

from threadkeeper.blocks import parse_blocks
from threadkeeper.exceptions import PersistenceError
from threadkeeper.models import Message
from threadkeeper.xdg import get_xdg_data_path

from .index import remove_from_index, update_index

logger = logging.getLogger(__name__)

LOCK_TIMEOUT = 5

# A parsed message, or the raw text of a line that did not parse
Record = Union[Message, str]


def get_history_dir() -> Path:
    """Get path to conversation history directory.

    Returns:
        Path to history directory in XDG data location
        (~/.local/share/threadkeeper/history/)
    """
    return get_xdg_data_path("history")


def _safe_name(conversation_id: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in conversation_id)


class ConversationStorage:
    """Persistence collaborator for conversation timelines.

    Blocking file I/O runs in a worker thread so callers on the event loop
    only suspend at the await.
    """

    def __init__(self, history_dir: Optional[Path] = None):
        self.history_dir = history_dir or get_history_dir()

    def conversation_path(self, conversation_id: str) -> Path:
        return self.history_dir / f"{_safe_name(conversation_id)}.jsonl"

    def _lock_path(self, conversation_id: str) -> Path:
        return self.history_dir / f".{_safe_name(conversation_id)}.lock"

    # ------------------------------------------------------------------
    # Synchronous primitives
    # ------------------------------------------------------------------

    def _read_records(self, conversation_id: str) -> List[Record]:
        """Read every line; lines that are not valid messages are kept as raw text."""
        path = self.conversation_path(conversation_id)
        if not path.exists():
            return []

        records: List[Record] = []
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, 1):
                    line = line.rstrip("\n")
                    if not line.strip():
                        continue
                    try:
                        records.append(Message.model_validate(json.loads(line)))
                    except (json.JSONDecodeError, ValidationError) as e:
                        logger.warning("Unreadable line %d in %s left as-is: %s", line_num, conversation_id, e)
                        records.append(line)
        except OSError as e:
            raise PersistenceError(f"Failed to load conversation {conversation_id}: {e}") from e
        return records

    def _read(self, conversation_id: str) -> List[Message]:
        return [r for r in self._read_records(conversation_id) if isinstance(r, Message)]

    def _write(self, conversation_id: str, records: List[Record]) -> None:
        path = self.conversation_path(conversation_id)
        tmp_path = path.with_suffix(".jsonl.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            for record in records:
                # unparseable lines go back untouched
                f.write(record.model_dump_json() if isinstance(record, Message) else record)
                f.write("\n")
        tmp_path.replace(path)

    def _locked(self, conversation_id: str) -> portalocker.Lock:
        self.history_dir.mkdir(parents=True, exist_ok=True)
        return portalocker.Lock(self._lock_path(conversation_id), "a", timeout=LOCK_TIMEOUT)

    def _touch_index(self, conversation_id: str, messages: List[Message], compacted: bool = False) -> None:
        workspace = next((m.metadata.get("workspace_path") for m in messages if m.metadata.get("workspace_path")), None)
        try:
            update_index(
                self.history_dir,
                conversation_id,
                message_count=len(messages),
                workspace_path=workspace,
                compacted=compacted,
            )
        except RuntimeError as e:
            # Index is a cache; it can be rebuilt from the JSONL files
            logger.warning("Failed to update index for %s: %s", conversation_id, e)

    def save_message_sync(
        self, message: Message, after_id: Optional[str] = None, before_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Upsert a message and return its derived content blocks.

        Args:
            message: Message to store. Its blocks are replaced by freshly derived ones.
            after_id: Insert a new message right after this id instead of appending.
                Ignored when the message already exists or ``after_id`` is unknown.
            before_id: Insert a new message right before this id (used when ``after_id``
                is not given or unknown).

        Returns:
            Derived content blocks

        Raises:
            PersistenceError: If the file cannot be locked or written
        """
        blocks = parse_blocks(message.content, message.id)
        stored = message.model_copy(update={"blocks": blocks})
        conversation_id = message.conversation_id

        try:
            with self._locked(conversation_id):
                records = self._read_records(conversation_id)
                ids = [r.id if isinstance(r, Message) else None for r in records]
                if stored.id in ids:
                    records[ids.index(stored.id)] = stored
                elif after_id is not None and after_id in ids:
                    records.insert(ids.index(after_id) + 1, stored)
                elif before_id is not None and before_id in ids:
                    records.insert(ids.index(before_id), stored)
                else:
                    records.append(stored)
                self._write(conversation_id, records)
                messages = [r for r in records if isinstance(r, Message)]
        except portalocker.exceptions.LockException as e:
            raise PersistenceError(f"Failed to acquire lock for {conversation_id} (timeout after {LOCK_TIMEOUT}s)") from e
        except OSError as e:
            raise PersistenceError(f"Failed to save message {message.id}: {e}") from e

        self._touch_index(conversation_id, messages, compacted=message.is_compaction_summary)
        return blocks

    def delete_message_sync(self, conversation_id: str, message_id: str) -> bool:
        """Delete one message.

        Returns:
            True if the message existed

        Raises:
            PersistenceError: If the file cannot be locked or written
        """
        try:
            with self._locked(conversation_id):
                records = self._read_records(conversation_id)
                kept = [r for r in records if not (isinstance(r, Message) and r.id == message_id)]
                if len(kept) == len(records):
                    return False
                self._write(conversation_id, kept)
                remaining = [r for r in kept if isinstance(r, Message)]
        except portalocker.exceptions.LockException as e:
            raise PersistenceError(f"Failed to acquire lock for {conversation_id} (timeout after {LOCK_TIMEOUT}s)") from e
        except OSError as e:
            raise PersistenceError(f"Failed to delete message {message_id}: {e}") from e

        self._touch_index(conversation_id, remaining)
        return True

    # ------------------------------------------------------------------
    # Async collaborator interface
    # ------------------------------------------------------------------

    async def load_messages(self, conversation_id: str) -> List[Message]:
        """Load a conversation in timeline order (empty if it doesn't exist)."""
        return await asyncio.to_thread(self._read, conversation_id)

    async def save_message(
        self, message: Message, after_id: Optional[str] = None, before_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Upsert a message; see ``save_message_sync``."""
        return await asyncio.to_thread(self.save_message_sync, message, after_id, before_id)

    async def delete_message(self, conversation_id: str, message_id: str) -> bool:
        """Delete a message; see ``delete_message_sync``."""
        return await asyncio.to_thread(self.delete_message_sync, conversation_id, message_id)

    # ------------------------------------------------------------------
    # Conversation level helpers
    # ------------------------------------------------------------------

    def list_conversation_files(self) -> List[Path]:
        """List conversation JSONL files, newest first."""
        if not self.history_dir.exists():
            return []
        try:
            files = list(self.history_dir.glob("*.jsonl"))
            files.sort(key=lambda p: p.stat().st_mtime, reverse=True)
            return files
        except OSError:
            return []

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a whole conversation file.

        Returns:
            True if conversation was deleted, False if it didn't exist

        Raises:
            PersistenceError: If deletion fails
        """
        path = self.conversation_path(conversation_id)
        if not path.exists():
            return False
        try:
            path.unlink()
            self._lock_path(conversation_id).unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Failed to delete conversation {conversation_id}: {e}") from e
        remove_from_index(self.history_dir, conversation_id)
        return True

    def last_modified(self, conversation_id: str) -> Optional[datetime]:
        path = self.conversation_path(conversation_id)
        if not path.exists():
            return None
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
