"""Exception hierarchy for the conversation session engine.

Store-level errors (duplicate/missing ids) are programming errors and fatal
only to the operation that raised them. Stale events are not errors at all:
the ingestion controller drops them and reports ``EventOutcome.STALE``.
"""

from typing import List, Optional


class ThreadkeeperError(Exception):
    """Base class for all engine errors."""


class DuplicateIdError(ThreadkeeperError):
    """A message with the same id already exists in the store."""

    def __init__(self, message_id: str):
        super().__init__(f"Message id already exists: {message_id}")
        self.message_id = message_id


class MessageNotFoundError(ThreadkeeperError, KeyError):
    """The referenced message is not in the store."""

    def __init__(self, message_id: str):
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id

    def __str__(self) -> str:
        return self.args[0]


class InvalidTransitionError(ThreadkeeperError):
    """An exchange was moved to a state it cannot reach from its current one."""


class NoActiveSessionError(ThreadkeeperError):
    """A user action needs an active workspace session and there is none."""


class ExternalProcessError(ThreadkeeperError):
    """The external AI process failed to accept or complete a request.

    Attributes:
        session_id: Session the failure belongs to (if known)
    """

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.session_id = session_id


class SummarizationError(ThreadkeeperError):
    """The summarization service failed or timed out.

    Compaction is aborted and neither the in-memory timeline nor the
    persisted store is modified.

    Attributes:
        attempts: Number of attempts made before giving up
    """

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class PersistenceError(ThreadkeeperError):
    """Reading or writing the persisted conversation store failed."""


class CompactionError(ThreadkeeperError):
    """A compaction could not be committed and was rolled back.

    Attributes:
        rolled_back: Whether compensation restored the persisted store
        restored_ids: Ids re-saved during compensation
    """

    def __init__(self, message: str, rolled_back: bool = True, restored_ids: Optional[List[str]] = None):
        super().__init__(message)
        self.rolled_back = rolled_back
        self.restored_ids = restored_ids or []


class ExchangeInProgressError(ThreadkeeperError):
    """A message was sent while the previous reply is still in flight."""
