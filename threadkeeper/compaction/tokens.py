"""Token estimates for compaction bookkeeping."""

import logging
from typing import Iterable, Optional

from threadkeeper.llm import litellm_model_name
from threadkeeper.models import Message

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_LIMIT = 128_000


def count_tokens(text: str, model: str) -> int:
    """Count tokens using litellm, falling back to len//4."""
    if not text:
        return 0
    try:
        from litellm import token_counter

        return token_counter(model=litellm_model_name(model), text=text)
    except Exception:
        return len(text) // 4


def count_message_tokens(messages: Iterable[Message], model: str) -> int:
    return sum(count_tokens(msg.content or "", model) for msg in messages)


def get_context_limit(model: str, fallback: Optional[int] = None) -> int:
    """Get context limit for a model via litellm.

    Priority: litellm model info -> fallback param -> DEFAULT_CONTEXT_LIMIT.
    """
    try:
        from litellm import get_model_info

        info = get_model_info(litellm_model_name(model))
        limit = info.get("max_input_tokens")
        if limit is not None:
            return limit
    except Exception:
        logger.debug("No model info for %s", model)
    return fallback if fallback is not None else DEFAULT_CONTEXT_LIMIT
