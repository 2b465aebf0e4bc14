"""Summarization collaborator for compaction.

``LiteLLMSummarizer`` builds a structured summary prompt and calls
``litellm.acompletion``. Long histories are split into chunks that fit the
model's context window, summarized separately and then combined.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from threadkeeper.exceptions import SummarizationError
from threadkeeper.llm import get_model_params
from threadkeeper.models import Message

from .tokens import count_message_tokens, count_tokens, get_context_limit

logger = logging.getLogger(__name__)

CONTEXT_RESERVE_RATIO = 0.25
MAX_MESSAGE_CHARS = 2000
MAX_CONTEXT_ITEMS = 20

SUMMARY_SYSTEM_PROMPT = (
    "You are creating a compact summary of a conversation to preserve essential context "
    "for continuing the conversation."
)

SUMMARY_INSTRUCTIONS = """**Create a well-structured summary that includes:**

## 1. Conversation Overview
- What is the main goal or problem being addressed?
- What stage is the project/task at?

## 2. Key Technical Decisions
- Architecture choices made
- Technology selections and rationale
- Design patterns or approaches decided

## 3. Code Changes & Files
- Files created, modified, or deleted
- Functions/classes implemented
- APIs or interfaces designed
- Configuration changes

## 4. Important Technical Details
- Constraints or requirements mentioned
- Performance considerations
- Edge cases or special handling
- Dependencies or integrations

## 5. Current Status
- What's completed and working
- What's in progress
- What's pending or blocked

## 6. Unresolved Items
- Open questions
- Bugs to fix
- Features to implement
- Things to investigate

**Format:** Use markdown with clear sections. Be thorough but concise. Preserve specific names, paths, values, and technical details."""

COMBINE_SYSTEM_PROMPT = (
    "You are given multiple summaries of consecutive conversation chunks. "
    "Combine them into a single summary with the same section structure. "
    "Keep every file path, name and open item they mention."
)


@dataclass(frozen=True)
class SummaryResult:
    summary: str
    tokens_before: int
    tokens_after: int


class Summarizer(Protocol):
    async def summarize(self, messages: Sequence[Message], context: Sequence[str] = ()) -> SummaryResult:
        """Summarize ``messages``; raise ``SummarizationError`` on any failure."""
        ...


def format_message(message: Message, position: int) -> str:
    role = "User" if message.role == "user" else "Assistant"
    content = message.content or ""
    if len(content) > MAX_MESSAGE_CHARS:
        content = content[:MAX_MESSAGE_CHARS] + "\n...[truncated]"
    timestamp = message.timestamp.strftime("%Y-%m-%d %H:%M:%S")
    return f"---\n**Message {position}** ({timestamp})\n{role}:\n{content}"


def build_summary_prompt(messages: Sequence[Message], context: Sequence[str] = (), offset: int = 0) -> str:
    """User prompt asking for the structured summary of ``messages``."""
    conversation = "\n\n".join(format_message(m, offset + i + 1) for i, m in enumerate(messages))
    context_section = ""
    if context:
        context_section = "\n\n**Key Context Extracted:**\n" + "\n".join(list(context)[:MAX_CONTEXT_ITEMS])

    return f"**{len(messages)} messages to summarize:**\n\n{conversation}{context_section}\n\n---\n\n{SUMMARY_INSTRUCTIONS}"


def chunk_messages(messages: Sequence[Message], max_chunk_tokens: int, model: str) -> List[List[Message]]:
    """Split messages into consecutive chunks that fit within a token budget."""
    chunks: List[List[Message]] = []
    current: List[Message] = []
    current_tokens = 0

    for message in messages:
        # truncated in the prompt anyway
        tokens = count_tokens((message.content or "")[:MAX_MESSAGE_CHARS], model)
        if current_tokens + tokens > max_chunk_tokens and current:
            chunks.append(current)
            current = []
            current_tokens = 0
        current.append(message)
        current_tokens += tokens

    if current:
        chunks.append(current)
    return chunks


class LiteLLMSummarizer:
    """Summarizer backed by any litellm-supported model.

    Args:
        model: Model string in ``provider:model`` form
        timeout: Overall deadline in seconds for one ``summarize`` call
        max_retries: Extra attempts after the first failure
        retry_delay: Base delay; attempt ``n`` waits ``retry_delay * n``
        max_context_tokens: Override the context window reported by litellm
    """

    def __init__(
        self,
        model: str = "openai:gpt-4o-mini",
        timeout: float = 120.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        max_context_tokens: Optional[int] = None,
    ):
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_context_tokens = max_context_tokens

    async def _complete(self, system_prompt: str, user_content: str) -> str:
        from litellm import acompletion

        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_content},
        ]
        response = await acompletion(**get_model_params(self.model, messages=messages))
        content = response.choices[0].message.content
        if not content or not content.strip():
            raise SummarizationError("Model returned an empty summary")
        return content.strip()

    async def _complete_with_retries(self, system_prompt: str, user_content: str) -> str:
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._complete(system_prompt, user_content)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt >= attempts:
                    raise SummarizationError(f"Summarization failed after {attempt} attempts: {e}", attempt) from e
                logger.warning("Summarization attempt %d/%d failed: %s", attempt, attempts, e)
                await asyncio.sleep(self.retry_delay * attempt)
        raise SummarizationError("Summarization failed", attempts)

    async def _summarize(self, messages: Sequence[Message], context: Sequence[str]) -> str:
        context_limit = get_context_limit(self.model, fallback=self.max_context_tokens)
        usable_tokens = int(context_limit * (1 - CONTEXT_RESERVE_RATIO))
        chunks = chunk_messages(messages, usable_tokens, self.model)

        if len(chunks) == 1:
            return await self._complete_with_retries(SUMMARY_SYSTEM_PROMPT, build_summary_prompt(chunks[0], context))

        logger.info("Summarizing %d chunks (context limit: %d, usable: %d)", len(chunks), context_limit, usable_tokens)
        summaries = []
        offset = 0
        for chunk in chunks:
            prompt = build_summary_prompt(chunk, context, offset=offset)
            summaries.append(await self._complete_with_retries(SUMMARY_SYSTEM_PROMPT, prompt))
            offset += len(chunk)

        numbered = "\n\n".join(f"--- Chunk {i + 1} ---\n{s}" for i, s in enumerate(summaries))
        return await self._complete_with_retries(COMBINE_SYSTEM_PROMPT, numbered)

    async def summarize(self, messages: Sequence[Message], context: Sequence[str] = ()) -> SummaryResult:
        """Summarize messages.

        Raises:
            SummarizationError: On empty input, model failure after retries or timeout
        """
        if not messages:
            raise SummarizationError("No messages to summarize")

        try:
            summary = await asyncio.wait_for(self._summarize(messages, context), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise SummarizationError(f"Summarization timed out after {self.timeout}s") from e

        return SummaryResult(
            summary=summary,
            tokens_before=count_message_tokens(messages, self.model),
            tokens_after=count_tokens(summary, self.model),
        )
