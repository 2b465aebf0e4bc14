"""Tests for the litellm-backed summarizer."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from threadkeeper.compaction.summarizer import (
    COMBINE_SYSTEM_PROMPT,
    SUMMARY_SYSTEM_PROMPT,
    LiteLLMSummarizer,
    build_summary_prompt,
    chunk_messages,
    format_message,
)
from threadkeeper.exceptions import SummarizationError
from threadkeeper.models import Message


def _response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _msg(index, content="We set up the build.", role="user"):
    return Message(id=f"m{index}", conversation_id="conv-1", role=role, content=content)


@pytest.fixture(autouse=True)
def simple_token_counts(monkeypatch):
    counter = lambda text, model: len(text) // 4  # noqa: E731
    monkeypatch.setattr("threadkeeper.compaction.summarizer.count_tokens", counter)
    monkeypatch.setattr(
        "threadkeeper.compaction.summarizer.count_message_tokens",
        lambda messages, model: sum(counter(m.content, model) for m in messages),
    )
    monkeypatch.setattr("threadkeeper.compaction.summarizer.get_context_limit", lambda model, fallback=None: 128_000)


@pytest.fixture
def acompletion(monkeypatch):
    mock = AsyncMock(return_value=_response("## 1. Conversation Overview\nBuilding a CLI."))
    monkeypatch.setattr("litellm.acompletion", mock)
    return mock


class TestPrompt:
    def test_message_formatting(self):
        text = format_message(_msg(1, "hello", role="assistant"), 7)
        assert text.startswith("---\n**Message 7** (")
        assert text.endswith("Assistant:\nhello")

    def test_long_messages_truncated(self):
        text = format_message(_msg(1, "x" * 3000), 1)
        assert text.endswith("x" * 2000 + "\n...[truncated]")

    def test_prompt_has_sections_and_context(self):
        prompt = build_summary_prompt([_msg(1), _msg(2)], ["File: src/app.py"])

        assert prompt.startswith("**2 messages to summarize:**")
        assert "**Key Context Extracted:**\nFile: src/app.py" in prompt
        for section in (
            "## 1. Conversation Overview",
            "## 2. Key Technical Decisions",
            "## 3. Code Changes & Files",
            "## 4. Important Technical Details",
            "## 5. Current Status",
            "## 6. Unresolved Items",
        ):
            assert section in prompt

    def test_context_items_capped(self):
        context = [f"File: f{i}.py" for i in range(30)]
        prompt = build_summary_prompt([_msg(1)], context)
        assert "File: f19.py" in prompt
        assert "File: f20.py" not in prompt

    def test_no_context_section_when_empty(self):
        assert "Key Context" not in build_summary_prompt([_msg(1)])

    def test_chunking_respects_budget(self):
        messages = [_msg(i, "y" * 400) for i in range(5)]  # 100 tokens each
        chunks = chunk_messages(messages, 250, "openai:gpt-4o-mini")
        assert [len(c) for c in chunks] == [2, 2, 1]

    def test_oversized_message_gets_its_own_chunk(self):
        chunks = chunk_messages([_msg(1, "z" * 8000), _msg(2)], 100, "openai:gpt-4o-mini")
        assert [len(c) for c in chunks] == [1, 1]


class TestLiteLLMSummarizer:
    @pytest.mark.asyncio
    async def test_summarize_single_call(self, acompletion):
        summarizer = LiteLLMSummarizer(model="openai:gpt-4o-mini")

        result = await summarizer.summarize([_msg(1), _msg(2)], ["Code: `main`"])

        assert result.summary == "## 1. Conversation Overview\nBuilding a CLI."
        assert result.tokens_before > 0
        kwargs = acompletion.await_args.kwargs
        assert kwargs["model"] == "openai/gpt-4o-mini"
        assert kwargs["messages"][0] == {"role": "system", "content": SUMMARY_SYSTEM_PROMPT}
        assert "Code: `main`" in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, acompletion):
        acompletion.side_effect = [RuntimeError("rate limited"), RuntimeError("again"), _response("ok")]
        summarizer = LiteLLMSummarizer(max_retries=3, retry_delay=0)

        result = await summarizer.summarize([_msg(1)])

        assert result.summary == "ok"
        assert acompletion.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, acompletion):
        acompletion.side_effect = RuntimeError("service unavailable")
        summarizer = LiteLLMSummarizer(max_retries=2, retry_delay=0)

        with pytest.raises(SummarizationError) as exc:
            await summarizer.summarize([_msg(1)])

        assert exc.value.attempts == 3
        assert "service unavailable" in str(exc.value)
        assert acompletion.await_count == 3

    @pytest.mark.asyncio
    async def test_empty_reply_is_a_failure(self, acompletion):
        acompletion.return_value = _response("   ")
        summarizer = LiteLLMSummarizer(max_retries=0)

        with pytest.raises(SummarizationError, match="empty summary"):
            await summarizer.summarize([_msg(1)])

    @pytest.mark.asyncio
    async def test_timeout(self, monkeypatch):
        async def slow(**kwargs):
            await asyncio.sleep(5)
            return _response("too late")

        monkeypatch.setattr("litellm.acompletion", slow)
        summarizer = LiteLLMSummarizer(timeout=0.01, max_retries=0)

        with pytest.raises(SummarizationError, match="timed out"):
            await summarizer.summarize([_msg(1)])

    @pytest.mark.asyncio
    async def test_empty_input_rejected(self, acompletion):
        with pytest.raises(SummarizationError):
            await LiteLLMSummarizer().summarize([])
        acompletion.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_long_history_is_chunked_then_combined(self, acompletion, monkeypatch):
        monkeypatch.setattr("threadkeeper.compaction.summarizer.get_context_limit", lambda model, fallback=None: 400)
        acompletion.side_effect = [_response("part 1"), _response("part 2"), _response("part 3"), _response("whole")]
        messages = [_msg(i, "w" * 800) for i in range(1, 4)]  # 200 tokens each, 300 usable

        result = await LiteLLMSummarizer(retry_delay=0).summarize(messages)

        assert result.summary == "whole"
        calls = acompletion.await_args_list
        assert len(calls) == 4
        assert "**Message 2**" in calls[1].kwargs["messages"][1]["content"]
        combine = calls[3].kwargs["messages"]
        assert combine[0]["content"] == COMBINE_SYSTEM_PROMPT
        assert "--- Chunk 3 ---\npart 3" in combine[1]["content"]
