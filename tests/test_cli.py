"""Tests for the command line interface."""

import json
from io import StringIO
from unittest.mock import patch

import pytest
from rich.console import Console
from typer.testing import CliRunner

from threadkeeper import __version__
from threadkeeper.cli import app
from threadkeeper.cli.chat import StreamPrinter
from threadkeeper.events import MessageAppendedEvent, MessagePatchedEvent
from threadkeeper.models import Message


@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture
def cli_args(tmp_path, history_dir):
    """Options that keep the CLI away from the user's real config and history."""
    return ["--history-dir", str(history_dir), "--config", str(tmp_path / "missing.yaml")]


@pytest.fixture
def seeded(storage, messages_factory):
    messages = messages_factory(25, important=[8, 15])
    messages[0].metadata["workspace_path"] = "/work/project"
    for message in messages:
        storage.save_message_sync(message)
    return messages


def test_cli_help(cli_runner):
    """Test that the CLI shows help."""
    result = cli_runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "history" in result.stdout
    assert "compact" in result.stdout


def test_version(cli_runner):
    result = cli_runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


class TestHistoryCommands:
    """Test history CLI subcommands."""

    def test_list_empty(self, cli_runner, cli_args):
        result = cli_runner.invoke(app, ["history", "list", *cli_args])
        assert result.exit_code == 0
        assert "No conversations found" in result.stdout

    def test_list_conversations(self, cli_runner, cli_args, seeded):
        result = cli_runner.invoke(app, ["history", "list", *cli_args])
        assert result.exit_code == 0
        assert "conv-1" in result.stdout
        assert "25" in result.stdout

    def test_list_filters_by_workspace(self, cli_runner, cli_args, seeded):
        result = cli_runner.invoke(app, ["history", "list", "--workspace", "/elsewhere", *cli_args])
        assert "No conversations found" in result.stdout

    def test_show_plain(self, cli_runner, cli_args, seeded):
        result = cli_runner.invoke(app, ["history", "show", "conv-1", *cli_args])
        assert result.exit_code == 0
        assert "Message 25:" in result.stdout

    def test_show_json(self, cli_runner, cli_args, seeded):
        result = cli_runner.invoke(app, ["history", "show", "conv-1", "--format", "json", *cli_args])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [m["id"] for m in data][:3] == ["m1", "m2", "m3"]

    def test_show_markdown(self, cli_runner, cli_args, seeded):
        result = cli_runner.invoke(app, ["history", "show", "conv-1", "-f", "markdown", *cli_args])
        assert result.exit_code == 0
        assert "# Conversation: conv-1" in result.stdout

    def test_show_missing(self, cli_runner, cli_args):
        result = cli_runner.invoke(app, ["history", "show", "nope", *cli_args])
        assert result.exit_code == 1
        assert "not found" in result.stdout

    def test_rebuild_index(self, cli_runner, cli_args, seeded, storage):
        (storage.history_dir / "index.json").unlink()
        result = cli_runner.invoke(app, ["history", "rebuild-index", *cli_args])
        assert result.exit_code == 0
        assert "Indexed 1 conversations" in result.stdout


class TestConfigCommands:
    def test_show_defaults(self, cli_runner, tmp_path):
        result = cli_runner.invoke(app, ["config", "show", "--config", str(tmp_path / "missing.yaml")])
        assert result.exit_code == 0
        assert "showing defaults" in result.stdout
        assert "keep_recent: 10" in result.stdout

    def test_show_invalid_config(self, cli_runner, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("compaction:\n  keep_recent: -1\n")
        result = cli_runner.invoke(app, ["config", "show", "--config", str(path)])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.stdout


@pytest.mark.usefixtures("simple_token_counts")
class TestCompactCommand:
    def test_too_few_messages(self, cli_runner, cli_args, storage, messages_factory):
        for message in messages_factory(5):
            storage.save_message_sync(message)

        result = cli_runner.invoke(app, ["compact", "conv-1", *cli_args])

        assert result.exit_code == 0
        assert "Only 5 messages" in result.stdout

    def test_missing_conversation(self, cli_runner, cli_args):
        result = cli_runner.invoke(app, ["compact", "nope", "--yes", *cli_args])
        assert result.exit_code == 1

    def test_compact_with_confirmation_skipped(self, cli_runner, cli_args, seeded, storage, summarizer_factory):
        with patch("threadkeeper.cli.LiteLLMSummarizer", return_value=summarizer_factory()):
            result = cli_runner.invoke(app, ["compact", "conv-1", "--yes", *cli_args])

        assert result.exit_code == 0, result.stdout
        assert "To summarize" in result.stdout
        assert "25 → 16" in result.stdout
        assert len(storage._read("conv-1")) == 16

    def test_declined_confirmation_changes_nothing(self, cli_runner, cli_args, seeded, storage, summarizer_factory):
        summarizer = summarizer_factory()
        with patch("threadkeeper.cli.LiteLLMSummarizer", return_value=summarizer):
            result = cli_runner.invoke(app, ["compact", "conv-1", *cli_args], input="n\n")

        assert result.exit_code == 1
        assert summarizer.calls == []
        assert len(storage._read("conv-1")) == 25

    def test_summarizer_failure_exits_nonzero(self, cli_runner, cli_args, seeded, storage, summarizer_factory):
        from threadkeeper.exceptions import SummarizationError

        failing = summarizer_factory(error=SummarizationError("model unavailable"))
        with patch("threadkeeper.cli.LiteLLMSummarizer", return_value=failing):
            result = cli_runner.invoke(app, ["compact", "conv-1", "-y", "--keep-recent", "5", *cli_args])

        assert result.exit_code == 1
        assert "Compaction failed: model unavailable" in result.stdout
        assert len(storage._read("conv-1")) == 25


class TestStreamPrinter:
    @pytest.fixture
    def output(self):
        return StringIO()

    @pytest.fixture
    def printer(self, output):
        return StreamPrinter(Console(file=output, force_terminal=False, width=120))

    def _assistant(self, content, **metadata):
        return Message(id="a1", conversation_id="conv-1", role="assistant", content=content, metadata=metadata)

    def test_prints_only_new_text(self, printer, output):
        printer(MessageAppendedEvent(conversation_id="conv-1", message=self._assistant("Hel", status="streaming")))
        printer(MessagePatchedEvent(conversation_id="conv-1", message=self._assistant("Hello", status="streaming")))
        printer(MessagePatchedEvent(conversation_id="conv-1", message=self._assistant("Hello", status="complete")))
        printer(MessagePatchedEvent(conversation_id="conv-1", message=self._assistant("Hello", status="complete")))

        assert output.getvalue() == "Hello\n"

    def test_ignores_user_messages(self, printer, output):
        user = Message(id="u1", conversation_id="conv-1", role="user", content="hi")
        printer(MessageAppendedEvent(conversation_id="conv-1", message=user))
        assert output.getvalue() == ""

    def test_errors_printed_once(self, printer, output):
        error = self._assistant("Error: [boom]", error=True)
        printer(MessageAppendedEvent(conversation_id="conv-1", message=error))
        printer(MessagePatchedEvent(conversation_id="conv-1", message=error))
        assert output.getvalue() == "Error: [boom]\n"
