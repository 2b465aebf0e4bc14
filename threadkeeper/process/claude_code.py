"""Claude Code CLI subprocess adapter.

Runs one persistent ``claude --print`` stream-json subprocess per workspace
session and translates its stdout into engine events: streamed text, tool
use steps, edited files and the final result. The CLI keeps conversation
state in memory between turns; after a cancel the subprocess is restarted
with ``--resume`` so the next turn continues the same CLI session.
"""

import asyncio
import json
import logging
import os
import shutil
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from threadkeeper.events import (
    CancelledEvent,
    ChunkEvent,
    FileEditedEvent,
    FinalizeEvent,
    ProcessErrorEvent,
    ProcessEvent,
    ReasoningStepEvent,
)
from threadkeeper.exceptions import ExternalProcessError
from threadkeeper.models import ReasoningStep

from .base import EventChannel

logger = logging.getLogger(__name__)

# Env vars that must be unset to avoid "nested session" detection
_CLAUDE_ENV_VARS = {"CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT", "ANTHROPIC_API_KEY"}

EDIT_TOOLS = {"Edit", "MultiEdit", "Write", "NotebookEdit"}
DEFAULT_CONTEXT_LIMIT = 200_000


@dataclass
class _CliSession:
    session_id: str
    workspace_path: str
    cli_session_id: Optional[str] = None
    process: Optional[asyncio.subprocess.Process] = None
    turn_task: Optional[asyncio.Task] = None
    stderr_task: Optional[asyncio.Task] = None
    stderr_lines: List[str] = field(default_factory=list)

    def stderr_tail(self) -> str:
        return "\n".join(self.stderr_lines[-20:])  # last 20 lines


def describe_tool_use(name: str, tool_input: Dict[str, Any]) -> str:
    """One-line description of a tool call for the reasoning panel."""
    if tool_input.get("file_path"):
        return f"{name}: {tool_input['file_path']}"
    if tool_input.get("command"):
        return f"{name}: {tool_input['command']}"
    if tool_input.get("pattern"):
        return f"{name}: {tool_input['pattern']}"
    return name


def context_usage(usage: Dict[str, Any], context_limit: int) -> Optional[float]:
    """Fraction of the context window used by the last turn's prompt."""
    if not usage or context_limit <= 0:
        return None
    tokens = (
        (usage.get("input_tokens") or 0)
        + (usage.get("cache_read_input_tokens") or 0)
        + (usage.get("cache_creation_input_tokens") or 0)
    )
    return min(1.0, tokens / context_limit)


class ClaudeCodeProcess:
    """AI process backed by the Claude Code CLI."""

    def __init__(
        self,
        command: str = "claude",
        model: str = "sonnet",
        extra_args: Sequence[str] = (),
        context_limit: int = DEFAULT_CONTEXT_LIMIT,
    ):
        self.command = command
        self.model = model
        self.extra_args = list(extra_args)
        self.context_limit = context_limit
        self._channel = EventChannel()
        self._sessions: Dict[str, _CliSession] = {}
        self._background: Set[asyncio.Task] = set()

    def events(self) -> AsyncIterator[ProcessEvent]:
        return self._channel.__aiter__()

    def _spawn_background(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Subprocess lifecycle
    # ------------------------------------------------------------------

    def _build_command(self, session: _CliSession) -> List[str]:
        cmd = [
            self.command, "--print",
            "--input-format", "stream-json",
            "--output-format", "stream-json",
            "--verbose",
            "--model", self.model,
            *self.extra_args,
        ]
        if session.cli_session_id:
            cmd.extend(["--resume", session.cli_session_id])
        else:
            cmd.extend(["--session-id", str(uuid.uuid4())])
        return cmd

    async def _drain_stderr(self, session: _CliSession) -> None:
        """Background task: read stderr lines so the pipe never fills up."""
        process = session.process
        try:
            while process is not None:
                line = await process.stderr.readline()
                if not line:
                    break
                session.stderr_lines.append(line.decode().rstrip())
        except (asyncio.CancelledError, OSError):
            pass

    async def _spawn(self, session: _CliSession) -> None:
        env = {k: v for k, v in os.environ.items() if k not in _CLAUDE_ENV_VARS}
        try:
            session.process = await asyncio.create_subprocess_exec(
                *self._build_command(session),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=session.workspace_path,
                env=env,
            )
        except OSError as e:
            raise ExternalProcessError(f"Failed to start {self.command}: {e}", session.session_id) from e

        # Start draining stderr in background to prevent pipe buffer deadlock
        session.stderr_task = asyncio.create_task(self._drain_stderr(session))

    async def _terminate(self, session: _CliSession) -> None:
        if session.stderr_task:
            session.stderr_task.cancel()
            session.stderr_task = None

        process, session.process = session.process, None
        if process is not None:
            try:
                process.terminate()
                await process.wait()
            except ProcessLookupError:
                pass

    async def start_session(self, workspace_path: str) -> str:
        """Launch a claude subprocess for a workspace.

        Raises:
            ExternalProcessError: If the CLI is not installed or fails to start
        """
        if not shutil.which(self.command):
            raise ExternalProcessError(
                f"Claude Code CLI '{self.command}' not found. Install it with: npm install -g @anthropic-ai/claude-code"
            )

        session = _CliSession(session_id=str(uuid.uuid4()), workspace_path=workspace_path)
        await self._spawn(session)
        self._sessions[session.session_id] = session
        logger.info("Started Claude Code session %s in %s", session.session_id, workspace_path)
        return session.session_id

    async def close_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        if session.turn_task and not session.turn_task.done():
            session.turn_task.cancel()
            await asyncio.gather(session.turn_task, return_exceptions=True)
        await self._terminate(session)
        logger.info("Closed Claude Code session %s", session_id)

    async def aclose(self) -> None:
        """Close every session and end the event channel."""
        for session_id in list(self._sessions):
            await self.close_session(session_id)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._channel.close()

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def send(self, session_id: str, text: str, attachments: Sequence[str] = ()) -> None:
        """Start a turn; replies arrive on the event channel."""
        session = self._sessions.get(session_id)
        if session is None:
            self._channel.publish(ProcessErrorEvent(session_id=session_id, error="Unknown session"))
            return
        if session.turn_task and not session.turn_task.done():
            self._channel.publish(
                ProcessErrorEvent(session_id=session_id, error="A reply is already in progress", error_type="busy")
            )
            return
        session.turn_task = self._spawn_background(self._run_turn(session, text, list(attachments)))

    def cancel(self, session_id: str) -> None:
        """Stop the in-flight turn. ``CancelledEvent`` follows once it has stopped."""
        session = self._sessions.get(session_id)
        if session is None:
            return
        self._spawn_background(self._cancel_turn(session))

    async def _cancel_turn(self, session: _CliSession) -> None:
        task = session.turn_task
        if task and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            # The CLI is mid-turn; restart it on the next send with --resume
            await self._terminate(session)
        self._channel.publish(CancelledEvent(session_id=session.session_id))

    @staticmethod
    def _compose_prompt(text: str, attachments: List[str]) -> str:
        if not attachments:
            return text
        listing = "\n".join(f"- @{path}" for path in attachments)
        return f"{text}\n\nAttached files:\n{listing}"

    async def _run_turn(self, session: _CliSession, text: str, attachments: List[str]) -> None:
        try:
            if session.process is None or session.process.returncode is not None:
                await self._spawn(session)

            msg = {
                "type": "user",
                "message": {"role": "user", "content": self._compose_prompt(text, attachments)},
                "session_id": session.cli_session_id or "default",
            }
            session.process.stdin.write((json.dumps(msg) + "\n").encode())
            await session.process.stdin.drain()

            while True:
                line = await session.process.stdout.readline()
                if not line:
                    raise ExternalProcessError(
                        f"Claude Code process ended unexpectedly. stderr: {session.stderr_tail()}",
                        session.session_id,
                    )

                raw = line.decode().strip()
                if not raw:
                    continue
                try:
                    event = json.loads(raw)
                except json.JSONDecodeError:
                    continue

                if self._handle_stream_event(session, event):
                    return
        except asyncio.CancelledError:
            raise
        except (ExternalProcessError, OSError, RuntimeError) as e:
            logger.warning("Claude Code turn failed in session %s: %s", session.session_id, e)
            self._channel.publish(
                ProcessErrorEvent(session_id=session.session_id, error=str(e), error_type=type(e).__name__)
            )

    def _handle_stream_event(self, session: _CliSession, event: Dict[str, Any]) -> bool:
        """Translate one stdout record. Returns True once the turn is finished."""
        event_type = event.get("type", "")
        session_id = session.session_id

        # Init event: capture the CLI's own session id for --resume
        if event_type == "system" and event.get("subtype") == "init":
            session.cli_session_id = event.get("session_id") or session.cli_session_id
            return False

        if event_type == "content_block_delta":
            delta = event.get("delta", {})
            if delta.get("type") == "text_delta" and delta.get("text"):
                self._channel.publish(ChunkEvent(session_id=session_id, text=delta["text"]))
            return False

        if event_type == "assistant":
            for block in event.get("message", {}).get("content", []):
                self._publish_content_block(session_id, block)
            return False

        if event_type == "result":
            if event.get("is_error"):
                self._channel.publish(
                    ProcessErrorEvent(
                        session_id=session_id,
                        error=event.get("result") or event.get("subtype") or "Unknown error",
                        error_type=event.get("subtype"),
                    )
                )
                return True

            usage = event.get("usage") or {}
            metadata = {
                "cost_usd": event.get("total_cost_usd"),
                "duration_ms": event.get("duration_ms"),
                "num_turns": event.get("num_turns"),
                "usage": usage,
                "cli_session_id": event.get("session_id", session.cli_session_id),
            }
            ratio = context_usage(usage, self.context_limit)
            if ratio is not None:
                metadata["context_usage"] = ratio
            self._channel.publish(
                FinalizeEvent(
                    session_id=session_id,
                    content=event.get("result") or None,
                    metadata={k: v for k, v in metadata.items() if v is not None},
                )
            )
            return True

        # Skip: rate_limit_event, user (tool results), etc.
        return False

    def _publish_content_block(self, session_id: str, block: Dict[str, Any]) -> None:
        block_type = block.get("type")
        if block_type == "text" and block.get("text"):
            self._channel.publish(ChunkEvent(session_id=session_id, text=block["text"]))
        elif block_type == "thinking" and block.get("thinking"):
            step = ReasoningStep(kind="thinking", message=block["thinking"].strip()[:200])
            self._channel.publish(ReasoningStepEvent(session_id=session_id, step=step))
        elif block_type == "tool_use":
            name = block.get("name", "tool")
            tool_input = block.get("input") or {}
            step = ReasoningStep(
                kind="tool-use",
                message=describe_tool_use(name, tool_input),
                tool=name,
                file_path=tool_input.get("file_path"),
                command=tool_input.get("command"),
            )
            self._channel.publish(ReasoningStepEvent(session_id=session_id, step=step))
            if name in EDIT_TOOLS and tool_input.get("file_path"):
                self._channel.publish(FileEditedEvent(session_id=session_id, path=tool_input["file_path"]))
