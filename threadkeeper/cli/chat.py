"""Console chat over a Claude Code session."""

import asyncio
from pathlib import Path
from typing import Dict, Optional, Set

from rich.console import Console

from threadkeeper.config import EngineConfig
from threadkeeper.events import (
    BaseEvent,
    CompactionCompletedEvent,
    CompactionFailedEvent,
    EventType,
    MessageAppendedEvent,
    MessagePatchedEvent,
    PersistenceFailedEvent,
    ReasoningUpdatedEvent,
)
from threadkeeper.exceptions import ThreadkeeperError
from threadkeeper.history import ConversationStorage
from threadkeeper.process import ClaudeCodeProcess
from threadkeeper.session import ConversationSession

HELP_TEXT = "Commands: /cancel  /compact  /quit"


class StreamPrinter:
    """Prints assistant replies incrementally from timeline notifications."""

    EVENT_TYPES = (
        EventType.MESSAGE_APPENDED,
        EventType.MESSAGE_PATCHED,
        EventType.REASONING_UPDATED,
        EventType.COMPACTION_COMPLETED,
        EventType.COMPACTION_FAILED,
        EventType.PERSISTENCE_FAILED,
    )

    def __init__(self, console: Console):
        self.console = console
        self._printed: Dict[str, int] = {}
        self._finished: Set[str] = set()

    def __call__(self, event: BaseEvent) -> None:
        if isinstance(event, (MessageAppendedEvent, MessagePatchedEvent)):
            self._on_message(event)
        elif isinstance(event, ReasoningUpdatedEvent):
            self.console.print(f"[dim]· step {event.step_count} ({event.duration}s)[/dim]")
        elif isinstance(event, CompactionCompletedEvent):
            self.console.print(
                f"[green]Compacted: {event.message_count_before} → {event.message_count_after} messages, "
                f"{event.saved_percentage}% tokens saved[/green]"
            )
        elif isinstance(event, CompactionFailedEvent):
            self.console.print(f"[red]Compaction failed: {event.error}[/red]")
        elif isinstance(event, PersistenceFailedEvent):
            self.console.print(f"[yellow]Could not save history ({event.operation}): {event.error}[/yellow]")

    def _on_message(self, event) -> None:
        message = event.message
        if message.role != "assistant" or message.is_compaction_summary or message.id in self._finished:
            return

        status = message.metadata.get("status")
        if message.metadata.get("error"):
            self._finished.add(message.id)
            self.console.print(message.content, style="red", markup=False)
            return
        if message.metadata.get("cancelled") and message.id not in self._printed:
            self._finished.add(message.id)
            self.console.print("[yellow]Cancelled[/yellow]")
            return

        printed = self._printed.get(message.id, 0)
        content = message.content
        if status == "complete" and len(content) < printed:
            # final text differs from the streamed text; show it whole
            printed = 0
            self.console.print()
        if len(content) > printed:
            self.console.print(content[printed:], end="", markup=False, highlight=False)
            self._printed[message.id] = len(content)
        if status in ("complete", "cancelled"):
            self._finished.add(message.id)
            self.console.print()


async def run_chat(
    workspace: Path,
    conversation_id: Optional[str],
    config: EngineConfig,
    storage: ConversationStorage,
    console: Console,
) -> None:
    process = ClaudeCodeProcess(
        command=config.process.command,
        model=config.process.model,
        extra_args=config.process.extra_args,
    )
    session = ConversationSession(
        process,
        storage=storage,
        config=config,
        file_sink=lambda event: console.print(f"[dim]edited {event.path}[/dim]"),
    )
    session.bus.subscribe(StreamPrinter(console), StreamPrinter.EVENT_TYPES)

    identity = await session.activate_workspace(str(workspace), conversation_id)
    session.start()
    console.print(f"[cyan]Conversation:[/cyan] {identity.conversation_id} [dim]({len(session.snapshot())} messages)[/dim]")
    console.print(f"[dim]{HELP_TEXT}[/dim]")

    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break

            text = line.strip()
            if not text:
                continue
            if text == "/quit":
                break
            if text == "/cancel":
                if not session.cancel():
                    console.print("[dim]Nothing to cancel[/dim]")
                continue
            if text == "/compact":
                try:
                    result = await session.compact()
                except ThreadkeeperError:
                    continue  # reported by the printer
                if not result.compacted:
                    console.print(f"[dim]Nothing compacted ({result.status.value})[/dim]")
                continue

            try:
                await session.send(text)
            except ThreadkeeperError as e:
                console.print(f"[yellow]{e}[/yellow]")
    finally:
        await session.aclose()
        await process.aclose()
