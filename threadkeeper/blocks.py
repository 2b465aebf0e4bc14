"""Derive renderable content blocks from raw markdown message text.

Blocks are opaque to the engine; persistence derives them on save and the
session patches them back onto the stored message.
"""

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

CODE_FENCE = re.compile(r"```([\w+-]+)?[^\n]*\n(.*?)```", re.DOTALL)
COMMAND_LANGUAGES = {"bash", "sh", "shell", "zsh", "console"}
DIAGRAM_LANGUAGES = {"mermaid", "graphviz", "dot"}
DIFF_LINE_RATIO = 0.3


def is_diff_content(content: str) -> bool:
    """True when more than 30% of lines are +/- diff markers."""
    lines = content.split("\n")
    diff_lines = [line for line in lines if line.startswith(("+", "-"))]
    return len(diff_lines) > len(lines) * DIFF_LINE_RATIO


def _make_block(
    block_type: str, content: str, message_id: str, order: int, metadata: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "message_id": message_id,
        "type": block_type,
        "content": content,
        "metadata": metadata or {},
        "order": order,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }


def _fence_block(language: str, content: str, message_id: str, order: int) -> Dict[str, Any]:
    lang = language.lower()
    if lang in COMMAND_LANGUAGES:
        return _make_block("command", content, message_id, order, {"language": "bash", "is_executable": True})
    if lang == "diff" or is_diff_content(content):
        lines = content.split("\n")
        additions = sum(1 for line in lines if line.startswith("+") and not line.startswith("+++"))
        deletions = sum(1 for line in lines if line.startswith("-") and not line.startswith("---"))
        return _make_block("diff", content, message_id, order, {"additions": additions, "deletions": deletions})
    if lang in DIAGRAM_LANGUAGES:
        return _make_block("diagram", content, message_id, order, {"diagram_type": lang})
    return _make_block("code", content, message_id, order, {"language": language, "is_executable": False})


def parse_blocks(content: str, message_id: str) -> List[Dict[str, Any]]:
    """Split markdown into ordered text/code/command/diff/diagram blocks.

    Never raises: on any parsing problem the whole content becomes one text block.

    Args:
        content: Raw markdown
        message_id: Parent message id

    Returns:
        Blocks in document order
    """
    if not content or not content.strip():
        return []

    blocks: List[Dict[str, Any]] = []
    try:
        last_index = 0
        for match in CODE_FENCE.finditer(content):
            text = content[last_index : match.start()].strip()
            if text:
                blocks.append(_make_block("text", text, message_id, len(blocks)))

            language = match.group(1) or "plaintext"
            blocks.append(_fence_block(language, match.group(2).strip(), message_id, len(blocks)))
            last_index = match.end()

        tail = content[last_index:].strip()
        if tail:
            blocks.append(_make_block("text", tail, message_id, len(blocks)))
    except Exception as e:
        logger.warning("Block parsing failed for %s: %s", message_id, e)
        blocks = [_make_block("text", content, message_id, 0)]

    return blocks
