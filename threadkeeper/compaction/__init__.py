"""Timeline compaction under a token budget."""

from .engine import CompactionEngine, build_summary_content
from .selection import Partition, classify_importance, extract_context, is_flagged_important, partition
from .summarizer import LiteLLMSummarizer, Summarizer, SummaryResult
from .tokens import count_message_tokens, count_tokens

__all__ = [
    "CompactionEngine",
    "LiteLLMSummarizer",
    "Partition",
    "Summarizer",
    "SummaryResult",
    "build_summary_content",
    "classify_importance",
    "count_message_tokens",
    "count_tokens",
    "extract_context",
    "is_flagged_important",
    "partition",
]
