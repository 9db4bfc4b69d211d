"""Pruning and compaction of a session's active log."""

from .engine import CompactionResult, CompressionEngine
from .facts import extract_facts, extract_message_facts, has_significant_facts
from .scoring import ImportanceScorer, Unit, group_units
from .summarizer import (
    COMPACTION_PROMPT,
    ModelSummarizer,
    Summarizer,
    TemplateSummarizer,
    format_messages_for_prompt,
    format_summary_context,
)

__all__ = [
    "COMPACTION_PROMPT",
    "CompactionResult",
    "CompressionEngine",
    "ImportanceScorer",
    "ModelSummarizer",
    "Summarizer",
    "TemplateSummarizer",
    "Unit",
    "extract_facts",
    "extract_message_facts",
    "format_messages_for_prompt",
    "format_summary_context",
    "group_units",
    "has_significant_facts",
]
