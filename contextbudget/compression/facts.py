"""Deterministic fact extraction from conversation messages.

Facts are pulled from tool invocations and decision phrases without calling
the model, so they survive even when narrative summarization fails.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

from ..types import ExtractedFacts, Message, Role, ToolCallBlock, ToolUsageSummary

FILE_MODIFYING_TOOLS = frozenset(
    {"Write", "Edit", "MultiEdit", "NotebookEdit", "write_file", "edit_file", "apply_patch"}
)
FILE_READING_TOOLS = frozenset({"Read", "read_file", "View", "NotebookRead"})
PATH_KEYS = ("file_path", "path", "notebook_path")

DECISION_PHRASES = (
    "decided to",
    "chose to",
    "will use",
    "going with",
    "settled on",
    "we'll use",
)

MAX_NOTABLE_USES = 3

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")
FILE_PATH_PATTERN = re.compile(r"(?:^|[\s`'\"(])((?:\.{0,2}/)?(?:[\w.-]+/)+[\w.-]+\.\w+)")


def _input_path(block: ToolCallBlock) -> str | None:
    for key in PATH_KEYS:
        value = block.input.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def describe_tool_use(block: ToolCallBlock) -> str:
    """One-line description of a tool call for notable-use lists."""
    path = _input_path(block)
    if block.name in FILE_MODIFYING_TOOLS and path:
        return f"Modified {path}"
    if block.name in FILE_READING_TOOLS and path:
        return f"Read {path}"
    command: Any = block.input.get("command")
    if isinstance(command, str) and command:
        return f"Ran: {command[:50]}"
    return f"Used {block.name}"


def extract_decisions(text: str) -> list[str]:
    """Return the sentences of ``text`` that contain a decision phrase."""
    decisions: list[str] = []
    for sentence in _SENTENCE_SPLIT.split(text):
        stripped = sentence.strip()
        lowered = stripped.lower()
        if stripped and any(phrase in lowered for phrase in DECISION_PHRASES):
            decisions.append(stripped)
    return decisions


def mentions_file_path(text: str) -> bool:
    return FILE_PATH_PATTERN.search(text) is not None


def extract_message_facts(message: Message) -> ExtractedFacts:
    """Extract facts from a single message."""
    files_modified: list[str] = []
    files_read: list[str] = []
    tools: dict[str, ToolUsageSummary] = {}

    for block in message.tool_calls():
        path = _input_path(block)
        if path and block.name in FILE_MODIFYING_TOOLS and path not in files_modified:
            files_modified.append(path)
        elif path and block.name in FILE_READING_TOOLS and path not in files_read:
            files_read.append(path)

        usage = tools.get(block.name, ToolUsageSummary(tool=block.name))
        notable = list(usage.notable_uses)
        if len(notable) < MAX_NOTABLE_USES:
            notable.append(describe_tool_use(block))
        tools[block.name] = ToolUsageSummary(
            tool=block.name, count=usage.count + 1, notable_uses=notable
        )

    key_decisions: list[str] = []
    if message.role in (Role.USER, Role.ASSISTANT):
        for decision in extract_decisions(message.text_content()):
            if decision not in key_decisions:
                key_decisions.append(decision)

    return ExtractedFacts(
        files_modified=files_modified,
        files_read=files_read,
        key_decisions=key_decisions,
        tools_used=list(tools.values()),
    )


def extract_facts(messages: Iterable[Message]) -> ExtractedFacts:
    """Extract and merge the facts of several messages."""
    facts = ExtractedFacts()
    for message in messages:
        facts = facts.merge(extract_message_facts(message))
    return facts


def has_significant_facts(message: Message) -> bool:
    """True when the message modified files or recorded a decision.

    Such messages are historically significant and are never pruned; they
    can only leave the active log through compaction.
    """
    facts = extract_message_facts(message)
    return bool(facts.files_modified or facts.key_decisions)
