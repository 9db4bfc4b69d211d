"""Narrative generation for compaction summaries.

The engine only depends on the ``Summarizer`` protocol
(``async summarize(messages) -> str``). Whether the narrative comes from a
model call or a deterministic template is the caller's choice.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol, runtime_checkable

from ..errors import SummarizationError
from ..ledger import estimate_tokens
from ..types import Message, Summary

logger = logging.getLogger(__name__)

# -- Constants ----------------------------------------------------------------

COMPACTION_PROMPT = (
    "Write a prompt for continuing the conversation below in a new context.\n"
    "\n"
    "The continuation will NOT see the conversation itself, so include "
    "everything needed to keep working:\n"
    "- What has been accomplished so far\n"
    "- What is currently being worked on\n"
    "- Which files were modified and the key changes made\n"
    "- What is planned next\n"
    "- Decisions made and constraints that still apply\n"
    "\n"
    "Be technical and specific. Use short bullet points grouped by topic.\n"
    "\n"
    "Conversation:\n"
    "{messages_to_fold}\n"
    "\n"
    "Continuation prompt:"
)

SHORTEN_PREFIX = "The following is a summary that needs to be shortened:\n\n"
SUMMARY_HEADER = "[Earlier conversation - {count} messages summarized]"
MAX_PROMPT_CHARS_PER_MESSAGE = 500


@runtime_checkable
class Summarizer(Protocol):
    """Produces a narrative for a span of messages."""

    async def summarize(self, messages: list[Message]) -> str: ...


# -- Helpers ------------------------------------------------------------------


def format_messages_for_prompt(messages: list[Message]) -> str:
    """Format messages as text for inclusion in the compaction prompt."""
    parts = []
    for position, message in enumerate(messages, start=1):
        pieces = []
        text = message.text_content()
        if text:
            pieces.append(text)
        for call in message.tool_calls():
            pieces.append(f"<{call.name} {json.dumps(call.input, default=str)}>")
        for result in message.tool_results():
            pieces.append(f"<result {result.tool_call_id}> {result.content}")
        body = " ".join(pieces)[:MAX_PROMPT_CHARS_PER_MESSAGE]
        parts.append(f"[{position}] {message.role.value.upper()}: {body}")
    return "\n\n".join(parts)


def format_summary_context(summary: Summary) -> str:
    """Render a summary as the context text sent to the model."""
    lines = [SUMMARY_HEADER.format(count=summary.message_count)]
    if summary.narrative:
        lines += ["", summary.narrative]
    elif summary.degraded:
        lines += ["", "(No narrative available; structured facts follow.)"]

    facts = summary.extracted_facts
    if facts.files_modified:
        lines += ["", f"Files modified: {', '.join(facts.files_modified)}"]
    if facts.files_read:
        lines += ["", f"Files read: {', '.join(facts.files_read)}"]
    if facts.key_decisions:
        lines += ["", "Key decisions:"]
        lines += [f"- {decision}" for decision in facts.key_decisions]
    if facts.tools_used:
        lines += ["", "Tools used:"]
        lines += [f"- {usage.tool}: {usage.count} times" for usage in facts.tools_used]
    return "\n".join(lines)


# -- Implementations ----------------------------------------------------------


class TemplateSummarizer:
    """Extractive summary without a model call.

    Takes the first meaningful sentence of each message and notes tool calls.
    """

    def __init__(self, max_lines: int = 20, max_sentence_chars: int = 150):
        self.max_lines = max_lines
        self.max_sentence_chars = max_sentence_chars

    async def summarize(self, messages: list[Message]) -> str:
        lines = []
        for message in messages:
            first = message.text_content().split(". ")[0].strip()
            if len(first) > 10:
                if len(first) > self.max_sentence_chars:
                    first = first[: self.max_sentence_chars] + "..."
                lines.append(f"- [{message.role.value}] {first}")
            for call in message.tool_calls():
                lines.append(f"- [tool] Called {call.name}")

        if len(lines) > self.max_lines:
            head = self.max_lines // 2
            tail = self.max_lines - head - 1
            lines = lines[:head] + ["- ... (additional turns omitted) ..."] + lines[-tail:]

        return "\n".join(lines) if lines else "No significant content to summarize."


class ModelSummarizer:
    """Summarizes through an LLM provider.

    ``provider`` must expose ``async generate(messages, model, max_tokens=...)``
    returning an object (or dict) with a ``content`` string.
    """

    def __init__(
        self,
        provider: Any,
        model: str,
        max_tokens: int = 1500,
        max_summary_tokens: int = 2000,
    ):
        self.provider = provider
        self.model = model
        self.max_tokens = max_tokens
        self.max_summary_tokens = max_summary_tokens

    async def summarize(self, messages: list[Message]) -> str:
        prompt = COMPACTION_PROMPT.replace(
            "{messages_to_fold}", format_messages_for_prompt(messages)
        )
        narrative = await self._generate(prompt)

        # Re-summarize once if the narrative is too long
        if estimate_tokens(narrative) > self.max_summary_tokens:
            logger.info(
                "Summary of %d messages too long (%d tokens), re-summarizing",
                len(messages),
                estimate_tokens(narrative),
            )
            prompt = COMPACTION_PROMPT.replace("{messages_to_fold}", SHORTEN_PREFIX + narrative)
            narrative = await self._generate(prompt)

        return narrative

    async def _generate(self, prompt: str) -> str:
        try:
            response = await self.provider.generate(
                messages=[{"role": "user", "content": prompt}],
                model=self.model,
                max_tokens=self.max_tokens,
            )
        except Exception as e:
            raise SummarizationError(f"{type(e).__name__}: {e}") from e

        if isinstance(response, dict):
            content = response.get("content")
        else:
            content = getattr(response, "content", None)
        if not isinstance(content, str) or not content.strip():
            raise SummarizationError("Provider returned an empty summary")
        return content.strip()
