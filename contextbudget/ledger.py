"""Token accounting for a conversation session.

Provider-reported usage is authoritative. When a provider omits usage
metadata, counts are estimated with a simple heuristic: ~4 characters per
token.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any

from .config import DEFAULT_CHARS_PER_TOKEN
from .types import Message, Summary, TextBlock, TokenUsage, ToolCallBlock, ToolResultBlock

logger = logging.getLogger(__name__)


def estimate_tokens(text: str, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Estimate token count for a string using the chars/token heuristic."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def estimate_block_tokens(block: Any, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Estimate token count for a single content block."""
    if isinstance(block, TextBlock):
        return estimate_tokens(block.text, chars_per_token)
    if isinstance(block, ToolCallBlock):
        return estimate_tokens(block.name + json.dumps(block.input, default=str), chars_per_token)
    if isinstance(block, ToolResultBlock):
        return estimate_tokens(block.content, chars_per_token)
    if isinstance(block, str):
        return estimate_tokens(block, chars_per_token)
    try:
        return estimate_tokens(json.dumps(block), chars_per_token)
    except (TypeError, ValueError):
        return 0


def estimate_content_tokens(content: Any, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Estimate token count for message content (string, block list, or message)."""
    if content is None:
        return 0
    if isinstance(content, (Message, Summary)):
        return content.token_count
    if isinstance(content, str):
        return estimate_tokens(content, chars_per_token)
    if isinstance(content, (list, tuple)):
        return sum(estimate_block_tokens(block, chars_per_token) for block in content)
    return estimate_block_tokens(content, chars_per_token)


def estimate_message_tokens(message: Message, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Re-estimate the size of a message from its content blocks."""
    return estimate_content_tokens(list(message.content), chars_per_token)


def log_footprint(entries: list[Message | Summary]) -> int:
    """Total tokens of an active log, using each entry's recorded token count."""
    return sum(entry.token_count for entry in entries)


class TokenLedger:
    """Running token totals for one session.

    Pure bookkeeping: the ledger never decides when to act and never touches a
    Session. Callers copy ``snapshot()`` back into the session they persist.

    ``reclaimed_tokens`` records how many tokens compaction freed from the
    active log. The cumulative provider counters themselves are never reduced;
    the ledger's view of how full the context is subtracts the reclaimed
    amount instead.
    """

    def __init__(
        self,
        usage: TokenUsage | None = None,
        reclaimed_tokens: int = 0,
        chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
    ):
        self._usage = usage.model_copy() if usage else TokenUsage()
        self._reclaimed = max(0, reclaimed_tokens)
        self.chars_per_token = chars_per_token

    @property
    def usage(self) -> TokenUsage:
        return self._usage

    @property
    def total(self) -> int:
        return self._usage.total

    @property
    def reclaimed_tokens(self) -> int:
        return self._reclaimed

    @property
    def context_tokens(self) -> int:
        """Tokens currently occupying the context window."""
        return max(0, self._usage.total - self._reclaimed)

    def record_usage(
        self,
        input_tokens: int,
        output_tokens: int,
        *,
        reasoning_tokens: int = 0,
        cache_read_tokens: int = 0,
        cache_write_tokens: int = 0,
    ) -> TokenUsage:
        """Add provider-reported usage for one completed turn."""
        self._usage = TokenUsage(
            input=self._usage.input + max(0, input_tokens),
            output=self._usage.output + max(0, output_tokens),
            reasoning=self._usage.reasoning + max(0, reasoning_tokens),
            cache_read=self._usage.cache_read + max(0, cache_read_tokens),
            cache_write=self._usage.cache_write + max(0, cache_write_tokens),
        )
        return self.snapshot()

    def estimate(self, content: Any) -> int:
        """Fallback count for content when the provider returned no usage."""
        return estimate_content_tokens(content, self.chars_per_token)

    def record_estimated(self, input_content: Any, output_content: Any) -> TokenUsage:
        """Record usage estimated from raw content."""
        input_tokens = self.estimate(input_content)
        output_tokens = self.estimate(output_content)
        logger.debug(
            "Provider returned no usage, estimated %d input / %d output tokens",
            input_tokens,
            output_tokens,
        )
        return self.record_usage(input_tokens, output_tokens)

    def record_reclaimed(self, tokens: int) -> None:
        """Record tokens freed from the active log by compaction."""
        self._reclaimed = min(self._reclaimed + max(0, tokens), self._usage.total)

    def current_usage_percent(self, context_window: int) -> float:
        """Fraction of the context window in use, clamped to [0, 1]."""
        used = self.context_tokens
        if context_window <= 0:
            return 1.0 if used > 0 else 0.0
        return min(1.0, max(0.0, used / context_window))

    def snapshot(self) -> TokenUsage:
        return self._usage.model_copy()

