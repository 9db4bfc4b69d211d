"""Core data types for conversation context budgeting.

A session's active log is an ordered list of ``Message`` and ``Summary``
entries. Messages are never edited once created; compaction replaces a
contiguous run of messages with a single ``Summary`` and pruning deletes
low-value messages outright (recorded as ``PrunedRecord`` entries).
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Role of a message in the conversation log."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"


# -- Content blocks -----------------------------------------------------------


class TextBlock(BaseModel):
    """Plain text content."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    text: str


class ToolCallBlock(BaseModel):
    """A tool invocation requested by the model."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """The result of a tool invocation, keyed by the originating call id."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    content: str = ""
    is_error: bool = False


ContentBlock = Annotated[
    TextBlock | ToolCallBlock | ToolResultBlock,
    Field(discriminator="kind"),
]


# -- Messages -----------------------------------------------------------------


class Message(BaseModel):
    """One turn unit in the conversation log.

    ``token_count`` is fixed when the message is produced or first measured.
    Importance is not stored here; it is recomputed on demand while pruning.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["message"] = "message"
    id: int
    role: Role
    content: list[ContentBlock] = Field(default_factory=list)
    token_count: int = Field(ge=0)
    created_at: datetime = Field(default_factory=utc_now)

    def text_content(self) -> str:
        """Concatenate the text blocks of this message."""
        return "\n".join(block.text for block in self.content if isinstance(block, TextBlock))

    def tool_calls(self) -> list[ToolCallBlock]:
        return [block for block in self.content if isinstance(block, ToolCallBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        return [block for block in self.content if isinstance(block, ToolResultBlock)]

    @property
    def is_system(self) -> bool:
        return self.role == Role.SYSTEM


# -- Extracted facts ----------------------------------------------------------


def _union(first: list[str], second: list[str]) -> list[str]:
    seen = dict.fromkeys(first)
    for item in second:
        seen.setdefault(item)
    return list(seen)


class ToolUsageSummary(BaseModel):
    """Per-tool usage tally."""

    model_config = ConfigDict(frozen=True)

    tool: str
    count: int = 0
    notable_uses: list[str] = Field(default_factory=list)


class ExtractedFacts(BaseModel):
    """Structured facts that must survive compaction.

    The narrative of a summary may be lossy; these fields are not.
    """

    model_config = ConfigDict(frozen=True)

    files_modified: list[str] = Field(default_factory=list)
    files_read: list[str] = Field(default_factory=list)
    key_decisions: list[str] = Field(default_factory=list)
    tools_used: list[ToolUsageSummary] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.files_modified or self.files_read or self.key_decisions or self.tools_used)

    def tool_counts(self) -> dict[str, int]:
        return {usage.tool: usage.count for usage in self.tools_used}

    def merge(self, other: ExtractedFacts) -> ExtractedFacts:
        """Combine two fact sets. Lists are unioned, tool counts are added."""
        tools: dict[str, ToolUsageSummary] = {usage.tool: usage for usage in self.tools_used}
        for usage in other.tools_used:
            existing = tools.get(usage.tool)
            if existing is None:
                tools[usage.tool] = usage
                continue
            tools[usage.tool] = ToolUsageSummary(
                tool=usage.tool,
                count=existing.count + usage.count,
                notable_uses=_union(existing.notable_uses, usage.notable_uses)[:3],
            )
        return ExtractedFacts(
            files_modified=_union(self.files_modified, other.files_modified),
            files_read=_union(self.files_read, other.files_read),
            key_decisions=_union(self.key_decisions, other.key_decisions),
            tools_used=list(tools.values()),
        )

    def covers(self, other: ExtractedFacts) -> bool:
        """Return True if every fact in ``other`` is present in this fact set."""
        if not set(other.files_modified) <= set(self.files_modified):
            return False
        if not set(other.files_read) <= set(self.files_read):
            return False
        if not set(other.key_decisions) <= set(self.key_decisions):
            return False
        counts = self.tool_counts()
        return all(counts.get(tool, 0) >= count for tool, count in other.tool_counts().items())


# -- Summaries and discard log ------------------------------------------------


class Summary(BaseModel):
    """Replacement node produced by compaction.

    ``covering_range`` is the inclusive ``(first_id, last_id)`` span of message
    ids it replaced. Summaries are immutable; a later compaction adds a new
    summary for a newer range instead of editing an old one.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["summary"] = "summary"
    id: str
    covering_range: tuple[int, int]
    message_count: int
    narrative: str = ""
    extracted_facts: ExtractedFacts = Field(default_factory=ExtractedFacts)
    token_count: int = Field(ge=0)
    generated_at: datetime = Field(default_factory=utc_now)
    degraded: bool = False

    def covers_id(self, message_id: int) -> bool:
        first, last = self.covering_range
        return first <= message_id <= last


class PrunedRecord(BaseModel):
    """Discard log entry for messages deleted by pruning."""

    model_config = ConfigDict(frozen=True)

    message_ids: list[int]
    token_count: int
    importance: float
    reason: str
    facts: ExtractedFacts = Field(default_factory=ExtractedFacts)
    pruned_at: datetime = Field(default_factory=utc_now)


LogEntry = Annotated[Message | Summary, Field(discriminator="kind")]


# -- Token accounting ---------------------------------------------------------


class TokenUsage(BaseModel):
    """Cumulative token counters as reported by the provider."""

    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output + self.reasoning + self.cache_read


class TurnUsage(BaseModel):
    """Usage reported by the model-call executor for one completed turn."""

    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0


class ThresholdState(BaseModel):
    """Edge-trigger state for the threshold policy."""

    warning_issued: bool = False
    last_compaction_at: datetime | None = None
