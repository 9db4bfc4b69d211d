"""Session models: the in-memory ``Session`` and its on-disk ``SessionSnapshot``."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from ..compression.engine import CompactionResult
from ..compression.summarizer import format_summary_context
from ..config import DEFAULT_CHARS_PER_TOKEN, DEFAULT_PRESERVE_RECENT_COUNT
from ..ledger import estimate_content_tokens, log_footprint
from ..types import (
    ContentBlock,
    ExtractedFacts,
    LogEntry,
    Message,
    PrunedRecord,
    Role,
    Summary,
    TextBlock,
    ThresholdState,
    TokenUsage,
    utc_now,
)

SNAPSHOT_VERSION = 1
PREVIEW_CHARS = 80


def new_session_id() -> str:
    return uuid4().hex


class SessionMetadata(BaseModel):
    """Descriptive fields of a session."""

    id: str
    title: str = ""
    cwd: str | None = None
    provider: str | None = None
    model: str | None = None
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
    updated_at: datetime = Field(default_factory=utc_now, alias="updatedAt")
    parent_id: str | None = Field(default=None, alias="parentId")
    message_count: int = Field(default=0, alias="messageCount")

    model_config = {"populate_by_name": True}

    @field_validator("created_at", "updated_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class Session(BaseModel):
    """A conversation's context state.

    ``active_log`` is what the next model request is built from. Messages that
    compaction or pruning removed are kept in ``archive`` (when retained) for
    audit, and ``discard_log`` records what pruning deleted and which facts the
    deleted messages carried.
    """

    metadata: SessionMetadata
    active_log: list[LogEntry] = Field(default_factory=list)
    archive: list[Message] = Field(default_factory=list)
    discard_log: list[PrunedRecord] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    reclaimed_tokens: int = 0
    threshold_state: ThresholdState = Field(default_factory=ThresholdState)
    preserve_recent_count: int = DEFAULT_PRESERVE_RECENT_COUNT
    next_message_id: int = 1
    total_message_count: int = 0

    @classmethod
    def create(
        cls,
        *,
        title: str | None = None,
        cwd: str | None = None,
        provider: str | None = None,
        model: str | None = None,
        parent_id: str | None = None,
        preserve_recent_count: int = DEFAULT_PRESERVE_RECENT_COUNT,
    ) -> Session:
        now = utc_now()
        metadata = SessionMetadata(
            id=new_session_id(),
            title=title or f"Session {now:%Y-%m-%d %H:%M}",
            cwd=cwd,
            provider=provider,
            model=model,
            created_at=now,
            updated_at=now,
            parent_id=parent_id,
        )
        return cls(metadata=metadata, preserve_recent_count=preserve_recent_count)

    @property
    def id(self) -> str:
        return self.metadata.id

    @property
    def messages(self) -> list[Message]:
        return [entry for entry in self.active_log if isinstance(entry, Message)]

    @property
    def summaries(self) -> list[Summary]:
        return [entry for entry in self.active_log if isinstance(entry, Summary)]

    # -- Mutation -------------------------------------------------------------

    def add(self, message: Message) -> Message:
        """Append an already-formed message to the active log.

        Raises:
            ValueError: If the message id does not follow the session's ids
        """
        if message.id < self.next_message_id:
            raise ValueError(
                f"Message id {message.id} is not greater than the last id "
                f"({self.next_message_id - 1}) of session {self.id}"
            )
        self.active_log.append(message)
        self.next_message_id = message.id + 1
        self.total_message_count += 1
        self.metadata.message_count = self.total_message_count
        self.metadata.updated_at = utc_now()
        return message

    def append(
        self,
        role: Role,
        content: str | list[ContentBlock],
        token_count: int | None = None,
        chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
    ) -> Message:
        """Build a message with the next id and append it."""
        blocks = [TextBlock(text=content)] if isinstance(content, str) else list(content)
        if token_count is None:
            token_count = estimate_content_tokens(blocks, chars_per_token)
        message = Message(
            id=self.next_message_id,
            role=role,
            content=blocks,
            token_count=token_count,
        )
        return self.add(message)

    def apply_compaction(self, result: CompactionResult, *, retain_archived: bool = True) -> None:
        """Replace the active log with a compaction result's log.

        When the result carries the updated discard log it replaces the
        session's; otherwise the newly pruned records are appended.
        """
        if not result.changed:
            return
        self.active_log = list(result.log)
        if retain_archived:
            self.archive.extend(result.removed_messages)
        if result.discard_log is not None:
            self.discard_log = list(result.discard_log)
        else:
            self.discard_log.extend(result.pruned)
        self.metadata.updated_at = utc_now()

    # -- Queries --------------------------------------------------------------

    def footprint(self) -> int:
        """Token footprint of the active log."""
        return log_footprint(self.active_log)

    def extracted_facts(self) -> ExtractedFacts:
        """Facts of every message no longer in the active log."""
        facts = ExtractedFacts()
        for summary in self.summaries:
            facts = facts.merge(summary.extracted_facts)
        for record in self.discard_log:
            facts = facts.merge(record.facts)
        return facts

    def removed_ids(self) -> set[int]:
        """Ids of messages that were part of the session but left the active log."""
        active = {message.id for message in self.messages}
        return set(range(1, self.next_message_id)) - active

    def pruned_ids(self) -> set[int]:
        return {message_id for record in self.discard_log for message_id in record.message_ids}

    def render(self) -> list[dict[str, Any]]:
        """The ordered message list for the next model request.

        Summaries are rendered as system messages carrying their narrative and
        structured facts.
        """
        rendered: list[dict[str, Any]] = []
        for entry in self.active_log:
            if isinstance(entry, Summary):
                rendered.append({"role": Role.SYSTEM.value, "content": format_summary_context(entry)})
            else:
                rendered.append(
                    {
                        "role": entry.role.value,
                        "content": [block.model_dump(mode="json") for block in entry.content],
                    }
                )
        return rendered

    def preview(self) -> str:
        """First user message, truncated, for session listings."""
        for message in self.archive + self.messages:
            if message.role == Role.USER:
                text = message.text_content()
                if len(text) > PREVIEW_CHARS:
                    return text[:PREVIEW_CHARS] + "..."
                return text
        return ""


# -- On-disk format -----------------------------------------------------------


class TokenUsageRecord(BaseModel):
    """Persisted cumulative usage. ``total`` is written for readers and recomputed on load."""

    input: int = 0
    output: int = 0
    total: int = 0
    reasoning: int = 0
    cache_read: int = Field(default=0, alias="cacheRead")
    cache_write: int = Field(default=0, alias="cacheWrite")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_usage(cls, usage: TokenUsage) -> TokenUsageRecord:
        return cls(
            input=usage.input,
            output=usage.output,
            total=usage.total,
            reasoning=usage.reasoning,
            cache_read=usage.cache_read,
            cache_write=usage.cache_write,
        )

    def to_usage(self) -> TokenUsage:
        return TokenUsage(
            input=self.input,
            output=self.output,
            reasoning=self.reasoning,
            cache_read=self.cache_read,
            cache_write=self.cache_write,
        )


class CompressionMeta(BaseModel):
    """Persisted compression state."""

    summaries: list[Summary] = Field(default_factory=list)
    preserve_recent_count: int = Field(
        default=DEFAULT_PRESERVE_RECENT_COUNT, alias="preserveRecentCount"
    )
    reclaimed_tokens: int = Field(default=0, alias="reclaimedTokens")
    discard_log: list[PrunedRecord] = Field(default_factory=list, alias="discardLog")
    total_message_count: int | None = Field(default=None, alias="totalMessageCount")
    next_message_id: int | None = Field(default=None, alias="nextMessageId")

    model_config = {"populate_by_name": True}


class SessionSnapshot(BaseModel):
    """JSON document written by ``SessionStore``.

    Files written before token accounting or compression existed have no
    ``tokenUsage`` / ``compressionMeta``; they load as zero usage and no
    summaries.
    """

    version: int = SNAPSHOT_VERSION
    metadata: SessionMetadata
    messages: list[Message] = Field(default_factory=list)
    archived_messages: list[Message] = Field(default_factory=list, alias="archivedMessages")
    token_usage: TokenUsageRecord = Field(default_factory=TokenUsageRecord, alias="tokenUsage")
    threshold_state: ThresholdState = Field(default_factory=ThresholdState, alias="thresholdState")
    compression_meta: CompressionMeta = Field(default_factory=CompressionMeta, alias="compressionMeta")

    model_config = {"populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def _legacy_token_usage(cls, data: Any) -> Any:
        # older files kept usage under metadata
        if isinstance(data, dict) and "tokenUsage" not in data and "token_usage" not in data:
            metadata = data.get("metadata")
            if isinstance(metadata, dict) and isinstance(metadata.get("tokenUsage"), dict):
                data = {**data, "tokenUsage": metadata["tokenUsage"]}
        return data

    @classmethod
    def from_session(cls, session: Session) -> SessionSnapshot:
        return cls(
            metadata=session.metadata,
            messages=session.messages,
            archived_messages=session.archive,
            token_usage=TokenUsageRecord.from_usage(session.token_usage),
            threshold_state=session.threshold_state,
            compression_meta=CompressionMeta(
                summaries=session.summaries,
                preserve_recent_count=session.preserve_recent_count,
                reclaimed_tokens=session.reclaimed_tokens,
                discard_log=session.discard_log,
                total_message_count=session.total_message_count,
                next_message_id=session.next_message_id,
            ),
        )

    def to_session(self) -> Session:
        """Rebuild the in-memory session.

        Raises:
            ValueError: If messages and summaries are inconsistent
        """
        meta = self.compression_meta
        messages = sorted(self.messages, key=lambda message: message.id)
        summaries = sorted(meta.summaries, key=lambda summary: summary.covering_range[0])

        ids = [message.id for message in messages]
        if len(set(ids)) != len(ids):
            raise ValueError("duplicate message ids in active log")
        for previous, current in zip(summaries, summaries[1:]):
            if current.covering_range[0] <= previous.covering_range[1]:
                raise ValueError(
                    f"summary ranges overlap: {previous.covering_range} and {current.covering_range}"
                )
        for summary in summaries:
            first, last = summary.covering_range
            if first > last:
                raise ValueError(f"invalid summary range {summary.covering_range}")
            if any(summary.covers_id(message_id) for message_id in ids):
                raise ValueError(f"summary {summary.id} covers a message still in the log")

        active_log: list[LogEntry] = [*messages, *summaries]
        active_log.sort(
            key=lambda entry: entry.id if isinstance(entry, Message) else entry.covering_range[0]
        )

        highest = max(
            [0, *ids]
            + [message.id for message in self.archived_messages]
            + [summary.covering_range[1] for summary in summaries]
            + [message_id for record in meta.discard_log for message_id in record.message_ids]
        )
        next_message_id = max(meta.next_message_id or 0, highest + 1)

        total_message_count = meta.total_message_count
        if total_message_count is None:
            total_message_count = max(
                self.metadata.message_count,
                len(messages)
                + sum(summary.message_count for summary in summaries)
                + sum(len(record.message_ids) for record in meta.discard_log),
            )

        return Session(
            metadata=self.metadata.model_copy(),
            active_log=active_log,
            archive=list(self.archived_messages),
            discard_log=list(meta.discard_log),
            token_usage=self.token_usage.to_usage(),
            reclaimed_tokens=meta.reclaimed_tokens,
            threshold_state=self.threshold_state,
            preserve_recent_count=meta.preserve_recent_count,
            next_message_id=next_message_id,
            total_message_count=total_message_count,
        )
