"""Two-layer compression of a session's active log.

Layer 1 (pruning) deletes low-value messages without calling the model.
Layer 2 (compaction) replaces the oldest contiguous run of messages with a
``Summary`` whose structured facts are extracted deterministically and whose
narrative comes from a ``Summarizer``.

The engine never mutates the log it is given: it works on a copy and returns
the new log in a ``CompactionResult``. A run that is cancelled part-way leaves
no partial state behind.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from ..config import CompressionConfig, NormalizedCompressionConfig, normalize_compression_config
from ..errors import SummarizationError
from ..events import CompactionFinished, CompactionStarted, EventNotifier
from ..ledger import estimate_tokens, log_footprint
from ..tracing import get_tracer, mark_span_error
from ..types import LogEntry, Message, PrunedRecord, Role, Summary, utc_now
from .facts import extract_facts, has_significant_facts
from .scoring import ImportanceScorer, Unit, group_units
from .summarizer import Summarizer, TemplateSummarizer, format_summary_context

logger = logging.getLogger(__name__)

Trigger = Literal["auto", "manual"]


class CompactionResult(BaseModel):
    """Result of one compression run.

    ``pruned`` holds the discard-log records this run added. ``discard_log``
    is the caller's full discard log after the run, when one was passed in:
    records whose ids a new summary's range covers are folded into that
    summary and leave the discard log.
    """

    changed: bool
    log: list[LogEntry]
    removed_messages: list[Message] = Field(default_factory=list)
    summaries_added: list[Summary] = Field(default_factory=list)
    pruned: list[PrunedRecord] = Field(default_factory=list)
    discard_log: list[PrunedRecord] | None = None
    tokens_before: int
    tokens_after: int
    messages_before: int
    messages_after: int
    degraded: bool = False
    fits: bool = True
    trigger: Trigger = "auto"
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime = Field(default_factory=utc_now)

    @property
    def tokens_saved(self) -> int:
        return self.tokens_before - self.tokens_after

    def to_dict(self) -> dict[str, Any]:
        return {
            "changed": self.changed,
            "trigger": self.trigger,
            "tokens_before": self.tokens_before,
            "tokens_after": self.tokens_after,
            "messages_before": self.messages_before,
            "messages_after": self.messages_after,
            "summaries_added": len(self.summaries_added),
            "messages_pruned": sum(len(record.message_ids) for record in self.pruned),
            "messages_removed": len(self.removed_messages),
            "degraded": self.degraded,
            "fits": self.fits,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
        }


def _count_messages(log: Sequence[LogEntry]) -> int:
    return sum(1 for entry in log if isinstance(entry, Message))


class CompressionEngine:
    """Reduces an active log below a token target."""

    def __init__(
        self,
        summarizer: Summarizer | None = None,
        config: CompressionConfig | NormalizedCompressionConfig | None = None,
        notifier: EventNotifier | None = None,
    ):
        self.summarizer = summarizer or TemplateSummarizer()
        self.config = normalize_compression_config(config)
        self.notifier = notifier if notifier is not None else EventNotifier()

    # -- Public API -----------------------------------------------------------

    async def run(
        self,
        log: Sequence[LogEntry],
        target_tokens: int,
        *,
        context_window: int,
        force: bool = False,
        trigger: Trigger = "auto",
        session_id: str | None = None,
        usage_percent: float | None = None,
        discard_log: Sequence[PrunedRecord] | None = None,
    ) -> CompactionResult:
        """Prune, then compact, until the log fits in ``target_tokens``.

        ``force=True`` (manual compaction) ignores the target and compacts
        everything that is eligible. ``usage_percent`` is only reported in the
        started event; it defaults to the log footprint over the window.
        ``discard_log`` is the session's existing discard log; the updated one
        is returned in ``result.discard_log``.
        """
        started_at = utc_now()
        working: list[LogEntry] = list(log)
        tokens_before = log_footprint(working)
        target = 0 if force else max(0, target_tokens)
        if usage_percent is None:
            usage_percent = min(1.0, tokens_before / context_window) if context_window > 0 else 1.0

        self.notifier.emit(
            CompactionStarted(
                session_id=session_id,
                trigger=trigger,
                usage_percent=usage_percent,
                tokens_before=tokens_before,
            )
        )

        removed: list[Message] = []
        pruned: list[PrunedRecord] = []
        records: list[PrunedRecord] = list(discard_log or [])
        summaries: list[Summary] = []
        degraded = False

        tracer = get_tracer()
        with tracer.start_as_current_span("contextbudget.compaction") as span:
            span.set_attribute("contextbudget.trigger", trigger)
            span.set_attribute("contextbudget.tokens_before", tokens_before)
            span.set_attribute("contextbudget.target_tokens", target)
            if session_id:
                span.set_attribute("contextbudget.session_id", session_id)

            if self.config.enabled and self.config.enable_pruning and tokens_before > target:
                try:
                    working, pruned, pruned_messages = self.prune(working, target)
                    removed.extend(pruned_messages)
                    records.extend(pruned)
                except Exception as e:
                    mark_span_error(span, e)
                    logger.warning("Pruning failed, continuing without it: %s", e)

            if (
                self.config.enabled
                and self.config.enable_compaction
                and log_footprint(working) > target
            ):
                try:
                    working, summaries, compacted, degraded, records = await self.compact(
                        working, target, records
                    )
                    removed.extend(compacted)
                except ValueError as e:
                    mark_span_error(span, e)
                    logger.warning("Compaction failed, keeping pruned log: %s", e)

            # ids pruned in this run never appear in an earlier record
            pruned_ids = {message_id for record in pruned for message_id in record.message_ids}
            pruned = [record for record in records if not pruned_ids.isdisjoint(record.message_ids)]

            tokens_after = log_footprint(working)
            span.set_attribute("contextbudget.tokens_after", tokens_after)
            span.set_attribute("contextbudget.summaries_added", len(summaries))
            span.set_attribute(
                "contextbudget.messages_pruned",
                sum(len(record.message_ids) for record in pruned),
            )
            span.set_attribute("contextbudget.degraded", degraded)

        removed.sort(key=lambda message: message.id)
        result = CompactionResult(
            changed=bool(removed),
            log=working,
            removed_messages=removed,
            summaries_added=summaries,
            pruned=pruned,
            discard_log=records if discard_log is not None else None,
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            messages_before=_count_messages(log),
            messages_after=_count_messages(working),
            degraded=degraded,
            fits=tokens_after <= context_window,
            trigger=trigger,
            started_at=started_at,
            finished_at=utc_now(),
        )

        if result.changed:
            logger.info(
                "Compacted context: %d -> %d tokens (%d summaries, %d pruned)",
                tokens_before,
                tokens_after,
                len(summaries),
                sum(len(record.message_ids) for record in pruned),
            )
        else:
            logger.info("Compaction found nothing eligible (%d tokens)", tokens_before)

        self.notifier.emit(
            CompactionFinished(
                session_id=session_id,
                trigger=trigger,
                changed=result.changed,
                tokens_before=tokens_before,
                tokens_after=tokens_after,
                messages_before=result.messages_before,
                messages_after=result.messages_after,
                summaries_added=len(summaries),
                messages_pruned=sum(len(record.message_ids) for record in pruned),
                degraded=degraded,
                fits=result.fits,
            )
        )
        return result

    # -- Protection rules -----------------------------------------------------

    def _system_prompt_index(self, log: Sequence[LogEntry]) -> int | None:
        if log and isinstance(log[0], Message) and log[0].role == Role.SYSTEM:
            return 0
        return None

    def _tail_start(self, log: Sequence[LogEntry]) -> int:
        """Index of the first of the most recent ``preserve_recent_count`` messages."""
        keep = self.config.preserve_recent_count
        if keep <= 0:
            return len(log)
        seen = 0
        for index in range(len(log) - 1, -1, -1):
            if isinstance(log[index], Message):
                seen += 1
                if seen == keep:
                    return index
        return 0

    def _recent_tool_output_indices(self, log: Sequence[LogEntry]) -> set[int]:
        """Tool results within the most recent ``prune_protect`` tokens."""
        protected: set[int] = set()
        tokens = 0
        for index in range(len(log) - 1, -1, -1):
            if tokens >= self.config.prune_protect:
                break
            entry = log[index]
            if isinstance(entry, Message) and entry.tool_results():
                tokens += entry.token_count
                protected.add(index)
        return protected

    def _compaction_boundary(self, log: Sequence[LogEntry], units: list[Unit]) -> int:
        """First index compaction must not touch.

        Starts at the preserved tail and moves back so that no tool pairing is
        split and no call still waiting for its result is summarized. An
        unanswered call that a later assistant turn has moved past is a dead
        call, and is compacted like any other message.
        """
        boundary = self._tail_start(log)
        waiting = [unit.first for unit in units if unit.is_open and self._awaiting_result(log, unit)]
        moved = True
        while moved:
            moved = False
            for unit in units:
                straddles = unit.first < boundary <= unit.last
                if straddles or (unit.first < boundary and unit.first in waiting):
                    boundary = unit.first
                    moved = True
        return boundary

    def _awaiting_result(self, log: Sequence[LogEntry], unit: Unit) -> bool:
        return not any(
            isinstance(entry, Message) and entry.role == Role.ASSISTANT
            for entry in log[unit.last + 1 :]
        )

    # -- Layer 1 --------------------------------------------------------------

    def prune(
        self, log: Sequence[LogEntry], target_tokens: int
    ) -> tuple[list[LogEntry], list[PrunedRecord], list[Message]]:
        """Delete the lowest-importance units until the log fits the target.

        Removing a unit can lower the score of units left behind (a later
        message no longer refers to them), so the log is rescored until the
        target is met or nothing else qualifies. A second run over the result
        then prunes nothing.

        Returns the new log, the discard-log records and the removed messages.
        """
        working = list(log)
        footprint = log_footprint(working)
        if footprint < self.config.prune_minimum:
            return working, [], []

        records: list[PrunedRecord] = []
        removed: list[Message] = []
        while footprint > target_tokens:
            candidates = self._prune_candidates(working)
            if not candidates:
                break

            removed_indices: set[int] = set()
            for score, negative_tokens, _, unit in candidates:
                if footprint <= target_tokens:
                    break
                messages = [working[index] for index in unit.indices]
                removed_indices.update(unit.indices)
                footprint += negative_tokens
                records.append(
                    PrunedRecord(
                        message_ids=[message.id for message in messages],
                        token_count=-negative_tokens,
                        importance=round(score, 4),
                        reason="tool exchange" if unit.call_ids else f"{messages[0].role.value} message",
                        facts=extract_facts(messages),
                    )
                )

            removed.extend(working[index] for index in removed_indices)
            working = [entry for index, entry in enumerate(working) if index not in removed_indices]

        if records:
            logger.debug(
                "Pruned %d units (%d messages), footprint now %d tokens",
                len(records),
                len(removed),
                footprint,
            )

        removed.sort(key=lambda message: message.id)
        return working, records, removed

    def _prune_candidates(self, log: list[LogEntry]) -> list[tuple[float, int, int, Unit]]:
        """Prunable units, lowest score first, then larger, then older."""
        protected = set(range(self._tail_start(log), len(log)))
        protected |= self._recent_tool_output_indices(log)
        system_index = self._system_prompt_index(log)
        if system_index is not None:
            protected.add(system_index)

        scorer = ImportanceScorer(log)
        candidates: list[tuple[float, int, int, Unit]] = []
        for unit in scorer.units:
            if unit.is_open or any(index in protected for index in unit.indices):
                continue
            if any(has_significant_facts(log[index]) for index in unit.indices):
                continue
            score = scorer.unit_score(unit)
            if score >= self.config.prune_max_importance:
                continue
            candidates.append((score, -scorer.unit_tokens(unit), unit.first, unit))

        candidates.sort(key=lambda candidate: candidate[:3])
        return candidates

    # -- Layer 2 --------------------------------------------------------------

    def select_span(self, log: Sequence[LogEntry], target_tokens: int) -> tuple[int, int] | None:
        """Pick the oldest contiguous run of messages to summarize.

        The run grows forward one whole unit at a time until removing it would
        meet the target, or until it reaches the compaction boundary.
        """
        units = group_units(log)
        boundary = self._compaction_boundary(log, units)
        unit_end = {index: unit.last for unit in units for index in unit.indices}

        start = None
        for index, entry in enumerate(log):
            if index >= boundary:
                break
            if isinstance(entry, Message) and index != self._system_prompt_index(log):
                start = index
                break
        if start is None:
            return None

        excess = log_footprint(log) - target_tokens
        accumulated = 0
        needed_end = -1
        best_end = None
        for index in range(start, boundary):
            entry = log[index]
            if not isinstance(entry, Message):
                break
            accumulated += entry.token_count
            needed_end = max(needed_end, unit_end[index])
            if needed_end >= boundary:
                break
            if index >= needed_end:
                best_end = index
                if accumulated >= excess:
                    break

        if best_end is None:
            return None
        return start, best_end

    async def compact(
        self,
        log: Sequence[LogEntry],
        target_tokens: int,
        discard_log: Sequence[PrunedRecord] = (),
    ) -> tuple[list[LogEntry], list[Summary], list[Message], bool, list[PrunedRecord]]:
        """Replace spans with summaries until the target is met.

        Returns the new log, the summaries added, the messages they replaced,
        whether any summary was degraded, and ``discard_log`` without the
        records the new summaries took over.
        """
        working = list(log)
        records = list(discard_log)
        summaries: list[Summary] = []
        removed: list[Message] = []
        degraded = False

        while log_footprint(working) > target_tokens:
            span = self.select_span(working, target_tokens)
            if span is None:
                break
            start, end = span
            messages = [entry for entry in working[start : end + 1] if isinstance(entry, Message)]
            span_tokens = sum(message.token_count for message in messages)

            summary, remaining = self.absorb_pruned(await self.build_summary(messages), records)
            if summary.token_count >= span_tokens:
                logger.info(
                    "Summary of messages %d-%d is not smaller than the span (%d >= %d tokens), "
                    "stopping compaction",
                    summary.covering_range[0],
                    summary.covering_range[1],
                    summary.token_count,
                    span_tokens,
                )
                break

            working = working[:start] + [summary] + working[end + 1 :]
            records = remaining
            summaries.append(summary)
            removed.extend(messages)
            degraded = degraded or summary.degraded

        return working, summaries, removed, degraded, records

    def absorb_pruned(
        self, summary: Summary, discard_log: Sequence[PrunedRecord]
    ) -> tuple[Summary, list[PrunedRecord]]:
        """Fold the discard-log records inside ``summary``'s range into it.

        Summary ranges and the discard log together partition the removed ids,
        so an id pruned earlier that now falls inside a summary's range moves to
        the summary, facts included. A record only partly inside the range
        keeps its other ids.
        """
        facts = summary.extracted_facts
        absorbed = 0
        remaining: list[PrunedRecord] = []
        for record in discard_log:
            inside = [message_id for message_id in record.message_ids if summary.covers_id(message_id)]
            if not inside:
                remaining.append(record)
                continue
            facts = facts.merge(record.facts)
            absorbed += len(inside)
            outside = [message_id for message_id in record.message_ids if not summary.covers_id(message_id)]
            if outside:
                remaining.append(record.model_copy(update={"message_ids": outside}))

        if not absorbed:
            return summary, remaining
        summary = summary.model_copy(
            update={"extracted_facts": facts, "message_count": summary.message_count + absorbed}
        )
        token_count = estimate_tokens(format_summary_context(summary), self.config.chars_per_token)
        return summary.model_copy(update={"token_count": token_count}), remaining

    async def build_summary(self, messages: list[Message]) -> Summary:
        """Summarize a span of messages.

        Facts are always extracted deterministically. If the narrative call fails
        in any way or times out, the summary is marked degraded and carries facts
        only.
        """
        facts = extract_facts(messages)
        narrative = ""
        degraded = False
        try:
            narrative = await asyncio.wait_for(
                self.summarizer.summarize(messages),
                timeout=self.config.summary_timeout_seconds,
            )
        except asyncio.TimeoutError:
            degraded = True
            logger.warning(
                "Summarization of %d messages timed out after %.1fs, compacting without narrative",
                len(messages),
                self.config.summary_timeout_seconds,
            )
        except SummarizationError as e:
            degraded = True
            logger.warning("Summarization failed, compacting without narrative: %s", e)
        except Exception as e:
            degraded = True
            logger.warning(
                "Summarizer raised %s, compacting without narrative: %s", type(e).__name__, e
            )

        summary = Summary(
            id=f"sum-{uuid4().hex[:12]}",
            covering_range=(messages[0].id, messages[-1].id),
            message_count=len(messages),
            narrative=narrative.strip(),
            extracted_facts=facts,
            token_count=0,
            degraded=degraded,
        )
        token_count = estimate_tokens(format_summary_context(summary), self.config.chars_per_token)
        return summary.model_copy(update={"token_count": token_count})
