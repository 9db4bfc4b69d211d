"""Per-session orchestration of ledger, policy, compression, events and storage.

Control flow after each completed model turn::

    usage -> TokenLedger -> evaluate() -> warn once / compact -> SessionStore.save()

Compaction runs between receiving a response and sending the next request,
never concurrently with a model call for the same session.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from ..compression.engine import CompactionResult, CompressionEngine, Trigger
from ..config import (
    CompressionConfig,
    ModelInfo,
    NormalizedCompressionConfig,
    SessionConfig,
    normalize_compression_config,
)
from ..errors import IrreducibleContextError, SessionPersistenceError
from ..events import ContextWarning, EventNotifier
from ..ledger import TokenLedger
from ..policy import Decision, advance, evaluate
from ..types import ContentBlock, Message, Role, TokenUsage, TurnUsage
from .models import Session
from .store import SessionStore

logger = logging.getLogger(__name__)


class ContextStats(BaseModel):
    """Read-only snapshot for ``/context``."""

    session_id: str
    active_message_count: int
    total_message_count_ever_seen: int
    summary_count: int
    pruned_message_count: int
    usage_percent: float
    compressed: bool
    context_tokens: int
    context_window: int
    footprint: int
    cumulative_usage: TokenUsage
    warning_issued: bool
    last_compaction_at: datetime | None = None


class ContextBudgetManager:
    """Keeps one session inside its model's context window.

    The manager owns no global state: the session, engine, store and notifier
    are passed in. When no engine is given, one is built from ``config`` and
    emits through ``notifier``; a caller-supplied engine emits through its own
    notifier.
    """

    def __init__(
        self,
        session: Session,
        *,
        model_info: ModelInfo,
        engine: CompressionEngine | None = None,
        store: SessionStore | None = None,
        notifier: EventNotifier | None = None,
        config: CompressionConfig | NormalizedCompressionConfig | None = None,
        session_config: SessionConfig | None = None,
    ):
        self.session = session
        self.model_info = model_info
        if engine is None:
            self.config = normalize_compression_config(config)
            self.notifier = notifier if notifier is not None else EventNotifier()
            self.engine = CompressionEngine(config=self.config, notifier=self.notifier)
        else:
            self.config = engine.config if config is None else normalize_compression_config(config)
            self.notifier = notifier if notifier is not None else engine.notifier
            self.engine = engine
        self.store = store
        self.auto_save = session_config.auto_save if session_config else True
        self.ledger = TokenLedger(
            session.token_usage,
            reclaimed_tokens=session.reclaimed_tokens,
            chars_per_token=self.config.chars_per_token,
        )
        # messages appended since the last completed turn, for usage estimation
        self._turn_messages: list[Message] = []

    @property
    def context_window(self) -> int:
        return self.model_info.context_window

    # -- Turn lifecycle -------------------------------------------------------

    async def append(
        self,
        content: str | list[ContentBlock] | Message,
        role: Role = Role.USER,
        token_count: int | None = None,
    ) -> Message:
        """Append a message to the session and persist it."""
        if isinstance(content, Message):
            message = self.session.add(content)
        else:
            message = self.session.append(
                role, content, token_count, chars_per_token=self.config.chars_per_token
            )
        self._turn_messages.append(message)
        await self._persist()
        return message

    async def complete_turn(self, usage: TurnUsage | None = None) -> Decision:
        """Record a completed model turn and act on the threshold policy.

        When ``usage`` is None the provider reported nothing and usage is
        estimated from the messages appended during the turn.

        Raises:
            IrreducibleContextError: If compaction could not fit the active log
                into the context window
        """
        if usage is None:
            self._record_estimated_turn()
        else:
            self.ledger.record_usage(
                usage.input_tokens,
                usage.output_tokens,
                reasoning_tokens=usage.reasoning_tokens,
                cache_read_tokens=usage.cache_read_tokens,
                cache_write_tokens=usage.cache_write_tokens,
            )
        self._turn_messages = []
        self.session.token_usage = self.ledger.snapshot()

        if not self.config.enabled:
            await self._persist()
            return Decision.NONE

        usage_percent = self.ledger.current_usage_percent(self.context_window)
        decision = evaluate(usage_percent, self.session.threshold_state, self.config)

        if decision == Decision.WARN:
            logger.info(
                "Context usage for session %s at %.1f%% of %d tokens",
                self.session.id,
                usage_percent * 100,
                self.context_window,
            )
            self.session.threshold_state = advance(self.session.threshold_state, decision)
            self.notifier.emit(
                ContextWarning(
                    session_id=self.session.id,
                    usage_percent=usage_percent,
                    context_tokens=self.ledger.context_tokens,
                    context_window=self.context_window,
                )
            )
        elif decision == Decision.COMPACT:
            await self._compact(trigger="auto", force=False, usage_percent=usage_percent)
            return decision

        await self._persist()
        return decision

    def _record_estimated_turn(self) -> None:
        input_blocks: list[Any] = []
        output_blocks: list[Any] = []
        for message in self._turn_messages:
            target = output_blocks if message.role == Role.ASSISTANT else input_blocks
            target.extend(message.content)
        self.ledger.record_estimated(input_blocks, output_blocks)

    # -- Compaction -----------------------------------------------------------

    async def compact(self) -> CompactionResult:
        """Manual compaction (``/compact``): compact everything eligible.

        Raises:
            IrreducibleContextError: If the active log still does not fit
        """
        usage_percent = self.ledger.current_usage_percent(self.context_window)
        return await self._compact(trigger="manual", force=True, usage_percent=usage_percent)

    def target_tokens(self) -> int:
        """Active-log footprint to compact down to.

        The ledger's excess over ``target_ratio`` of the window is taken off the
        current footprint.
        """
        goal = int(self.config.target_ratio * self.context_window)
        excess = max(0, self.ledger.context_tokens - goal)
        return max(0, self.session.footprint() - excess)

    async def _compact(self, *, trigger: Trigger, force: bool, usage_percent: float) -> CompactionResult:
        result = await self.engine.run(
            self.session.active_log,
            self.target_tokens(),
            context_window=self.context_window,
            force=force,
            trigger=trigger,
            session_id=self.session.id,
            usage_percent=usage_percent,
            discard_log=self.session.discard_log,
        )

        # nothing below awaits until the result is fully applied
        self.session.apply_compaction(result, retain_archived=self.config.retain_archived)
        self.ledger.record_reclaimed(result.tokens_saved)
        self.session.reclaimed_tokens = self.ledger.reclaimed_tokens
        self.session.threshold_state = advance(self.session.threshold_state, Decision.COMPACT)
        if result.degraded:
            logger.warning(
                "Compaction of session %s was degraded: summaries carry facts without narrative",
                self.session.id,
            )

        await self._persist()

        if not result.fits:
            raise IrreducibleContextError(result.tokens_after, self.context_window, result)
        return result

    # -- Read-only views ------------------------------------------------------

    def stats(self) -> ContextStats:
        session = self.session
        summaries = session.summaries
        pruned = session.pruned_ids()
        return ContextStats(
            session_id=session.id,
            active_message_count=len(session.messages),
            total_message_count_ever_seen=session.total_message_count,
            summary_count=len(summaries),
            pruned_message_count=len(pruned),
            usage_percent=self.ledger.current_usage_percent(self.context_window),
            compressed=bool(summaries or pruned),
            context_tokens=self.ledger.context_tokens,
            context_window=self.context_window,
            footprint=session.footprint(),
            cumulative_usage=self.ledger.snapshot(),
            warning_issued=session.threshold_state.warning_issued,
            last_compaction_at=session.threshold_state.last_compaction_at,
        )

    def render(self) -> list[dict[str, Any]]:
        return self.session.render()

    # -- Persistence ----------------------------------------------------------

    async def _persist(self) -> None:
        if self.store is None or not self.auto_save:
            return
        try:
            await self.store.save(self.session)
        except SessionPersistenceError as e:
            logger.warning("Session %s not persisted, continuing in memory: %s", self.session.id, e)

    async def save(self) -> None:
        """Persist the session now, regardless of ``auto_save``.

        Raises:
            SessionPersistenceError: If the snapshot could not be written
        """
        if self.store is None:
            raise SessionPersistenceError(self.session.id, "no session store configured")
        await self.store.save(self.session)
