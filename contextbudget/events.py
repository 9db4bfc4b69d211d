"""In-process publish/subscribe for context budget events.

The notifier is passed explicitly to the components that emit events; there
is no process-wide bus. Delivery is synchronous and in emission order, and a
failing subscriber never aborts the emitter.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from .types import utc_now

logger = logging.getLogger(__name__)


class ContextEvent(BaseModel):
    """Base class for events emitted by the context budget subsystem."""

    event_type: str
    session_id: str | None = None
    emitted_at: datetime = Field(default_factory=utc_now)


class ContextWarning(ContextEvent):
    """Usage crossed the warn threshold."""

    event_type: Literal["context_warning"] = "context_warning"
    usage_percent: float
    context_tokens: int
    context_window: int


class CompactionStarted(ContextEvent):
    """A compression run is about to start."""

    event_type: Literal["compaction_started"] = "compaction_started"
    trigger: Literal["auto", "manual"]
    usage_percent: float
    tokens_before: int


class CompactionFinished(ContextEvent):
    """A compression run finished.

    ``degraded`` is True when at least one summary was written without a
    narrative because summarization failed or timed out.
    """

    event_type: Literal["compaction_finished"] = "compaction_finished"
    trigger: Literal["auto", "manual"]
    changed: bool
    tokens_before: int
    tokens_after: int
    messages_before: int
    messages_after: int
    summaries_added: int
    messages_pruned: int
    degraded: bool = False
    fits: bool = True

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


Subscriber = Callable[[ContextEvent], Any]


class EventNotifier:
    """Synchronous observer list."""

    def __init__(self, subscribers: list[Subscriber] | None = None):
        self._subscribers: list[Subscriber] = list(subscribers or [])

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: ContextEvent) -> None:
        """Call every subscriber once, in subscription order."""
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Event subscriber %r failed handling %s", callback, event.event_type
                )

    def __len__(self) -> int:
        return len(self._subscribers)
