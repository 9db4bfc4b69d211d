"""Threshold policy: map context usage to a warn/compact decision.

Pure functions only, so the policy can be tested with plain tables of
``(usage_percent, prior_state) -> decision``.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from .config import NormalizedCompressionConfig
from .types import ThresholdState, utc_now


class Decision(str, Enum):
    """What the caller should do after a turn."""

    NONE = "none"
    WARN = "warn"
    COMPACT = "compact"


def evaluate(
    usage_percent: float,
    state: ThresholdState,
    config: NormalizedCompressionConfig,
) -> Decision:
    """Decide whether to warn or compact.

    Compaction wins regardless of whether a warning was already issued. The
    warning is edge-triggered: it fires once per crossing and is re-armed only
    when a compaction completes.
    """
    if usage_percent >= config.compact_threshold:
        return Decision.COMPACT
    if usage_percent >= config.warn_threshold and not state.warning_issued:
        return Decision.WARN
    return Decision.NONE


def advance(
    state: ThresholdState,
    decision: Decision,
    now: datetime | None = None,
) -> ThresholdState:
    """Return the threshold state after acting on ``decision``.

    Call with ``Decision.COMPACT`` only once the compaction has completed.
    """
    if decision == Decision.WARN:
        return state.model_copy(update={"warning_issued": True})
    if decision == Decision.COMPACT:
        return ThresholdState(warning_issued=False, last_compaction_at=now or utc_now())
    return state
