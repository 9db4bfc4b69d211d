"""Session state, storage and per-session orchestration."""

from .manager import ContextBudgetManager, ContextStats
from .models import (
    CompressionMeta,
    Session,
    SessionMetadata,
    SessionSnapshot,
    TokenUsageRecord,
    new_session_id,
)
from .store import SessionListItem, SessionStore

__all__ = [
    "CompressionMeta",
    "ContextBudgetManager",
    "ContextStats",
    "Session",
    "SessionListItem",
    "SessionMetadata",
    "SessionSnapshot",
    "SessionStore",
    "TokenUsageRecord",
    "new_session_id",
]
