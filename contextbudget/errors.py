"""Exceptions raised by the context budget subsystem."""

from __future__ import annotations

from typing import Any


class ContextBudgetError(Exception):
    """Base class for all contextbudget errors."""


class ConfigurationError(ContextBudgetError):
    """
    Exception raised when configuration values are invalid.
    """

    def __init__(self, field: str, value: Any, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid value for {field!r}: {value!r} ({reason})")


class SummarizationError(ContextBudgetError):
    """
    Exception raised when a narrative summary could not be generated.

    Recoverable: the compression engine falls back to a degraded summary that
    keeps the deterministically extracted facts.
    """

    def __init__(self, reason: str | None = None):
        self.reason = reason
        super().__init__(reason)


class SessionPersistenceError(ContextBudgetError):
    """
    Exception raised when a session snapshot could not be written.
    """

    def __init__(self, session_id: str, reason: str | None = None):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Failed to persist session {session_id}: {reason}")


class SessionNotFoundError(ContextBudgetError):
    """
    Exception raised when no stored session exists for an id.
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionCorruptedError(ContextBudgetError):
    """
    Exception raised when a stored session fails schema validation.

    Callers must start a fresh session instead of operating on partially
    reconstructed state.
    """

    def __init__(self, session_id: str, reason: str | None = None):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Session {session_id} is corrupted: {reason}")


class IrreducibleContextError(ContextBudgetError):
    """
    Exception raised when the active log still exceeds the context window after
    both pruning and compaction ran.

    The request must not be sent. The caller decides what to do next (ask the
    user, truncate the offending message, ...).
    """

    def __init__(self, tokens: int, context_window: int, result: Any = None):
        self.tokens = tokens
        self.context_window = context_window
        self.result = result
        super().__init__(
            f"Active context needs {tokens} tokens after compaction, "
            f"which does not fit the {context_window}-token context window"
        )
