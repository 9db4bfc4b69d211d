"""Shared pytest configuration and fixtures."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from contextbudget.config import SessionConfig
from contextbudget.events import EventNotifier
from contextbudget.session.store import SessionStore


@pytest.fixture
def session_store(tmp_path):
    """SessionStore writing into a per-test temporary directory."""
    return SessionStore(SessionConfig(storage_dir=str(tmp_path / "sessions")))


@pytest.fixture
def recorded_events():
    """EventNotifier plus the list of events it delivered."""
    notifier = EventNotifier()
    events = []
    notifier.subscribe(events.append)
    return notifier, events


@pytest.fixture
def mock_provider():
    """Mock LLM provider exposing ``generate``."""
    provider = MagicMock()
    provider.generate = AsyncMock(return_value=MagicMock(content="Summary of earlier work."))
    return provider


@pytest.fixture
def mock_tracer():
    """Mock OpenTelemetry tracer."""
    tracer = MagicMock()
    span = MagicMock()
    span.__enter__ = MagicMock(return_value=span)
    span.__exit__ = MagicMock(return_value=False)
    tracer.start_as_current_span = MagicMock(return_value=span)
    return tracer
