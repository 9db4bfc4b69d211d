"""File-backed session storage.

One JSON document per session under ``SessionConfig.storage_dir``. Writes go
to a temporary file in the same directory, are fsynced, then renamed over the
target, so a crash never leaves a half-written snapshot where ``load`` reads.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

from pydantic import BaseModel

from ..config import SessionConfig
from ..errors import SessionCorruptedError, SessionNotFoundError, SessionPersistenceError
from ..types import utc_now
from .models import Session, SessionSnapshot, new_session_id

logger = logging.getLogger(__name__)

_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class SessionListItem(BaseModel):
    """Row returned by ``SessionStore.list_sessions``."""

    id: str
    title: str
    cwd: str | None = None
    updated_at: datetime
    message_count: int
    preview: str = ""


def _write_atomic(path: Path, data: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise


class SessionStore:
    """Loads, saves and forks sessions.

    File I/O runs in a worker thread so the event loop is never blocked.
    """

    def __init__(self, config: SessionConfig | None = None):
        self.config = config or SessionConfig()
        self.storage_dir = Path(self.config.storage_dir).expanduser()

    def _path(self, session_id: str) -> Path:
        if not _SESSION_ID_PATTERN.match(session_id):
            raise SessionNotFoundError(session_id)
        return self.storage_dir / f"{session_id}.json"

    # -- Save / load ----------------------------------------------------------

    async def save(self, session: Session) -> None:
        """Write a consistent snapshot of ``session``.

        Raises:
            SessionPersistenceError: If the snapshot could not be written
        """
        session.metadata.updated_at = utc_now()
        session.metadata.message_count = session.total_message_count
        data = SessionSnapshot.from_session(session).model_dump_json(by_alias=True, indent=2)
        path = self._path(session.id)
        try:
            await asyncio.to_thread(_write_atomic, path, data)
        except OSError as e:
            raise SessionPersistenceError(session.id, str(e)) from e
        logger.debug("Saved session %s to %s", session.id, path)

    async def load(self, session_id: str) -> Session:
        """Reconstruct a session from disk.

        Raises:
            SessionNotFoundError: If no snapshot exists for ``session_id``
            SessionCorruptedError: If the snapshot fails schema validation
        """
        path = self._path(session_id)
        try:
            raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError as e:
            raise SessionNotFoundError(session_id) from e
        except OSError as e:
            raise SessionCorruptedError(session_id, str(e)) from e
        return self._parse(session_id, raw)

    def _parse(self, session_id: str, raw: str) -> Session:
        try:
            return SessionSnapshot.model_validate_json(raw).to_session()
        except ValueError as e:
            raise SessionCorruptedError(session_id, str(e)) from e

    async def fork(self, session: Session, title: str | None = None) -> Session:
        """Duplicate ``session`` under a new id.

        The fork inherits cumulative token counters, summaries, the discard log
        and the archive, so its budget does not restart from zero.
        """
        now = utc_now()
        forked = session.model_copy(deep=True)
        forked.metadata = forked.metadata.model_copy(
            update={
                "id": new_session_id(),
                "title": title or f"Fork of {session.metadata.title}",
                "created_at": now,
                "updated_at": now,
                "parent_id": session.id,
            }
        )
        await self.save(forked)
        logger.info("Forked session %s into %s", session.id, forked.id)
        return forked

    # -- Listing and housekeeping ---------------------------------------------

    async def list_sessions(self, cwd: str | None = None) -> list[SessionListItem]:
        """List stored sessions, newest first. Unreadable files are skipped."""
        return await asyncio.to_thread(self._list_sessions, cwd)

    def _list_sessions(self, cwd: str | None) -> list[SessionListItem]:
        if not self.storage_dir.is_dir():
            return []
        items: list[SessionListItem] = []
        for path in self.storage_dir.glob("*.json"):
            try:
                session = self._parse(path.stem, path.read_text(encoding="utf-8"))
            except (OSError, SessionCorruptedError) as e:
                logger.warning("Skipping unreadable session file %s: %s", path, e)
                continue
            if cwd is not None and session.metadata.cwd != cwd:
                continue
            items.append(
                SessionListItem(
                    id=session.id,
                    title=session.metadata.title,
                    cwd=session.metadata.cwd,
                    updated_at=session.metadata.updated_at,
                    message_count=session.metadata.message_count,
                    preview=session.preview(),
                )
            )
        items.sort(key=lambda item: item.updated_at, reverse=True)
        return items

    async def latest(self, cwd: str | None = None) -> Session | None:
        """Most recently updated session, if any."""
        items = await self.list_sessions(cwd)
        if not items:
            return None
        return await self.load(items[0].id)

    async def delete(self, session_id: str) -> bool:
        """Delete a stored session. Returns False if it did not exist."""
        path = self._path(session_id)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        logger.debug("Deleted session %s", session_id)
        return True

    async def cleanup(self) -> int:
        """Delete sessions older than ``max_age_days`` or beyond ``max_sessions``.

        Returns the number of sessions deleted.
        """
        items = await self.list_sessions()
        cutoff = utc_now() - timedelta(days=self.config.max_age_days)
        deleted = 0
        for position, item in enumerate(items):
            if item.updated_at < cutoff or position >= self.config.max_sessions:
                if await self.delete(item.id):
                    deleted += 1
        if deleted:
            logger.info("Cleaned up %d sessions in %s", deleted, self.storage_dir)
        return deleted

    # -- Export / import ------------------------------------------------------

    async def export(self, session_id: str) -> str:
        """Return the JSON snapshot of a stored session."""
        session = await self.load(session_id)
        return SessionSnapshot.from_session(session).model_dump_json(by_alias=True, indent=2)

    async def import_session(self, data: str) -> Session:
        """Store an exported snapshot under a fresh id.

        Raises:
            SessionCorruptedError: If ``data`` is not a valid snapshot
        """
        session = self._parse("<import>", data)
        now = utc_now()
        session.metadata = session.metadata.model_copy(
            update={"id": new_session_id(), "created_at": now, "updated_at": now}
        )
        await self.save(session)
        return session
