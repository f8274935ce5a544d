"""
Session persistence for conductor.

WHY THIS FILE EXISTS:
--------------------
A conversation should survive the process. After every finished or
aborted turn the engine saves the message list here, so a user can:
- resume the last conversation in a project
- look back at what a previous session did
- clear out old sessions

PERSISTENCE:
-----------
Sessions are stored as JSON files in ~/.conductor/sessions/, one file per
session id:

    {
      "id": "a1b2c3d4",
      "timestamp": "2025-01-01T12:00:00",
      "version": "1.0.0",
      "metadata": {"workdir": "...", "started_at": "...",
                   "last_active_at": "...", "total_tokens": 1234},
      "state": {"messages": [...]}
    }

Saving is best-effort: the engine logs failures and carries on.
"""

import json
import logging
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from .schemas import Message, SessionData, SessionMetadata, SessionState, Usage

logger = logging.getLogger(__name__)

SESSION_VERSION = "1.0.0"
DEFAULT_SESSION_DIR = Path.home() / ".conductor" / "sessions"


def generate_session_id() -> str:
    return str(uuid.uuid4())[:8]


class SessionManager:
    """
    Manages session files.

    Usage:
        manager = SessionManager()
        manager.save_session("abc12345", messages, usages, workdir="/project")

        # Later...
        data = manager.load_session("abc12345")
        data.state.messages
    """

    def __init__(self, base_path: Optional[Path] = None):
        """
        Args:
            base_path: Directory for session files.
                      Defaults to ~/.conductor/sessions
        """
        self.base_path = Path(base_path or DEFAULT_SESSION_DIR).expanduser()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _session_path(self, session_id: str) -> Path:
        """Get the file path for a session."""
        return self.base_path / f"{session_id}.json"

    def save_session(
        self,
        session_id: str,
        messages: list[Message],
        usages: Iterable[Usage] = (),
        workdir: str = "",
        started_at: Optional[datetime] = None,
    ) -> Path:
        """
        Write a session to disk, replacing any previous save.

        Args:
            session_id: Session to write
            messages: Full message list
            usages: Usage records; their total_tokens are summed
            workdir: Project directory the session belongs to
            started_at: When the session began (kept from the previous save
                        if omitted)

        Returns:
            Path of the written file
        """
        now = datetime.now()
        path = self._session_path(session_id)

        if started_at is None:
            try:
                previous = self.load_session(session_id)
            except ValueError as e:
                logger.warning("Overwriting unreadable session %s: %s", session_id, e)
                previous = None
            started_at = previous.metadata.started_at if previous else now

        data = SessionData(
            id=session_id,
            timestamp=now,
            version=SESSION_VERSION,
            metadata=SessionMetadata(
                workdir=str(workdir),
                started_at=started_at,
                last_active_at=now,
                total_tokens=sum(u.total_tokens for u in usages),
            ),
            state=SessionState(messages=list(messages)),
        )

        # Write then rename so a crash never leaves half a file behind.
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data.model_dump(mode="json"), f, indent=2, default=str)
        tmp_path.replace(path)

        logger.debug("Saved session %s (%d messages)", session_id, len(messages))
        return path

    def load_session(self, session_id: str) -> Optional[SessionData]:
        """
        Load a session from disk.

        Returns:
            SessionData, or None if the session doesn't exist

        Raises:
            ValueError: If the file exists but is not a valid session
        """
        path = self._session_path(session_id)
        if not path.exists():
            return None

        try:
            with open(path, encoding="utf-8") as f:
                return SessionData.model_validate(json.load(f))
        except (json.JSONDecodeError, ValidationError) as e:
            raise ValueError(f"Session {session_id} is corrupt: {e}") from e

    def exists(self, session_id: str) -> bool:
        """Check if a session exists."""
        return self._session_path(session_id).exists()

    def delete(self, session_id: str) -> bool:
        """
        Delete a session.

        Returns:
            True if deleted, False if didn't exist
        """
        path = self._session_path(session_id)
        if path.exists():
            path.unlink()
            return True
        return False

    def list_all(self) -> list[dict]:
        """
        List all sessions with summary info, newest first.

        Returns:
            List of dicts with session_id, workdir, last_active_at,
            total_tokens and message_count
        """
        sessions = []

        for path in sorted(self.base_path.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True):
            try:
                with open(path, encoding="utf-8") as f:
                    data = json.load(f)
                metadata = data.get("metadata", {})
                sessions.append({
                    "session_id": data.get("id", path.stem),
                    "workdir": metadata.get("workdir", ""),
                    "started_at": metadata.get("started_at", ""),
                    "last_active_at": metadata.get("last_active_at", ""),
                    "total_tokens": metadata.get("total_tokens", 0),
                    "message_count": len(data.get("state", {}).get("messages", [])),
                })
            except (json.JSONDecodeError, AttributeError) as e:
                logger.warning("Skipping invalid session file %s: %s", path.name, e)
                continue

        return sessions

    def latest(self, workdir: Optional[str] = None) -> Optional[str]:
        """Id of the most recently active session, optionally for one workdir."""
        for summary in self.list_all():
            if workdir is None or summary["workdir"] == str(workdir):
                return summary["session_id"]
        return None

    def cleanup_old(self, days: int = 30) -> int:
        """
        Delete sessions older than specified days.

        Returns:
            Number of sessions deleted
        """
        cutoff = time.time() - (days * 24 * 60 * 60)
        deleted = 0

        for path in self.base_path.glob("*.json"):
            if path.stat().st_mtime < cutoff:
                path.unlink()
                deleted += 1

        if deleted:
            logger.info("Removed %d sessions older than %d days", deleted, days)
        return deleted
