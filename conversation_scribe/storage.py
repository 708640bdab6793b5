"""JSON file persistence for dehydrated pipeline sessions."""

import json
import logging
import os
import re
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class JsonSessionStore:
    """Stores one JSON document per session id under a directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory).expanduser()

    def _path(self, session_id: str) -> Path:
        if not _SESSION_ID_PATTERN.match(session_id) or session_id in (".", ".."):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.directory / f"{session_id}.json"

    def save(self, session_id: str, record: dict) -> Path:
        """Write a record atomically, replacing any previous one.

        Returns:
            Path of the written file
        """
        path = self._path(session_id)
        self.directory.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{session_id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record, f)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.info("Saved session %s to %s", session_id, path)
        return path

    def load(self, session_id: str) -> dict | None:
        """Read a record; missing or unreadable files count as absent."""
        path = self._path(session_id)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not load session file %s: %s", path, e)
            return None

        if not isinstance(data, dict):
            logger.warning("Session file %s does not hold an object, ignoring", path)
            return None
        return data

    def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Deleted session %s", session_id)
        return True

    def list_sessions(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))
