"""Durable storage for the versioned session snapshot."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import sqlite3
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from .schema import SessionState

DEFAULT_DB_PATH = Path("data/tdd_mentor.sqlite")
SESSION_SCHEMA_VERSION = "1.0"
SESSION_KEY = "tddMentorState"
LOGGER = logging.getLogger(__name__)


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionStore:
    """SQLite-backed keyed record holding ``{version, data}`` for one workspace.

    Snapshots written under a different schema version are discarded on load
    rather than migrated.
    """

    @staticmethod
    def _is_writable(path: Path) -> bool:
        parent = path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        if path.exists():
            return os.access(path, os.W_OK)
        return os.access(parent, os.W_OK)

    @staticmethod
    def _fallback_db_path(source: Path) -> Path:
        digest = hashlib.sha1(source.as_posix().encode("utf-8")).hexdigest()[:12]
        fallback_dir = Path(tempfile.gettempdir()) / "tdd-mentor" / "db" / digest
        fallback_dir.mkdir(parents=True, exist_ok=True)
        return fallback_dir / source.name

    @classmethod
    def _resolve_db_path(cls, requested: Path) -> Path:
        resolved = requested.resolve()
        if cls._is_writable(resolved):
            return resolved
        fallback = cls._fallback_db_path(resolved)
        if not fallback.exists() and resolved.exists() and os.access(resolved, os.R_OK):
            try:
                shutil.copy2(resolved, fallback)
            except OSError:
                pass
        if not cls._is_writable(fallback):
            raise OSError(f"Unable to locate writable database path (attempted {requested})")
        return fallback

    def __init__(
        self,
        db_path: Path | str = DEFAULT_DB_PATH,
        *,
        key: str = SESSION_KEY,
        version: str = SESSION_SCHEMA_VERSION,
    ) -> None:
        requested_path = Path(db_path)
        self.db_path = self._resolve_db_path(requested_path)
        if self.db_path != requested_path.resolve():
            LOGGER.warning(
                "Session database %s is not writable; using fallback %s",
                requested_path,
                self.db_path,
            )
        self.key = key
        self.version = version
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(self.db_path)
        self._bootstrap()

    @classmethod
    def from_config(cls, config: Mapping[str, Any], repo_root: Path | None = None) -> "SessionStore":
        """Instantiate a store using the ``paths.db_path`` configuration value."""
        paths_cfg = config.get("paths") if isinstance(config.get("paths"), Mapping) else {}
        db_value = paths_cfg.get("db_path") if paths_cfg else None
        db_path = Path(db_value) if isinstance(db_value, str) and db_value.strip() else DEFAULT_DB_PATH
        if not db_path.is_absolute() and repo_root is not None:
            db_path = repo_root / db_path
        return cls(db_path)

    def __enter__(self) -> "SessionStore":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("Session store is closed.")
        return self._conn

    def _bootstrap(self) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS session_records (
                    key TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    # ------------------------------------------------------------------ API
    def save(self, state: SessionState) -> None:
        """Persist ``state`` under the current schema version."""
        self.write_raw({"version": self.version, "data": state.to_record()})

    def load(self) -> Optional[SessionState]:
        """Return the stored session, or ``None`` when there is nothing usable."""
        row = self._connection().execute(
            "SELECT payload FROM session_records WHERE key = ?",
            (self.key,),
        ).fetchone()
        if row is None:
            return None
        try:
            record = json.loads(row[0])
        except json.JSONDecodeError:
            LOGGER.warning("Discarding unreadable session record %s", self.key)
            return None
        if not isinstance(record, dict):
            return None
        stored_version = record.get("version")
        if stored_version != self.version:
            LOGGER.info(
                "Discarding session snapshot with schema version %r (expected %r)",
                stored_version,
                self.version,
            )
            return None
        try:
            return SessionState.model_validate(record.get("data") or {})
        except ValidationError as error:
            LOGGER.warning("Discarding invalid session snapshot: %s", error)
            return None

    def clear(self) -> None:
        """Remove the stored record."""
        with self._connection() as conn:
            conn.execute("DELETE FROM session_records WHERE key = ?", (self.key,))

    def write_raw(self, record: Mapping[str, Any]) -> None:
        """Store an arbitrary ``record`` verbatim (used for imports and tests)."""
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO session_records (key, payload, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (self.key, json.dumps(dict(record), ensure_ascii=False), _utc_iso()),
            )


__all__ = ["DEFAULT_DB_PATH", "SESSION_KEY", "SESSION_SCHEMA_VERSION", "SessionStore"]
