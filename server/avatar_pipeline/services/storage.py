"""Local key-value persistence for the latest resolved avatar URL."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Dict, Optional, Protocol

from .errors import LocalPersistenceFailure

AVATAR_URL_KEY = "@avatar_url"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class SqliteKeyValueStore:
    """Stores string values in a single SQLite ``settings`` table."""

    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        try:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self.initialize()
        except (OSError, sqlite3.Error) as exc:
            raise LocalPersistenceFailure(f"Could not open avatar store: {exc}", step="store") from exc

    def initialize(self) -> None:
        """Initialize the persistence backend."""
        with sqlite3.connect(self.database_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
                """
            )

    def get(self, key: str) -> Optional[str]:
        try:
            with sqlite3.connect(self.database_path) as conn:
                row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise LocalPersistenceFailure(f"Failed to read {key}: {exc}", step="store") from exc
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        try:
            with sqlite3.connect(self.database_path) as conn:
                conn.execute(
                    """
                    INSERT INTO settings (key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value=excluded.value
                    """,
                    (key, value),
                )
        except sqlite3.Error as exc:
            raise LocalPersistenceFailure("Failed to save avatar data locally", step="store") from exc

    def delete(self, key: str) -> None:
        try:
            with sqlite3.connect(self.database_path) as conn:
                conn.execute("DELETE FROM settings WHERE key = ?", (key,))
        except sqlite3.Error as exc:
            raise LocalPersistenceFailure(f"Failed to delete {key}: {exc}", step="store") from exc


class InMemoryKeyValueStore:
    """Process-local store for tests and ephemeral deployments."""

    def __init__(self) -> None:
        self._values: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)


def open_store(database_path: str) -> KeyValueStore:
    """``:memory:`` yields an in-memory store, anything else a SQLite file."""
    if database_path == ":memory:":
        return InMemoryKeyValueStore()
    return SqliteKeyValueStore(database_path)
