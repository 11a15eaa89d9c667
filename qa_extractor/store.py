"""SQLite-backed key/value store for state that must survive restarts."""

import json
import sqlite3
import time
from typing import Any


class StateStore:
    """Durable JSON document store keyed by name."""

    def __init__(self, db_path: str = "qa_extractor.db", table: str = "state"):
        self.db_path = db_path
        self.table = table
        self._init_db()

    def _init_db(self):
        """Initialize the database schema."""
        conn = self._get_connection()
        try:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            conn.commit()
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def get(self, key: str, default: Any = None) -> Any:
        """Read a stored document.

        Args:
            key: Document name
            default: Returned when nothing is stored under ``key``

        Returns:
            The decoded JSON value
        """
        conn = self._get_connection()
        try:
            row = conn.execute(
                f"SELECT value FROM {self.table} WHERE key = ?", (key,)
            ).fetchone()
            if row is None:
                return default
            return json.loads(row["value"])
        finally:
            conn.close()

    def set(self, key: str, value: Any):
        """Store a JSON-serializable document, replacing any previous one."""
        conn = self._get_connection()
        try:
            conn.execute(
                f"""
                INSERT INTO {self.table} (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, json.dumps(value), time.time()),
            )
            conn.commit()
        finally:
            conn.close()

    def delete(self, key: str):
        conn = self._get_connection()
        try:
            conn.execute(f"DELETE FROM {self.table} WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()
