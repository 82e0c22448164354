"""
SQLite key-value store for MeterForge.

Local persistence for the dataset record, the persisted file handle and
the encrypted WebDAV credentials. Each store owns one table; values are
JSON documents addressed by a fixed key.
"""

import json
import re
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, Optional

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SQLiteKeyValueStore:
    """A single-table key-value store in a SQLite database file."""

    def __init__(self, db_path: Path, table: str):
        """
        Initialize the store.

        Args:
            db_path: Path to the SQLite database file
            table: Table name (one table per logical store)
        """
        if not _TABLE_NAME.match(table):
            raise ValueError(f"Invalid table name: {table!r}")

        self.db_path = Path(db_path)
        self.table = table
        self._schema_ready = False

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def open(self) -> None:
        """Create the database file and table if needed. Idempotent."""
        if self._schema_ready:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._get_connection() as conn:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
        self._schema_ready = True

    @property
    def is_open(self) -> bool:
        return self._schema_ready

    def get(self, key: str) -> Optional[Any]:
        """
        Read the value stored under a key.

        Returns:
            The decoded JSON value, or None if the key is absent
        """
        self.open()
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT value FROM {self.table} WHERE key = ?", (key,)
            ).fetchone()

        if row is None:
            return None
        return json.loads(row["value"])

    def put(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value, replacing any previous one."""
        self.open()
        encoded = json.dumps(value, ensure_ascii=False)
        with self._get_connection() as conn:
            conn.execute(
                f"""
                INSERT INTO {self.table} (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, encoded, datetime.now(timezone.utc).isoformat()),
            )

    def delete(self, key: str) -> bool:
        """
        Remove a key.

        Returns:
            True if a value was removed
        """
        self.open()
        with self._get_connection() as conn:
            cursor = conn.execute(f"DELETE FROM {self.table} WHERE key = ?", (key,))
            return cursor.rowcount > 0

    def clear(self) -> None:
        """Remove every key in this store."""
        self.open()
        with self._get_connection() as conn:
            conn.execute(f"DELETE FROM {self.table}")

    def keys(self) -> list[str]:
        """List stored keys."""
        self.open()
        with self._get_connection() as conn:
            rows = conn.execute(f"SELECT key FROM {self.table} ORDER BY key").fetchall()
        return [row["key"] for row in rows]
