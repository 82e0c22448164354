"""Storage layer for MeterForge."""

from meterforge.storage.sqlite_db import SQLiteKeyValueStore

__all__ = ["SQLiteKeyValueStore"]
