"""
Shared pytest fixtures for MeterForge tests.
"""

import asyncio
import copy
from typing import Optional

import pytest

from meterforge.core.data_manager import DataManager
from meterforge.models import AdapterStatus, Dataset, StorageMode, utcnow
from meterforge.storage.sqlite_db import SQLiteKeyValueStore


class InMemoryAdapter:
    """Storage adapter keeping the serialized document in memory."""

    def __init__(
        self,
        mode: StorageMode = StorageMode.LOCAL,
        stored: Optional[dict] = None,
        save_delay: float = 0.0,
    ):
        self.mode = mode
        self.stored = stored
        self.save_delay = save_delay
        self.save_error: Optional[Exception] = None
        self.saves = 0
        self.sync_saves = 0
        self.init_calls = 0

    def get_name(self) -> str:
        return f"In-memory ({self.mode.value})"

    async def can_use(self) -> bool:
        return True

    async def init(self) -> AdapterStatus:
        self.init_calls += 1
        return AdapterStatus(initialized=True)

    async def load(self) -> Dataset:
        if self.stored is None:
            return Dataset.empty(self.mode)
        return Dataset.model_validate(copy.deepcopy(self.stored))

    async def save(self, dataset: Dataset) -> None:
        if self.save_delay:
            await asyncio.sleep(self.save_delay)
        if self.save_error is not None:
            raise self.save_error
        dataset.last_modified = utcnow()
        self.stored = dataset.to_document()
        self.saves += 1

    def save_sync(self, dataset: Dataset) -> None:
        dataset.last_modified = utcnow()
        self.stored = dataset.to_document()
        self.sync_saves += 1


@pytest.fixture
def memory_adapter():
    """An empty in-memory local adapter."""
    return InMemoryAdapter()


@pytest.fixture
def fallback_adapter():
    """The adapter handed out by the fallback factory."""
    return InMemoryAdapter(StorageMode.LOCAL)


@pytest.fixture
def manager(memory_adapter, fallback_adapter):
    """A DataManager with a short debounce window (call init() first)."""
    return DataManager(
        memory_adapter,
        fallback_factory=lambda: fallback_adapter,
        autosave_delay=0.01,
    )


@pytest.fixture
def kv_store(tmp_path):
    """SQLiteKeyValueStore at a temp path."""
    return SQLiteKeyValueStore(tmp_path / "db" / "meterforge.db", "test_store")


@pytest.fixture
def sample_document():
    """A stored dataset document in the wire format."""
    return {
        "version": "1.0",
        "meterTypes": [{"id": "mt1", "name": "Water", "unit": "m³", "icon": "💧", "createdAt": "2024-01-01T00:00:00Z"}],
        "meters": [
            {
                "id": "m1",
                "name": "Kitchen",
                "typeId": "mt1",
                "meterNumber": "W-1",
                "location": "Kitchen",
                "isContinuous": False,
                "groupId": None,
                "tariffId": None,
                "createdAt": "2024-01-01T00:00:00Z",
            }
        ],
        "readings": [
            {"id": "r1", "meterId": "m1", "value": 100, "timestamp": "2024-01-01T00:00:00Z", "note": ""},
            {"id": "r2", "meterId": "m1", "value": 150, "timestamp": "2024-02-01T00:00:00Z", "note": ""},
        ],
        "groups": [],
        "tariffs": [],
        "settings": {"storageMode": "local", "currency": "EUR", "theme": "dark"},
        "createdAt": "2024-01-01T00:00:00Z",
        "lastModified": "2024-02-01T00:00:00Z",
    }


@pytest.fixture
def make_adapter():
    """Factory for additional in-memory adapters."""
    return InMemoryAdapter
