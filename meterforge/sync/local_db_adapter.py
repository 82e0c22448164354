"""
Local Database Storage Adapter.

Keeps the dataset as a single record in a local SQLite database. This is
the default backend and the fallback when file permissions are lost.
"""

import asyncio
import logging
from pathlib import Path

from meterforge.models import AdapterStatus, Dataset, StorageMode, utcnow
from meterforge.storage.sqlite_db import SQLiteKeyValueStore
from meterforge.sync.adapter import dataset_from_document, log_dataset

logger = logging.getLogger(__name__)

DATA_KEY = "data"
STORE_TABLE = "app_data"


class LocalDatabaseAdapter:
    """Implementation of StorageAdapter for the local SQLite database."""

    mode = StorageMode.LOCAL

    def __init__(self, db_path: Path):
        """
        Initialize local database adapter.

        Args:
            db_path: Path to the SQLite database file
        """
        self.store = SQLiteKeyValueStore(db_path, STORE_TABLE)

    def get_name(self) -> str:
        return "Local database (SQLite)"

    async def can_use(self) -> bool:
        return True

    async def init(self) -> AdapterStatus:
        """Open the database. Repeated calls short-circuit."""
        if not self.store.is_open:
            await self._run(self.store.open)
        return AdapterStatus(initialized=True)

    async def load(self) -> Dataset:
        """Load the dataset, or the empty template if none was saved."""
        await self.init()
        raw = await self._run(self.store.get, DATA_KEY)
        if raw is None:
            logger.info("Local database is empty, starting with an empty dataset")
            return Dataset.empty(self.mode)

        dataset = dataset_from_document(raw, self.get_name())
        log_dataset("loaded", self.get_name(), dataset)
        return dataset

    async def save(self, dataset: Dataset) -> None:
        """Overwrite the stored dataset."""
        await self.init()
        dataset.last_modified = utcnow()
        await self._run(self.store.put, DATA_KEY, dataset.to_document())
        log_dataset("saved", self.get_name(), dataset)

    def save_sync(self, dataset: Dataset) -> None:
        """
        Blocking save used for the last-chance flush on shutdown.

        Only this backend can be written synchronously.
        """
        dataset.last_modified = utcnow()
        self.store.put(DATA_KEY, dataset.to_document())

    async def clear(self) -> None:
        """Delete the stored dataset."""
        await self._run(self.store.delete, DATA_KEY)

    async def _run(self, func, *args):
        """Run a blocking SQLite call off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)
