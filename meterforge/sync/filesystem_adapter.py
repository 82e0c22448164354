"""
File System Storage Adapter.

Stores the dataset in a single JSON file the user picked (which can live
in a synced folder such as Nextcloud or iCloud). The file is addressed by
a capability handle that is persisted in a side store, so it survives
restarts without asking the user to pick the file again.

Permission handling: `load` and `save` only query permission. A handle
in the `prompt` state can only be resolved through
`request_permission_from_gesture`, which the UI calls from an explicit
user action.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Callable, Optional, Protocol

from meterforge.models import AdapterStatus, Dataset, PermissionState, StorageMode, utcnow
from meterforge.storage.sqlite_db import SQLiteKeyValueStore
from meterforge.sync.adapter import log_dataset, parse_dataset, serialize_dataset
from meterforge.sync.errors import NotConfiguredError, NotFoundError, PermissionDeniedError

logger = logging.getLogger(__name__)

HANDLE_STORAGE_KEY = "fileSystemHandle"
STORE_TABLE = "handles"
SUGGESTED_FILE_NAME = "meterforge-readings.json"

GRANTED = "granted"
DENIED = "denied"
PROMPT = "prompt"


class FileHandle(Protocol):
    """Capability handle granting access to one file."""

    name: str

    def query_permission(self, mode: str) -> str:
        """Return 'granted', 'denied' or 'prompt' without prompting."""
        ...

    def request_permission(self, mode: str) -> str:
        """Ask for permission; only valid during a user action."""
        ...

    def read_text(self) -> str:
        """Read the file. Raises FileNotFoundError if it was deleted."""
        ...

    def write_text(self, content: str) -> None:
        """Replace the file content."""
        ...

    def to_record(self) -> dict:
        """Serializable form used to persist the handle."""
        ...


class FilePicker(Protocol):
    """Lets the user choose a file. Returning None means cancelled."""

    def pick_existing(self) -> Optional[FileHandle]:
        ...

    def pick_new(self, suggested_name: str) -> Optional[FileHandle]:
        ...


class LocalFileHandle:
    """FileHandle over a path on the local filesystem."""

    def __init__(self, path: Path):
        self.path = Path(path).expanduser().resolve()
        self.name = self.path.name

    @classmethod
    def from_record(cls, record: dict) -> "LocalFileHandle":
        return cls(Path(record["path"]))

    def to_record(self) -> dict:
        return {"kind": "local", "path": str(self.path)}

    def query_permission(self, mode: str) -> str:
        # Missing files surface as FileNotFoundError on access, not as denial
        if not self.path.exists():
            return GRANTED
        access = os.R_OK if mode == "read" else os.R_OK | os.W_OK
        return GRANTED if os.access(self.path, access) else DENIED

    def request_permission(self, mode: str) -> str:
        # Local paths have no interactive grant; report the effective state
        return self.query_permission(mode)

    def read_text(self) -> str:
        return self.path.read_text(encoding="utf-8")

    def write_text(self, content: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Write through a temporary file so a crash never truncates the data
        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, self.path)

    def __repr__(self) -> str:
        return f"LocalFileHandle({str(self.path)!r})"


class FileSystemAdapter:
    """Implementation of StorageAdapter for a single user-picked file."""

    mode = StorageMode.FILESYSTEM

    def __init__(
        self,
        handle_store: SQLiteKeyValueStore,
        handle_factory: Callable[[dict], FileHandle] = LocalFileHandle.from_record,
    ):
        """
        Initialize file system adapter.

        Args:
            handle_store: Side store that persists the file handle
            handle_factory: Rebuilds a handle from its persisted record
        """
        self.handle_store = handle_store
        self.handle_factory = handle_factory
        self.file_handle: Optional[FileHandle] = None

    def get_name(self) -> str:
        if self.file_handle:
            return f"File: {self.file_handle.name}"
        return "File system (not configured)"

    async def can_use(self) -> bool:
        return True

    async def init(self) -> AdapterStatus:
        """Restore the persisted handle once and report its permission state."""
        if self.file_handle is None:
            permission_state = await self._restore_file_handle()
            return AdapterStatus(
                initialized=self.file_handle is not None,
                configured=self.file_handle is not None,
                permission_state=permission_state,
            )

        return AdapterStatus(
            initialized=True,
            permission_state=await self.get_permission_state(),
        )

    async def create_new_file(self, picker: FilePicker) -> bool:
        """
        Let the user choose a location for a new data file.

        No data is written here; switching to this adapter writes it.

        Returns:
            False if the user cancelled
        """
        handle = await self._run(picker.pick_new, SUGGESTED_FILE_NAME)
        if handle is None:
            return False

        self.file_handle = handle
        await self._persist_file_handle()
        return True

    async def open_existing_file(self, picker: FilePicker) -> bool:
        """
        Let the user choose an existing data file.

        Returns:
            False if the user cancelled
        """
        handle = await self._run(picker.pick_existing)
        if handle is None:
            return False

        self.file_handle = handle
        await self._persist_file_handle()
        return True

    async def load(self) -> Dataset:
        handle = self._require_handle()
        await self._check_permission("read")

        try:
            content = await self._run(handle.read_text)
        except FileNotFoundError:
            logger.error(f"FileSystemAdapter: {handle.name} was deleted or is no longer available")
            raise NotFoundError(
                f"The file {handle.name} was deleted or is no longer available",
                backend=self.get_name(),
            )
        except PermissionError as e:
            raise PermissionDeniedError(f"No read permission for {handle.name}: {e}", backend=self.get_name())

        if not content.strip():
            logger.info(f"FileSystemAdapter: {handle.name} is empty, starting with an empty dataset")
            return Dataset.empty(self.mode)

        dataset = parse_dataset(content, self.get_name())
        log_dataset("loaded", self.get_name(), dataset)
        return dataset

    async def save(self, dataset: Dataset) -> None:
        handle = self._require_handle()
        await self._check_permission("readwrite")

        dataset.last_modified = utcnow()
        content = serialize_dataset(dataset, indent=2)
        try:
            await self._run(handle.write_text, content)
        except PermissionError as e:
            raise PermissionDeniedError(f"No write permission for {handle.name}: {e}", backend=self.get_name())
        except FileNotFoundError:
            raise NotFoundError(
                f"The location of {handle.name} is no longer available",
                backend=self.get_name(),
            )
        log_dataset("saved", self.get_name(), dataset)

    def has_file_handle(self) -> bool:
        return self.file_handle is not None

    async def get_permission_state(self) -> PermissionState:
        """Query read/write permission without prompting."""
        if self.file_handle is None:
            return PermissionState()

        try:
            read = await self._run(self.file_handle.query_permission, "read")
            write = await self._run(self.file_handle.query_permission, "readwrite")
        except OSError as e:
            logger.error(f"Error querying permission state: {e}")
            return PermissionState(read="unknown", write="unknown", file_name=self.file_handle.name)

        return PermissionState(read=read, write=write, file_name=self.file_handle.name)

    async def request_permission_from_gesture(self, mode: str = "readwrite") -> str:
        """
        Request permission. Must only be called from a user action.

        Returns:
            'granted', 'denied' or 'prompt'
        """
        if self.file_handle is None:
            raise NotConfiguredError("No file handle available", backend=self.get_name())
        return await self._run(self.file_handle.request_permission, mode)

    async def close_file(self) -> None:
        """Forget the current file and its persisted handle."""
        self.file_handle = None
        await self._run(self.handle_store.delete, HANDLE_STORAGE_KEY)

    def _require_handle(self) -> FileHandle:
        if self.file_handle is None:
            raise NotConfiguredError("No file selected", backend=self.get_name())
        return self.file_handle

    async def _check_permission(self, mode: str) -> None:
        state = await self._run(self.file_handle.query_permission, mode)
        if state != GRANTED:
            raise PermissionDeniedError(
                f"No {mode} permission for {self.file_handle.name} ({state})",
                backend=self.get_name(),
                state=state,
            )

    async def _persist_file_handle(self) -> None:
        try:
            await self._run(self.handle_store.put, HANDLE_STORAGE_KEY, self.file_handle.to_record())
        except OSError as e:
            # The handle still works for this session
            logger.warning(f"Could not persist file handle: {e}")

    async def _restore_file_handle(self) -> PermissionState:
        """Restore the persisted handle unless read permission was denied."""
        try:
            record = await self._run(self.handle_store.get, HANDLE_STORAGE_KEY)
            if not record:
                return PermissionState()

            handle = self.handle_factory(record)
            read = await self._run(handle.query_permission, "read")
            write = await self._run(handle.query_permission, "readwrite")
        except (OSError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Could not restore file handle: {e}")
            self.file_handle = None
            return PermissionState(read="unknown", write="unknown")

        state = PermissionState(read=read, write=write, file_name=handle.name)
        if read != DENIED:
            self.file_handle = handle
        return state

    async def _run(self, func, *args):
        """Run blocking file or handle-store calls off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)
