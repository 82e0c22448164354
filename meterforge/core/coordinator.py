"""
Storage Coordinator for MeterForge.

Orchestrates backend switches that need a user decision:
- Remote backend already holding data while local data exists (conflict)
- Persisted data file that no longer exists (file recovery)
- Persisted data file whose permission must be re-granted

Decisions are published as PendingDecision handles on `decisions`; the UI
takes them off the queue, inspects `context` and calls `resolve()` with one
of `options` or `cancel()`.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from meterforge.core.data_manager import DataManager
from meterforge.models import Dataset, StorageMode, utcnow
from meterforge.sync.adapter import StorageAdapterProtocol
from meterforge.sync.errors import NotConfiguredError, NotFoundError, PermissionDeniedError, StorageError
from meterforge.sync.filesystem_adapter import GRANTED, PROMPT, FileSystemAdapter, FilePicker

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"
    OFFLINE = "offline"
    PERMISSION_REQUIRED = "permission_required"
    PERMISSION_LOST = "permission_lost"


class DecisionKind(str, Enum):
    CONFLICT = "conflict"
    FILE_RECOVERY = "file_recovery"


class ConflictChoice(str, Enum):
    KEEP_LOCAL = "local"
    KEEP_REMOTE = "remote"


class RecoveryChoice(str, Enum):
    PICK_REPLACEMENT = "pick_replacement"
    CREATE_NEW = "create_new"
    USE_LOCAL = "use_local"


class PendingDecision:
    """
    A suspended operation waiting for a choice from the user.

    The coordinator awaits `wait()`; the UI calls `resolve()` or `cancel()`
    exactly once.
    """

    def __init__(self, kind: DecisionKind, options: Sequence[Enum], context: dict[str, Any]):
        self.kind = kind
        self.options = tuple(options)
        self.context = context
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, choice: Enum) -> None:
        """
        Resolve the decision.

        Raises:
            ValueError: If the choice is not one of the options
            RuntimeError: If the decision was already resolved
        """
        if choice not in self.options:
            raise ValueError(f"Invalid choice {choice!r} for {self.kind.value} decision")
        if self._future.done():
            raise RuntimeError(f"{self.kind.value} decision already resolved")
        self._future.set_result(choice)

    def cancel(self) -> None:
        """Abandon the operation; nothing changes."""
        if not self._future.done():
            self._future.set_result(None)

    async def wait(self) -> Optional[Enum]:
        """The chosen option, or None if cancelled."""
        return await self._future


class StorageCoordinator:
    """Drives backend switches and tracks sync status for the UI."""

    def __init__(
        self,
        data_manager: DataManager,
        local_factory: Callable[[], StorageAdapterProtocol],
        file_picker: Optional[FilePicker] = None,
    ):
        """
        Initialize the coordinator.

        Args:
            data_manager: The DataManager whose adapter is switched
            local_factory: Builds a local-database adapter
            file_picker: Lets the user choose files during recovery
        """
        self.data_manager = data_manager
        self.local_factory = local_factory
        self.file_picker = file_picker

        self.status = SyncStatus.IDLE
        self.last_sync_time: Optional[datetime] = None
        self.error: Optional[str] = None
        self.decisions: asyncio.Queue = asyncio.Queue()

        self.pending_file_adapter: Optional[FileSystemAdapter] = None
        self.lost_adapter: Optional[StorageAdapterProtocol] = None
        self._unsubscribe = data_manager.on_permission_error(self._on_permission_lost)

    # ===== REMOTE BACKENDS =====

    async def switch_to_remote(self, adapter: StorageAdapterProtocol) -> bool:
        """
        Switch to a cloud or WebDAV backend.

        If both sides hold data, a conflict decision is published and the
        switch waits for it.

        Returns:
            False if the user cancelled the conflict decision

        Raises:
            NotConfiguredError: If the backend cannot be used
            StorageError: If loading or saving fails
        """
        if not await adapter.can_use():
            raise NotConfiguredError(f"{adapter.get_name()} is not available", backend=adapter.get_name())

        previous_status = self.status
        self._set_status(SyncStatus.SYNCING)
        try:
            await adapter.init()
            remote = await adapter.load()
            local = self.data_manager.data

            if remote.has_data() and local is not None and local.has_data():
                choice = await self._ask(
                    DecisionKind.CONFLICT,
                    list(ConflictChoice),
                    {"local": local, "remote": remote, "backend": adapter.get_name()},
                )
                if choice is None:
                    logger.info("Conflict resolution cancelled; staying on current storage")
                    self._set_status(previous_status)
                    return False
                load_from_new = choice is ConflictChoice.KEEP_REMOTE
            else:
                # Only the remote side has data, or there is nothing to lose
                load_from_new = remote.has_data()

            await self.data_manager.switch_adapter(adapter, load_from_new=load_from_new, skip_init=True)
        except StorageError as e:
            self._fail(e)
            raise

        self._mark_synced()
        return True

    async def check_remote_conflict(self) -> bool:
        """
        Check whether the active WebDAV copy changed on the server.

        Returns:
            True if the remote copy is newer than the local one
        """
        adapter = self.data_manager.adapter
        data = self.data_manager.data
        if adapter.mode is not StorageMode.WEBDAV or data is None:
            return False

        result = await adapter.check_for_conflicts(data.last_modified)
        if result.has_conflict:
            logger.warning(f"Remote copy on {adapter.get_name()} is newer ({result.remote_modified})")
        return result.has_conflict

    async def sync_now(self) -> None:
        """Persist immediately, reflecting the outcome in the status."""
        self._set_status(SyncStatus.SYNCING)
        try:
            await self.data_manager.save_now()
        except StorageError as e:
            self._fail(e)
            raise
        if self.status is SyncStatus.SYNCING:
            self._mark_synced()

    def set_online(self, online: bool) -> None:
        """Track connectivity for remote backends."""
        if self.data_manager.adapter.mode not in (StorageMode.CLOUD, StorageMode.WEBDAV):
            return
        if not online:
            self._set_status(SyncStatus.OFFLINE)
        elif self.status is SyncStatus.OFFLINE:
            self._set_status(SyncStatus.IDLE)

    # ===== FILE BACKEND =====

    async def open_file_storage(self, adapter: FileSystemAdapter) -> bool:
        """
        Resume a previously selected data file.

        Returns:
            True if the file is now the active backend. False if permission
            must be granted first (status `permission_required`) or the
            file was missing and the user stayed on local storage.
        """
        status = await adapter.init()
        state = status.permission_state

        if not adapter.has_file_handle():
            if state is not None and state.file_name:
                raise PermissionDeniedError(
                    f"Access to {state.file_name} was denied", backend=adapter.get_name(), state=state.read
                )
            raise NotConfiguredError("No data file selected", backend=adapter.get_name())

        if state is not None and PROMPT in (state.read, state.write):
            logger.info(f"Permission required for {adapter.get_name()}")
            self.pending_file_adapter = adapter
            self._set_status(SyncStatus.PERMISSION_REQUIRED)
            return False

        return await self._activate_file(adapter, load_from_new=True)

    async def grant_file_permission(self) -> bool:
        """
        Request permission for the pending file. Call from a user action.

        Returns:
            True if access was granted and the file is now active
        """
        adapter = self.pending_file_adapter
        if adapter is None:
            raise NotConfiguredError("No file is waiting for permission")

        result = await adapter.request_permission_from_gesture("readwrite")
        if result != GRANTED:
            logger.warning(f"Permission for {adapter.get_name()} not granted ({result})")
            return False

        self.pending_file_adapter = None
        return await self._activate_file(adapter, load_from_new=True)

    async def use_new_file(self, adapter: FileSystemAdapter) -> bool:
        """Let the user choose a new file and move the current data there."""
        if not await adapter.create_new_file(self._require_picker()):
            return False
        return await self._activate_file(adapter, load_from_new=False)

    async def use_existing_file(self, adapter: FileSystemAdapter) -> bool:
        """Let the user choose an existing file and load its data."""
        if not await adapter.open_existing_file(self._require_picker()):
            return False
        return await self._activate_file(adapter, load_from_new=True)

    async def _activate_file(self, adapter: FileSystemAdapter, load_from_new: bool) -> bool:
        try:
            await self.data_manager.switch_adapter(adapter, load_from_new=load_from_new, skip_init=True)
        except NotFoundError as e:
            logger.error(f"Data file missing: {e}")
            return await self._recover_missing_file(adapter, e)
        except StorageError as e:
            self._fail(e)
            raise

        self.error = None
        self._set_status(SyncStatus.IDLE)
        return True

    async def _recover_missing_file(self, adapter: FileSystemAdapter, error: NotFoundError) -> bool:
        """Keep local storage active and ask how to continue without the file."""
        if self.data_manager.adapter.mode is not StorageMode.LOCAL:
            await self.data_manager.switch_adapter(self.local_factory())

        choice = await self._ask(
            DecisionKind.FILE_RECOVERY,
            list(RecoveryChoice),
            {"file_name": adapter.file_handle.name if adapter.file_handle else None, "error": error.message},
        )

        if choice is RecoveryChoice.PICK_REPLACEMENT:
            return await self.use_existing_file(adapter)
        if choice is RecoveryChoice.CREATE_NEW:
            return await self.use_new_file(adapter)
        if choice is RecoveryChoice.USE_LOCAL:
            await adapter.close_file()

        logger.info("Continuing with local storage")
        return False

    def _require_picker(self) -> FilePicker:
        if self.file_picker is None:
            raise NotConfiguredError("No file picker available")
        return self.file_picker

    # ===== LOCAL BACKEND =====

    async def switch_to_local(self, clear_data: bool = False) -> None:
        """
        Switch to the local database.

        Args:
            clear_data: Start from an empty dataset instead of moving the
                current data
        """
        local = self.local_factory()
        if clear_data:
            await local.init()
            await local.save(Dataset.empty(local.mode))
            await self.data_manager.switch_adapter(local, load_from_new=True, skip_init=True)
        else:
            await self.data_manager.switch_adapter(local)

        self.error = None
        self.lost_adapter = None
        self._set_status(SyncStatus.IDLE)

    # ===== STATUS =====

    def close(self) -> None:
        self._unsubscribe()

    def _on_permission_lost(self, error: PermissionDeniedError, adapter: StorageAdapterProtocol) -> None:
        self.lost_adapter = adapter
        self.error = error.message
        self._set_status(SyncStatus.PERMISSION_LOST)

    async def _ask(self, kind: DecisionKind, options: Sequence[Enum], context: dict[str, Any]) -> Optional[Enum]:
        decision = PendingDecision(kind, options, context)
        logger.info(f"Waiting for {kind.value} decision")
        await self.decisions.put(decision)
        return await decision.wait()

    def _mark_synced(self) -> None:
        self.error = None
        self.last_sync_time = utcnow()
        self._set_status(SyncStatus.SYNCED)

    def _fail(self, error: StorageError) -> None:
        self.error = error.message
        self._set_status(SyncStatus.ERROR)

    def _set_status(self, status: SyncStatus) -> None:
        if status is not self.status:
            logger.debug(f"Sync status: {self.status.value} -> {status.value}")
        self.status = status
