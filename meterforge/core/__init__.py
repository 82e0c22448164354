"""Core components for MeterForge."""

from meterforge.core.data_manager import DataManager
from meterforge.core.validation import ValidationLayer, ValidationError, EntityNotFoundError, EntityInUseError
from meterforge.core.coordinator import StorageCoordinator, PendingDecision, ConflictChoice, RecoveryChoice, SyncStatus

__all__ = [
    "DataManager",
    "ValidationLayer",
    "ValidationError",
    "EntityNotFoundError",
    "EntityInUseError",
    "StorageCoordinator",
    "PendingDecision",
    "ConflictChoice",
    "RecoveryChoice",
    "SyncStatus",
]
