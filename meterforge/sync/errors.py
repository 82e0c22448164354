"""
Storage error taxonomy for MeterForge.

Every backend surfaces failures through these types so the coordination
layer and the UI can react uniformly. Each error names the recovery
action the user should be offered.
"""

from enum import Enum
from typing import Optional


class RecoveryAction(str, Enum):
    """What the UI should offer the user when an error surfaces."""

    NONE = "none"
    RETRY = "retry"
    REAUTHENTICATE = "reauthenticate"
    REGRANT_PERMISSION = "regrant_permission"
    PICK_FILE = "pick_file"
    CONFIGURE = "configure"
    FREE_SPACE = "free_space"


class StorageError(Exception):
    """Base class for all persistence failures."""

    recovery: RecoveryAction = RecoveryAction.NONE
    retryable: bool = False

    def __init__(self, message: str, backend: Optional[str] = None):
        self.message = message
        self.backend = backend
        super().__init__(message)


class NotConfiguredError(StorageError):
    """The backend has no file, credentials or client yet."""

    recovery = RecoveryAction.CONFIGURE


class PermissionDeniedError(StorageError):
    """File permission is not granted (filesystem only)."""

    recovery = RecoveryAction.REGRANT_PERMISSION

    def __init__(self, message: str, backend: Optional[str] = None, state: str = "denied"):
        self.state = state
        super().__init__(message, backend)


class NotFoundError(StorageError):
    """The persisted file or handle no longer exists."""

    recovery = RecoveryAction.PICK_FILE


class AuthenticationFailedError(StorageError):
    """The server rejected the credentials (401/403)."""

    recovery = RecoveryAction.REAUTHENTICATE


class NetworkError(StorageError):
    """No response from the server."""

    recovery = RecoveryAction.RETRY
    retryable = True


class ServerError(StorageError):
    """The server answered with an error status."""

    recovery = RecoveryAction.RETRY

    def __init__(self, message: str, backend: Optional[str] = None, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, backend)

    @property
    def retryable(self) -> bool:
        return self.status_code in RETRYABLE_STATUS_CODES


class InvalidFormatError(StorageError):
    """The stored document is not a valid dataset."""

    recovery = RecoveryAction.PICK_FILE


class StorageExhaustedError(StorageError):
    """The server has no space left (507)."""

    recovery = RecoveryAction.FREE_SPACE


RETRYABLE_STATUS_CODES = frozenset({500, 502, 503, 504})
