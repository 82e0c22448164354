"""
Storage Adapter Protocol for MeterForge.

Defines the interface for storage backends (local database, file,
WebDAV, cloud API). Each adapter declares its own `mode` tag; callers
never infer the backend from the adapter's class.
"""

import json
import logging
from typing import Protocol, Any

from pydantic import ValidationError as PydanticValidationError

from meterforge.models import Dataset, StorageMode
from meterforge.sync.errors import InvalidFormatError

logger = logging.getLogger(__name__)


class StorageAdapterProtocol(Protocol):
    """Interface for storage backends."""

    mode: StorageMode

    async def can_use(self) -> bool:
        """Capability probe. Must not raise and must not change state."""
        ...

    async def init(self) -> Any:
        """
        Prepare the backend.

        Idempotent: once ready, repeated calls short-circuit. Never
        destroys stored data.

        Returns:
            A backend-specific readiness descriptor
        """
        ...

    async def load(self) -> Dataset:
        """
        Load the stored dataset.

        Returns:
            The dataset, or the empty template if nothing was ever saved
        """
        ...

    async def save(self, dataset: Dataset) -> None:
        """
        Overwrite the stored dataset.

        Stamps `dataset.last_modified` before writing. The caller hands
        over a copy; adapters must not keep a reference to it.
        """
        ...

    def get_name(self) -> str:
        """Human-readable backend identity (display only)."""
        ...


def parse_dataset(content: str, source: str = "storage") -> Dataset:
    """
    Parse a stored JSON document into a Dataset.

    Args:
        content: Raw JSON text
        source: Backend description used in the error message

    Raises:
        InvalidFormatError: If the text is not a valid dataset document
    """
    try:
        raw = json.loads(content)
    except json.JSONDecodeError as e:
        raise InvalidFormatError(f"Invalid JSON in {source}: {e}", backend=source)

    return dataset_from_document(raw, source)


def dataset_from_document(raw: Any, source: str = "storage") -> Dataset:
    """Validate an already-decoded document."""
    if not isinstance(raw, dict):
        raise InvalidFormatError(f"Invalid dataset format in {source}", backend=source)

    try:
        return Dataset.model_validate(raw)
    except PydanticValidationError as e:
        raise InvalidFormatError(f"Invalid dataset format in {source}: {e}", backend=source)


def serialize_dataset(dataset: Dataset, indent: int = 2) -> str:
    """Serialize a dataset the way it is written to human-visible files."""
    return json.dumps(dataset.to_document(), indent=indent, ensure_ascii=False)


def log_dataset(action: str, backend: str, dataset: Dataset) -> None:
    """Log the entity counts of a loaded or saved dataset."""
    counts = dataset.summary()
    logger.info(
        f"{backend}: {action} dataset "
        f"(meters={counts['meters']}, readings={counts['readings']}, "
        f"meter_types={counts['meter_types']})"
    )
