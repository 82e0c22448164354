"""
Validation layer for MeterForge.

Errors raised by DataManager entity operations, and validation of
imported dataset documents.
"""

import logging
from typing import Any, Optional

from meterforge.models import Dataset

logger = logging.getLogger(__name__)

REQUIRED_IMPORT_KEYS = ("version", "meters", "readings")


class ValidationError(Exception):
    """Raised when validation fails."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)


class EntityNotFoundError(ValidationError):
    """An entity operation referenced an unknown id."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}", field="id")


class EntityInUseError(ValidationError):
    """An entity cannot be deleted while others still reference it."""

    def __init__(self, entity: str, entity_id: str, used_by: int):
        self.entity = entity
        self.entity_id = entity_id
        self.used_by = used_by
        super().__init__(f"{entity} {entity_id} is still used by {used_by} meter(s)", field="id")


class ValidationLayer:
    """Validates whole-dataset documents before they replace the live data."""

    @staticmethod
    def validate_import_document(raw: Any) -> None:
        """
        Check the basic shape of a backup document.

        Raises:
            ValidationError: If required keys are missing
        """
        if not isinstance(raw, dict):
            raise ValidationError("Backup must be a JSON object")

        missing = [key for key in REQUIRED_IMPORT_KEYS if key not in raw]
        if missing:
            raise ValidationError(
                f"Invalid backup format, missing: {', '.join(missing)}",
                field=missing[0],
            )

    @staticmethod
    def check_references(dataset: Dataset) -> list[str]:
        """
        Find dangling references in a dataset.

        Returns:
            Human-readable problems; empty when the dataset is consistent
        """
        problems = []
        type_ids = {t.id for t in dataset.meter_types}
        meter_ids = {m.id for m in dataset.meters}
        group_ids = {g.id for g in dataset.groups}
        tariff_ids = {t.id for t in dataset.tariffs}

        for collection in ("meter_types", "meters", "readings", "groups", "tariffs"):
            ids = [item.id for item in getattr(dataset, collection)]
            if len(ids) != len(set(ids)):
                problems.append(f"Duplicate ids in {collection}")

        for meter in dataset.meters:
            if meter.type_id not in type_ids:
                problems.append(f"Meter {meter.id} references unknown type {meter.type_id}")
            if meter.group_id and meter.group_id not in group_ids:
                problems.append(f"Meter {meter.id} references unknown group {meter.group_id}")
            if meter.tariff_id and meter.tariff_id not in tariff_ids:
                problems.append(f"Meter {meter.id} references unknown tariff {meter.tariff_id}")

        for reading in dataset.readings:
            if reading.meter_id not in meter_ids:
                problems.append(f"Reading {reading.id} references unknown meter {reading.meter_id}")

        if problems:
            logger.debug(f"Dataset has {len(problems)} reference problem(s)")
        return problems
