"""
Data models for MeterForge.

These Pydantic models define the dataset that every storage backend
persists. Python attribute names are snake_case; the persisted JSON
document keeps the camelCase keys used by the web client.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

DATASET_VERSION = "1.0"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a client-side entity id."""
    return str(uuid4())


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_utc_datetime(value) -> datetime:
    """Coerce a date, datetime or ISO string into an aware UTC datetime."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    raise TypeError(f"Cannot interpret {value!r} as a timestamp")


class StorageMode(str, Enum):
    """Backends that can own the dataset."""

    LOCAL = "local"            # Local SQLite database
    FILESYSTEM = "filesystem"  # A single JSON file picked by the user
    WEBDAV = "webdav"          # Document on a WebDAV server
    CLOUD = "cloud"            # Sync API gateway

    @classmethod
    def _missing_(cls, value):
        # Datasets written by the browser client tag local storage "indexeddb"
        if value == "indexeddb":
            return cls.LOCAL
        return None


class DatasetModel(BaseModel):
    """Base for persisted entities: camelCase on the wire, extras kept."""

    class Config:
        populate_by_name = True
        extra = "allow"

    @field_validator("*", mode="after")
    @classmethod
    def _normalize_datetimes(cls, value):
        if isinstance(value, datetime):
            return ensure_utc(value)
        return value


class MeterType(DatasetModel):
    """Kind of meter (water, electricity, gas...) and its unit."""

    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1)
    unit: str
    icon: str = "📊"
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")


class Meter(DatasetModel):
    """A physical meter being read."""

    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1)
    type_id: str = Field(..., alias="typeId")
    meter_number: str = Field(default="", alias="meterNumber")
    location: str = ""
    is_continuous: bool = Field(default=False, alias="isContinuous")
    group_id: Optional[str] = Field(default=None, alias="groupId")
    tariff_id: Optional[str] = Field(default=None, alias="tariffId")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class Reading(DatasetModel):
    """A single meter reading."""

    id: str = Field(default_factory=new_id)
    meter_id: str = Field(..., alias="meterId")
    value: float
    timestamp: datetime = Field(default_factory=utcnow)
    note: str = ""
    photo: Optional[str] = None


class Group(DatasetModel):
    """User-defined group of meters (a flat, a house...)."""

    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1)
    description: str = ""
    icon: str = "🏠"
    color: str = "#3b82f6"
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")


class Tariff(DatasetModel):
    """Price per unit for a meter type, valid within [valid_from, valid_to]."""

    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1)
    meter_type_id: str = Field(..., alias="meterTypeId")
    price_per_unit: float = Field(..., alias="pricePerUnit")
    base_charge: float = Field(default=0.0, alias="baseCharge")
    valid_from: date = Field(default_factory=lambda: utcnow().date(), alias="validFrom")
    valid_to: Optional[date] = Field(default=None, alias="validTo")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")

    @field_validator("valid_from", "valid_to", mode="before")
    @classmethod
    def _date_from_timestamp(cls, value):
        # The web client may store full ISO timestamps here
        if isinstance(value, str) and "T" in value:
            return to_utc_datetime(value).date()
        if isinstance(value, datetime):
            return value.date()
        return value

    def is_active_on(self, day: date) -> bool:
        """Check whether the tariff applies on the given day."""
        if day < self.valid_from:
            return False
        return self.valid_to is None or day <= self.valid_to


class Settings(DatasetModel):
    """User settings stored alongside the data."""

    storage_mode: StorageMode = Field(default=StorageMode.LOCAL, alias="storageMode")
    currency: str = "EUR"
    theme: str = "dark"
    dashboard_widgets: list = Field(default_factory=list, alias="dashboardWidgets")

    @field_validator("storage_mode", mode="before")
    @classmethod
    def _legacy_storage_mode(cls, value):
        if isinstance(value, str):
            return StorageMode(value)
        return value


class Dataset(DatasetModel):
    """The single aggregate persisted by every storage backend."""

    version: str = DATASET_VERSION
    meter_types: list[MeterType] = Field(default_factory=list, alias="meterTypes")
    meters: list[Meter] = Field(default_factory=list)
    readings: list[Reading] = Field(default_factory=list)
    groups: list[Group] = Field(default_factory=list)
    tariffs: list[Tariff] = Field(default_factory=list)
    settings: Settings = Field(default_factory=Settings)
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    last_modified: datetime = Field(default_factory=utcnow, alias="lastModified")

    @field_validator("meter_types", "meters", "readings", "groups", "tariffs", "settings", mode="before")
    @classmethod
    def _null_as_default(cls, value, info):
        # Older documents and the cloud gateway may send null for absent parts
        if value is None:
            return {} if info.field_name == "settings" else []
        return value

    @classmethod
    def empty(cls, mode: StorageMode = StorageMode.LOCAL) -> "Dataset":
        """Empty dataset template for a backend that was never written."""
        return cls(settings=Settings(storage_mode=mode))

    def has_data(self) -> bool:
        """True when the dataset holds any meter or reading."""
        return bool(self.meters) or bool(self.readings)

    def to_document(self) -> dict[str, Any]:
        """JSON-compatible document with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)

    def summary(self) -> dict[str, int]:
        """Entity counts, used in log lines and status output."""
        return {
            "meter_types": len(self.meter_types),
            "meters": len(self.meters),
            "readings": len(self.readings),
        }


# ============================================================================
# Query results
# ============================================================================

class ConsumptionResult(BaseModel):
    """Consumption of a meter between its first and last reading in range."""

    consumption: float = 0.0
    readings: list[Reading] = Field(default_factory=list)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class CostResult(BaseModel):
    """Cost of a meter's consumption under its assigned tariff."""

    cost: float = 0.0
    usage_cost: float = 0.0
    base_charge: float = 0.0
    consumption: float = 0.0
    tariff: Optional[Tariff] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    currency: str = "EUR"
    error: Optional[str] = None


class MonthlyBreakdown(BaseModel):
    """Consumption and cost attributed to one calendar month."""

    month: int
    year: int
    month_name: str
    consumption: float = 0.0
    cost: float = 0.0
    readings_count: int = 0


class MeterWithType(BaseModel):
    """A meter joined with its meter type."""

    meter: Meter
    type: Optional[MeterType] = None


# ============================================================================
# Sync models
# ============================================================================

class ConflictCheck(BaseModel):
    """Outcome of comparing a local timestamp against a remote copy."""

    has_conflict: bool = False
    remote_modified: Optional[datetime] = None
    remote_data: Optional[Dataset] = None


class SyncMetadata(BaseModel):
    """Metadata reported by the cloud sync gateway."""

    class Config:
        populate_by_name = True
        extra = "allow"

    last_updated: Optional[int] = Field(default=None, alias="lastUpdated")  # epoch ms
    meters_count: int = Field(default=0, alias="metersCount")
    readings_count: int = Field(default=0, alias="readingsCount")
    size: int = 0


class PermissionState(BaseModel):
    """Read/write permission of a file handle, queried without prompting."""

    read: str = "no-handle"   # granted | denied | prompt | no-handle | unknown
    write: str = "no-handle"
    file_name: Optional[str] = None

    @property
    def granted(self) -> bool:
        return self.read == "granted" and self.write == "granted"


class AdapterStatus(BaseModel):
    """Readiness descriptor returned by adapter init()."""

    initialized: bool = False
    configured: bool = True
    permission_state: Optional[PermissionState] = None
    connection_error: Optional[str] = None
