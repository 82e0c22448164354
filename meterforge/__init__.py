"""
MeterForge - Utility meter tracking with pluggable storage.

Keeps meters, readings, groups and tariffs in a single dataset that can
live in a local database, a JSON file, on a WebDAV server or behind the
cloud sync gateway.
"""

from meterforge.models import Dataset, Meter, MeterType, Reading, Group, Tariff, StorageMode
from meterforge.core.data_manager import DataManager
from meterforge.config import Config

__version__ = "1.0.0"
__all__ = [
    "Dataset",
    "Meter",
    "MeterType",
    "Reading",
    "Group",
    "Tariff",
    "StorageMode",
    "DataManager",
    "Config",
]
