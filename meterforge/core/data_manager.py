"""
Data Manager for MeterForge.

Central component owning the in-memory dataset:
- Entity operations (meter types, meters, readings, groups, tariffs, settings)
- Debounced autosave through the active storage adapter
- Change and permission-error notifications
- Hot-swapping the storage adapter (migrate or reload)
- Falling back to the local database when file permission is lost
"""

import asyncio
import calendar
import json
import logging
import math
from datetime import datetime
from typing import Callable, Optional

from meterforge.core.validation import (
    EntityInUseError,
    EntityNotFoundError,
    ValidationError,
    ValidationLayer,
)
from meterforge.models import (
    ConsumptionResult,
    CostResult,
    Dataset,
    Group,
    Meter,
    MeterType,
    MeterWithType,
    MonthlyBreakdown,
    Reading,
    Settings,
    StorageMode,
    Tariff,
    to_utc_datetime,
    utcnow,
)
from meterforge.sync.adapter import StorageAdapterProtocol, dataset_from_document, serialize_dataset
from meterforge.sync.errors import PermissionDeniedError

logger = logging.getLogger(__name__)

DEFAULT_AUTOSAVE_DELAY = 0.1  # seconds

ChangeListener = Callable[[Dataset], None]
PermissionListener = Callable[[PermissionDeniedError, StorageAdapterProtocol], None]


class DataManager:
    """
    Owns the dataset and persists it through the active adapter.

    Entity operations mutate the dataset synchronously and schedule a
    debounced save; only the last mutation of a burst triggers a write.
    Adapters always receive a deep copy of the dataset.
    """

    def __init__(
        self,
        adapter: StorageAdapterProtocol,
        fallback_factory: Optional[Callable[[], StorageAdapterProtocol]] = None,
        autosave_delay: float = DEFAULT_AUTOSAVE_DELAY,
    ):
        """
        Initialize the data manager.

        Args:
            adapter: Storage adapter that owns the data initially
            fallback_factory: Builds the local-database adapter used when
                the active adapter loses file permission
            autosave_delay: Debounce window in seconds
        """
        self.adapter = adapter
        self.fallback_factory = fallback_factory
        self.autosave_delay = autosave_delay
        self.data: Optional[Dataset] = None
        self.last_save_error: Optional[Exception] = None

        self._listeners: set[ChangeListener] = set()
        self._permission_listeners: set[PermissionListener] = set()
        self._autosave_handle: Optional[asyncio.TimerHandle] = None
        self._autosave_task: Optional[asyncio.Task] = None
        self._save_in_progress = False
        self._save_idle = asyncio.Event()
        self._save_idle.set()
        # Bumped on every mutation; compared after a save to detect edits made meanwhile
        self._revision = 0
        self._saved_revision = 0

    async def init(self) -> None:
        """Initialize the adapter and load its dataset."""
        await self.adapter.init()
        dataset = await self.adapter.load()
        self._adopt_loaded(self.adapter, dataset)
        self._notify_listeners()

    # ===== ADAPTER SWITCHING =====

    async def switch_adapter(
        self,
        new_adapter: StorageAdapterProtocol,
        load_from_new: bool = False,
        skip_init: bool = False,
    ) -> None:
        """
        Switch to a different storage adapter.

        Args:
            new_adapter: The adapter to switch to
            load_from_new: If True, discard the in-memory dataset and load
                from the new adapter; otherwise write the current dataset
                to it
            skip_init: If True, the adapter was already initialized
        """
        # Saves are held off for the whole switch; save_now() no-ops meanwhile
        await self._wait_for_idle()
        self._save_in_progress = True
        self._save_idle.clear()

        try:
            if not skip_init:
                await new_adapter.init()

            if load_from_new:
                dataset = await new_adapter.load()
                self._adopt_loaded(new_adapter, dataset)
                logger.info(f"Switched to {new_adapter.get_name()} (loaded its data)")
            else:
                data = self._require_data()
                revision = self._revision
                exported = data.model_copy(deep=True)
                exported.settings.storage_mode = new_adapter.mode
                await new_adapter.save(exported)

                # Keep the live dataset: edits made during the upload stay in it
                self.adapter = new_adapter
                data.settings.storage_mode = new_adapter.mode
                data.last_modified = exported.last_modified
                self._saved_revision = revision
                logger.info(f"Switched to {new_adapter.get_name()} (migrated current data)")
        finally:
            self._save_in_progress = False
            self._save_idle.set()

        self._notify_listeners()

        if self.is_dirty:
            logger.debug("Changes made during the switch, scheduling a follow-up save")
            self._schedule_autosave()

    def _adopt_loaded(self, adapter: StorageAdapterProtocol, dataset: Dataset) -> None:
        """Make a freshly loaded dataset current, stamping the storage mode."""
        mode_changed = dataset.settings.storage_mode != adapter.mode
        dataset.settings.storage_mode = adapter.mode

        self.adapter = adapter
        self.data = dataset
        self._revision += 1
        self._saved_revision = self._revision

        if mode_changed:
            # Persist the corrected tag
            self._touch()

    # ===== METER TYPES =====

    def add_meter_type(self, name: str, unit: str, icon: str = "📊") -> MeterType:
        """Add a new meter type."""
        meter_type = MeterType(name=name, unit=unit, icon=icon)
        self._require_data().meter_types.append(meter_type)
        self._touch()
        return meter_type

    def update_meter_type(self, meter_type_id: str, **updates) -> MeterType:
        return self._update_entity("meter_types", "Meter type", meter_type_id, updates)

    def delete_meter_type(self, meter_type_id: str) -> None:
        """
        Delete a meter type.

        Raises:
            EntityInUseError: If meters still use this type
        """
        data = self._require_data()
        self._index_of(data.meter_types, "Meter type", meter_type_id)

        used_by = sum(1 for m in data.meters if m.type_id == meter_type_id)
        if used_by:
            raise EntityInUseError("Meter type", meter_type_id, used_by)

        data.meter_types = [t for t in data.meter_types if t.id != meter_type_id]
        self._touch()

    def get_meter_types(self) -> list[MeterType]:
        return self._require_data().meter_types

    def get_meter_type(self, meter_type_id: str) -> Optional[MeterType]:
        return next((t for t in self._require_data().meter_types if t.id == meter_type_id), None)

    # ===== METERS =====

    def add_meter(
        self,
        name: str,
        type_id: str,
        meter_number: str = "",
        location: str = "",
        is_continuous: bool = False,
        group_id: Optional[str] = None,
        tariff_id: Optional[str] = None,
    ) -> Meter:
        """
        Add a new meter.

        Raises:
            EntityNotFoundError: If the type, group or tariff does not exist
        """
        data = self._require_data()
        self._index_of(data.meter_types, "Meter type", type_id)
        if group_id is not None:
            self._index_of(data.groups, "Group", group_id)
        if tariff_id is not None:
            self._index_of(data.tariffs, "Tariff", tariff_id)

        meter = Meter(
            name=name,
            type_id=type_id,
            meter_number=meter_number,
            location=location,
            is_continuous=is_continuous,
            group_id=group_id,
            tariff_id=tariff_id,
        )
        data.meters.append(meter)
        self._touch()
        return meter

    def update_meter(self, meter_id: str, **updates) -> Meter:
        """
        Update meter fields and stamp `updated_at`.

        Raises:
            EntityNotFoundError: If the meter, or a type, group or tariff it
                would now point at, does not exist
        """
        data = self._require_data()
        if "type_id" in updates:
            self._index_of(data.meter_types, "Meter type", updates["type_id"])
        if updates.get("group_id") is not None:
            self._index_of(data.groups, "Group", updates["group_id"])
        if updates.get("tariff_id") is not None:
            self._index_of(data.tariffs, "Tariff", updates["tariff_id"])

        updates["updated_at"] = utcnow()
        return self._update_entity("meters", "Meter", meter_id, updates)

    def delete_meter(self, meter_id: str) -> None:
        """Delete a meter and all its readings."""
        data = self._require_data()
        self._index_of(data.meters, "Meter", meter_id)

        data.meters = [m for m in data.meters if m.id != meter_id]
        data.readings = [r for r in data.readings if r.meter_id != meter_id]
        self._touch()

    def get_meters(self) -> list[Meter]:
        return self._require_data().meters

    def get_meter(self, meter_id: str) -> Optional[Meter]:
        return next((m for m in self._require_data().meters if m.id == meter_id), None)

    def get_meter_with_type(self, meter_id: str) -> Optional[MeterWithType]:
        meter = self.get_meter(meter_id)
        if meter is None:
            return None
        return MeterWithType(meter=meter, type=self.get_meter_type(meter.type_id))

    def meters_with_types(self) -> list[MeterWithType]:
        """All meters joined with their meter type."""
        types = {t.id: t for t in self._require_data().meter_types}
        return [MeterWithType(meter=m, type=types.get(m.type_id)) for m in self.get_meters()]

    def get_meters_in_group(self, group_id: str) -> list[Meter]:
        return [m for m in self.get_meters() if m.group_id == group_id]

    def get_ungrouped_meters(self) -> list[Meter]:
        return [m for m in self.get_meters() if not m.group_id]

    # ===== READINGS =====

    def add_reading(
        self,
        meter_id: str,
        value: float,
        timestamp=None,
        note: str = "",
        photo: Optional[str] = None,
    ) -> Reading:
        """
        Add a reading to an existing meter.

        Args:
            meter_id: The meter being read
            value: Meter value
            timestamp: datetime, date or ISO string; defaults to now
            note: Free-text note
            photo: Optional photo reference (data URL or path)
        """
        data = self._require_data()
        self._index_of(data.meters, "Meter", meter_id)

        reading = Reading(
            meter_id=meter_id,
            value=value,
            timestamp=to_utc_datetime(timestamp) if timestamp is not None else utcnow(),
            note=note,
            photo=photo,
        )
        data.readings.append(reading)
        self._touch()
        return reading

    def update_reading(self, reading_id: str, **updates) -> Reading:
        if "meter_id" in updates:
            self._index_of(self._require_data().meters, "Meter", updates["meter_id"])
        if "timestamp" in updates and updates["timestamp"] is not None:
            updates["timestamp"] = to_utc_datetime(updates["timestamp"])
        return self._update_entity("readings", "Reading", reading_id, updates)

    def delete_reading(self, reading_id: str) -> None:
        data = self._require_data()
        self._index_of(data.readings, "Reading", reading_id)
        data.readings = [r for r in data.readings if r.id != reading_id]
        self._touch()

    def get_readings_for_meter(self, meter_id: str) -> list[Reading]:
        """All readings of a meter, oldest first."""
        readings = [r for r in self._require_data().readings if r.meter_id == meter_id]
        return sorted(readings, key=lambda r: r.timestamp)

    def get_latest_reading(self, meter_id: str) -> Optional[Reading]:
        readings = self.get_readings_for_meter(meter_id)
        return readings[-1] if readings else None

    # ===== GROUPS =====

    def add_group(
        self,
        name: str,
        description: str = "",
        icon: str = "🏠",
        color: str = "#3b82f6",
    ) -> Group:
        group = Group(name=name, description=description, icon=icon, color=color)
        self._require_data().groups.append(group)
        self._touch()
        return group

    def update_group(self, group_id: str, **updates) -> Group:
        return self._update_entity("groups", "Group", group_id, updates)

    def delete_group(self, group_id: str) -> None:
        """Delete a group; its meters become ungrouped."""
        data = self._require_data()
        self._index_of(data.groups, "Group", group_id)

        for meter in data.meters:
            if meter.group_id == group_id:
                meter.group_id = None

        data.groups = [g for g in data.groups if g.id != group_id]
        self._touch()

    def get_groups(self) -> list[Group]:
        return self._require_data().groups

    def get_group(self, group_id: str) -> Optional[Group]:
        return next((g for g in self._require_data().groups if g.id == group_id), None)

    # ===== TARIFFS =====

    def add_tariff(
        self,
        name: str,
        meter_type_id: str,
        price_per_unit: float,
        base_charge: float = 0.0,
        valid_from=None,
        valid_to=None,
    ) -> Tariff:
        """
        Add a tariff for a meter type.

        Args:
            name: Display name
            meter_type_id: The meter type the tariff prices
            price_per_unit: Price per unit of consumption
            base_charge: Monthly base charge
            valid_from: First day the tariff applies (defaults to today)
            valid_to: Last day the tariff applies (open-ended if None)
        """
        data = self._require_data()
        self._index_of(data.meter_types, "Meter type", meter_type_id)

        fields = {
            "name": name,
            "meter_type_id": meter_type_id,
            "price_per_unit": price_per_unit,
            "base_charge": base_charge,
            "valid_to": valid_to,
        }
        if valid_from is not None:
            fields["valid_from"] = valid_from

        tariff = Tariff.model_validate(fields)
        data.tariffs.append(tariff)
        self._touch()
        return tariff

    def update_tariff(self, tariff_id: str, **updates) -> Tariff:
        if "meter_type_id" in updates:
            self._index_of(self._require_data().meter_types, "Meter type", updates["meter_type_id"])
        return self._update_entity("tariffs", "Tariff", tariff_id, updates)

    def delete_tariff(self, tariff_id: str) -> None:
        """Delete a tariff; meters using it lose their tariff."""
        data = self._require_data()
        self._index_of(data.tariffs, "Tariff", tariff_id)

        for meter in data.meters:
            if meter.tariff_id == tariff_id:
                meter.tariff_id = None

        data.tariffs = [t for t in data.tariffs if t.id != tariff_id]
        self._touch()

    def get_tariffs(self) -> list[Tariff]:
        return self._require_data().tariffs

    def get_tariff(self, tariff_id: str) -> Optional[Tariff]:
        return next((t for t in self._require_data().tariffs if t.id == tariff_id), None)

    def get_tariffs_for_meter_type(self, meter_type_id: str) -> list[Tariff]:
        return [t for t in self.get_tariffs() if t.meter_type_id == meter_type_id]

    def get_active_tariff_for_meter(self, meter_id: str, at=None) -> Optional[Tariff]:
        """The meter's tariff if it is valid on the given day (default today)."""
        meter = self.get_meter(meter_id)
        if meter is None or not meter.tariff_id:
            return None

        tariff = self.get_tariff(meter.tariff_id)
        if tariff is None:
            return None

        day = to_utc_datetime(at).date() if at is not None else utcnow().date()
        return tariff if tariff.is_active_on(day) else None

    # ===== CALCULATIONS =====

    def calculate_consumption(self, meter_id: str, start=None, end=None) -> ConsumptionResult:
        """
        Consumption between the first and last reading within a range.

        Args:
            meter_id: The meter
            start: Optional inclusive lower bound (date, datetime or ISO string)
            end: Optional inclusive upper bound
        """
        readings = self.get_readings_for_meter(meter_id)
        if start is not None:
            start_at = to_utc_datetime(start)
            readings = [r for r in readings if r.timestamp >= start_at]
        if end is not None:
            end_at = to_utc_datetime(end)
            readings = [r for r in readings if r.timestamp <= end_at]

        if len(readings) < 2:
            return ConsumptionResult(readings=readings)

        first, last = readings[0], readings[-1]
        return ConsumptionResult(
            consumption=last.value - first.value,
            readings=readings,
            start_date=first.timestamp,
            end_date=last.timestamp,
        )

    def calculate_cost(self, meter_id: str, start=None, end=None) -> CostResult:
        """
        Cost of a meter's consumption under its assigned tariff.

        The monthly base charge is pro-rated over the covered days
        (base_charge / 30 per day).
        """
        currency = self._require_data().settings.currency
        meter = self.get_meter(meter_id)
        if meter is None:
            return CostResult(currency=currency, error="Meter not found")

        tariff = self.get_tariff(meter.tariff_id) if meter.tariff_id else None
        if tariff is None:
            return CostResult(currency=currency, error="No tariff assigned")

        result = self.calculate_consumption(meter_id, start, end)
        usage_cost = result.consumption * tariff.price_per_unit

        base_charge = 0.0
        if tariff.base_charge > 0 and result.start_date and result.end_date:
            days = math.ceil((result.end_date - result.start_date).total_seconds() / 86400)
            base_charge = tariff.base_charge / 30 * days

        return CostResult(
            cost=usage_cost + base_charge,
            usage_cost=usage_cost,
            base_charge=base_charge,
            consumption=result.consumption,
            tariff=tariff,
            start_date=result.start_date,
            end_date=result.end_date,
            currency=currency,
        )

    def get_monthly_breakdown(self, meter_id: str, year: Optional[int] = None) -> list[MonthlyBreakdown]:
        """
        Consumption and cost per month of a year.

        Consumption between consecutive readings is attributed to the month
        of the later reading. Negative deltas (meter resets) are skipped.
        """
        year = year or utcnow().year
        readings = self.get_readings_for_meter(meter_id)
        meter = self.get_meter(meter_id)
        tariff = self.get_tariff(meter.tariff_id) if meter and meter.tariff_id else None

        months = [
            MonthlyBreakdown(month=m, year=year, month_name=calendar.month_abbr[m])
            for m in range(1, 13)
        ]

        for reading in readings:
            if reading.timestamp.year == year:
                months[reading.timestamp.month - 1].readings_count += 1

        for previous, current in zip(readings, readings[1:]):
            if current.timestamp.year != year:
                continue
            consumption = current.value - previous.value
            if consumption < 0:
                continue

            month = months[current.timestamp.month - 1]
            month.consumption += consumption
            if tariff:
                month.cost += consumption * tariff.price_per_unit

        if tariff and tariff.base_charge > 0:
            for month in months:
                if month.consumption > 0:
                    month.cost += tariff.base_charge

        return months

    # ===== SETTINGS =====

    def update_settings(self, **updates) -> Settings:
        """
        Update user settings.

        Raises:
            ValidationError: If the update tries to set the storage mode,
                which always follows the active adapter
        """
        if "storage_mode" in updates:
            raise ValidationError("storage_mode follows the active storage backend", field="storage_mode")

        data = self._require_data()
        data.settings = Settings.model_validate({**data.settings.model_dump(), **updates})
        self._touch()
        return data.settings

    def get_settings(self) -> Settings:
        return self._require_data().settings

    # ===== EXPORT / IMPORT =====

    def export_json(self) -> str:
        """Backup of the whole dataset as indented JSON."""
        return serialize_dataset(self._require_data(), indent=2)

    async def import_json(self, text: str) -> Dataset:
        """
        Replace the dataset with a backup and persist it immediately.

        Raises:
            ValidationError: If the document is malformed or inconsistent
        """
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Backup is not valid JSON: {e}")

        ValidationLayer.validate_import_document(raw)
        dataset = dataset_from_document(raw, "backup")

        problems = ValidationLayer.check_references(dataset)
        if problems:
            raise ValidationError(f"Backup is inconsistent: {problems[0]}")

        # A save in flight would make save_now() below a no-op
        await self._wait_for_idle()
        dataset.settings.storage_mode = self.adapter.mode
        self.data = dataset
        self._revision += 1
        logger.info(f"Imported backup with {len(dataset.meters)} meters and {len(dataset.readings)} readings")
        await self.save_now()
        return dataset

    # ===== LISTENERS =====

    def on_change(self, callback: ChangeListener) -> Callable[[], None]:
        """
        Register a change listener.

        Returns:
            Function that unsubscribes the listener
        """
        self._listeners.add(callback)
        return lambda: self._listeners.discard(callback)

    def on_permission_error(self, callback: PermissionListener) -> Callable[[], None]:
        """
        Register a listener for lost file permission.

        Called after the data was moved to the local fallback, with the
        error and the adapter that lost permission.
        """
        self._permission_listeners.add(callback)
        return lambda: self._permission_listeners.discard(callback)

    def _notify_listeners(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self.data)
            except Exception:
                logger.exception("Error in change listener")

    def _notify_permission_listeners(self, error: PermissionDeniedError, adapter: StorageAdapterProtocol) -> None:
        for callback in list(self._permission_listeners):
            try:
                callback(error, adapter)
            except Exception:
                logger.exception("Error in permission-error listener")

    # ===== SAVING =====

    @property
    def is_dirty(self) -> bool:
        """True when mutations have not been persisted yet."""
        return self._revision != self._saved_revision

    @property
    def save_in_progress(self) -> bool:
        return self._save_in_progress

    def _touch(self) -> None:
        """Record a mutation and schedule the debounced save."""
        self._revision += 1
        self._schedule_autosave()

    def _schedule_autosave(self) -> None:
        self._cancel_autosave()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; changes are saved on the next save_now()")
            return
        self._autosave_handle = loop.call_later(self.autosave_delay, self._fire_autosave)

    def _cancel_autosave(self) -> None:
        if self._autosave_handle is not None:
            self._autosave_handle.cancel()
            self._autosave_handle = None

    def _fire_autosave(self) -> None:
        self._autosave_handle = None
        self._autosave_task = asyncio.ensure_future(self._autosave())

    async def _autosave(self) -> None:
        try:
            await self.save_now()
        except Exception as e:
            # Nobody awaits the timer; keep the error for the UI
            self.last_save_error = e
            logger.error(f"Autosave to {self.adapter.get_name()} failed: {e}")

    async def save_now(self) -> None:
        """
        Save immediately, bypassing the debounce.

        A call made while a save is in flight does nothing; edits made
        during that save are picked up by a follow-up autosave. Lost file
        permission is handled by moving the data to the local fallback.
        """
        if self._save_in_progress:
            logger.debug("Save already in progress, skipping")
            return

        data = self._require_data()
        self._save_in_progress = True
        self._save_idle.clear()
        self._cancel_autosave()
        revision = self._revision
        snapshot = data.model_copy(deep=True)

        try:
            try:
                await self.adapter.save(snapshot)
            except PermissionDeniedError as e:
                if self.fallback_factory is None:
                    raise
                await self._fall_back_to_local(snapshot, e)

            data.last_modified = snapshot.last_modified
            data.settings.storage_mode = snapshot.settings.storage_mode
            if self.data is data:
                self._saved_revision = revision
            self.last_save_error = None
        finally:
            self._save_in_progress = False
            self._save_idle.set()

        self._notify_listeners()

        if self._revision != revision:
            self._schedule_autosave()

    async def _fall_back_to_local(self, snapshot: Dataset, error: PermissionDeniedError) -> None:
        """Persist to the local database and make it the active adapter."""
        failed_adapter = self.adapter
        logger.warning(
            f"Permission lost for {failed_adapter.get_name()}; saving to the local database instead"
        )

        fallback = self.fallback_factory()
        await fallback.init()
        snapshot.settings.storage_mode = fallback.mode
        await fallback.save(snapshot)

        self.adapter = fallback
        self._notify_permission_listeners(error, failed_adapter)

    def flush_on_unload(self) -> bool:
        """
        Best-effort synchronous save at shutdown.

        Only the local database can be written synchronously; other
        backends are skipped.

        Returns:
            True if pending changes were written
        """
        self._cancel_autosave()
        if self.data is None or not self.is_dirty:
            return False

        if self.adapter.mode is not StorageMode.LOCAL:
            logger.warning(f"Unsaved changes for {self.adapter.get_name()} cannot be flushed synchronously")
            return False

        revision = self._revision
        snapshot = self.data.model_copy(deep=True)
        try:
            self.adapter.save_sync(snapshot)
        except Exception as e:
            logger.error(f"Error in synchronous save: {e}")
            return False

        self.data.last_modified = snapshot.last_modified
        self._saved_revision = revision
        return True

    async def aclose(self) -> None:
        """Cancel the pending autosave and persist outstanding changes."""
        await self._wait_for_idle()
        if self.data is not None and self.is_dirty:
            await self.save_now()

    async def _wait_for_idle(self) -> None:
        """Cancel the pending autosave and wait out any save in flight."""
        self._cancel_autosave()
        while self._save_in_progress:
            await self._save_idle.wait()

    # ===== UTILITY =====

    def get_storage_name(self) -> str:
        return self.adapter.get_name()

    def get_all_data(self) -> Dataset:
        return self._require_data()

    def _require_data(self) -> Dataset:
        if self.data is None:
            raise RuntimeError("DataManager is not initialized; call init() first")
        return self.data

    @staticmethod
    def _index_of(collection: list, entity: str, entity_id: str) -> int:
        for index, item in enumerate(collection):
            if item.id == entity_id:
                return index
        raise EntityNotFoundError(entity, entity_id)

    def _update_entity(self, collection_name: str, entity: str, entity_id: str, updates: dict):
        """Apply field updates to an entity, revalidating it."""
        collection = getattr(self._require_data(), collection_name)
        index = self._index_of(collection, entity, entity_id)
        updates.pop("id", None)

        current = collection[index]
        updated = type(current).model_validate({**current.model_dump(), **updates})
        collection[index] = updated
        self._touch()
        return updated
