"""
Tests for DataManager - entity operations, autosave and adapter switching.
"""

import asyncio
import json

import pytest

from meterforge.core.data_manager import DataManager
from meterforge.core.validation import EntityInUseError, EntityNotFoundError, ValidationError
from meterforge.models import StorageMode
from meterforge.sync.errors import NetworkError, PermissionDeniedError


async def _settle(seconds: float = 0.1) -> None:
    """Let debounce timers and background saves finish."""
    await asyncio.sleep(seconds)


class TestInit:
    """Tests for loading the initial dataset."""

    @pytest.mark.asyncio
    async def test_init_loads_empty_template(self, manager, memory_adapter):
        await manager.init()

        assert memory_adapter.init_calls == 1
        assert manager.data.meters == []
        assert manager.data.settings.storage_mode is StorageMode.LOCAL

    @pytest.mark.asyncio
    async def test_init_notifies_listeners_once(self, manager):
        seen = []
        manager.on_change(seen.append)

        await manager.init()

        assert len(seen) == 1
        assert seen[0] is manager.data

    @pytest.mark.asyncio
    async def test_operations_require_init(self, manager):
        with pytest.raises(RuntimeError):
            manager.add_meter_type("Water", "m³")

    @pytest.mark.asyncio
    async def test_mismatched_mode_tag_is_corrected_and_saved(self, sample_document, make_adapter):
        adapter = make_adapter(StorageMode.CLOUD, stored=sample_document)
        manager = DataManager(adapter, autosave_delay=0.01)

        await manager.init()
        assert manager.data.settings.storage_mode is StorageMode.CLOUD

        await _settle()
        assert adapter.saves == 1
        assert adapter.stored["settings"]["storageMode"] == "cloud"


class TestEntityOperations:
    """Tests for CRUD on meter types, meters, readings, groups and tariffs."""

    @pytest.mark.asyncio
    async def test_add_meter_and_reading(self, manager):
        await manager.init()
        meter_type = manager.add_meter_type("Water", "m³", icon="💧")
        meter = manager.add_meter("Kitchen", meter_type.id, meter_number="W-1")
        reading = manager.add_reading(meter.id, 12.5, timestamp="2024-01-01T08:00:00Z", note="first")

        assert manager.get_meter(meter.id) is meter
        assert manager.get_readings_for_meter(meter.id) == [reading]
        assert reading.timestamp.year == 2024
        assert manager.get_meter_with_type(meter.id).type.unit == "m³"

    @pytest.mark.asyncio
    async def test_add_meter_with_unknown_type(self, manager):
        await manager.init()
        with pytest.raises(EntityNotFoundError):
            manager.add_meter("Kitchen", "missing")

    @pytest.mark.asyncio
    async def test_add_reading_for_unknown_meter(self, manager):
        await manager.init()
        with pytest.raises(EntityNotFoundError):
            manager.add_reading("missing", 1.0)

    @pytest.mark.asyncio
    async def test_update_unknown_ids(self, manager):
        await manager.init()
        with pytest.raises(EntityNotFoundError):
            manager.update_meter("missing", name="x")
        with pytest.raises(EntityNotFoundError):
            manager.update_reading("missing", value=1)
        with pytest.raises(EntityNotFoundError):
            manager.update_group("missing", name="x")
        with pytest.raises(EntityNotFoundError):
            manager.update_tariff("missing", name="x")
        with pytest.raises(EntityNotFoundError):
            manager.delete_meter("missing")

    @pytest.mark.asyncio
    async def test_update_meter_stamps_updated_at(self, manager):
        await manager.init()
        meter_type = manager.add_meter_type("Power", "kWh")
        meter = manager.add_meter("Main", meter_type.id)
        assert meter.updated_at is None

        updated = manager.update_meter(meter.id, location="Basement", id="ignored")

        assert updated.id == meter.id
        assert updated.location == "Basement"
        assert updated.updated_at is not None
        assert manager.get_meter(meter.id).location == "Basement"

    @pytest.mark.asyncio
    async def test_update_meter_rejects_dangling_references(self, manager):
        await manager.init()
        meter_type = manager.add_meter_type("Power", "kWh")
        group = manager.add_group("House")
        meter = manager.add_meter("Main", meter_type.id, group_id=group.id)

        with pytest.raises(EntityNotFoundError):
            manager.update_meter(meter.id, type_id="ghost")
        with pytest.raises(EntityNotFoundError):
            manager.update_meter(meter.id, group_id="ghost")
        with pytest.raises(EntityNotFoundError):
            manager.update_meter(meter.id, tariff_id="ghost")

        stored = manager.get_meter(meter.id)
        assert stored.type_id == meter_type.id
        assert stored.group_id == group.id
        assert stored.tariff_id is None
        assert stored.updated_at is None

    @pytest.mark.asyncio
    async def test_update_meter_can_clear_group(self, manager):
        await manager.init()
        meter_type = manager.add_meter_type("Power", "kWh")
        group = manager.add_group("House")
        meter = manager.add_meter("Main", meter_type.id, group_id=group.id)

        updated = manager.update_meter(meter.id, group_id=None)

        assert updated.group_id is None

    @pytest.mark.asyncio
    async def test_update_reading_rejects_unknown_meter(self, manager):
        await manager.init()
        meter_type = manager.add_meter_type("Power", "kWh")
        meter = manager.add_meter("Main", meter_type.id)
        reading = manager.add_reading(meter.id, 10)

        with pytest.raises(EntityNotFoundError):
            manager.update_reading(reading.id, meter_id="ghost")

        assert manager.get_readings_for_meter(meter.id)[0].meter_id == meter.id

    @pytest.mark.asyncio
    async def test_update_tariff_rejects_unknown_meter_type(self, manager):
        await manager.init()
        meter_type = manager.add_meter_type("Power", "kWh")
        tariff = manager.add_tariff("Basic", meter_type.id, 0.3)

        with pytest.raises(EntityNotFoundError):
            manager.update_tariff(tariff.id, meter_type_id="ghost")

        assert manager.get_tariffs()[0].meter_type_id == meter_type.id

    @pytest.mark.asyncio
    async def test_update_reading_coerces_value(self, manager):
        await manager.init()
        meter_type = manager.add_meter_type("Power", "kWh")
        meter = manager.add_meter("Main", meter_type.id)
        reading = manager.add_reading(meter.id, 10)

        updated = manager.update_reading(reading.id, value="12.5")

        assert updated.value == 12.5

    @pytest.mark.asyncio
    async def test_delete_meter_removes_only_its_readings(self, manager):
        await manager.init()
        meter_type = manager.add_meter_type("Water", "m³")
        doomed = manager.add_meter("Doomed", meter_type.id)
        kept = manager.add_meter("Kept", meter_type.id)
        manager.add_reading(doomed.id, 1)
        manager.add_reading(doomed.id, 2)
        kept_reading = manager.add_reading(kept.id, 5)

        manager.delete_meter(doomed.id)

        assert manager.get_meter(doomed.id) is None
        assert manager.data.readings == [kept_reading]

    @pytest.mark.asyncio
    async def test_delete_group_ungroups_meters(self, manager):
        await manager.init()
        meter_type = manager.add_meter_type("Water", "m³")
        group = manager.add_group("Flat A")
        meter = manager.add_meter("Kitchen", meter_type.id, group_id=group.id)
        assert manager.get_meters_in_group(group.id) == [meter]

        manager.delete_group(group.id)

        assert manager.get_meter(meter.id) is not None
        assert manager.get_meter(meter.id).group_id is None
        assert manager.get_ungrouped_meters() == [meter]
        assert manager.get_groups() == []

    @pytest.mark.asyncio
    async def test_delete_tariff_clears_meter_reference(self, manager):
        await manager.init()
        meter_type = manager.add_meter_type("Power", "kWh")
        tariff = manager.add_tariff("Standard", meter_type.id, 0.3)
        meter = manager.add_meter("Main", meter_type.id, tariff_id=tariff.id)

        manager.delete_tariff(tariff.id)

        assert manager.get_meter(meter.id).tariff_id is None
        assert manager.get_tariffs() == []

    @pytest.mark.asyncio
    async def test_delete_meter_type_in_use(self, manager):
        await manager.init()
        meter_type = manager.add_meter_type("Water", "m³")
        manager.add_meter("Kitchen", meter_type.id)

        with pytest.raises(EntityInUseError) as exc_info:
            manager.delete_meter_type(meter_type.id)
        assert exc_info.value.used_by == 1

    @pytest.mark.asyncio
    async def test_delete_unused_meter_type(self, manager):
        await manager.init()
        meter_type = manager.add_meter_type("Gas", "m³")

        manager.delete_meter_type(meter_type.id)

        assert manager.get_meter_types() == []

    @pytest.mark.asyncio
    async def test_readings_sorted_by_timestamp(self, manager):
        await manager.init()
        meter_type = manager.add_meter_type("Water", "m³")
        meter = manager.add_meter("Kitchen", meter_type.id)
        manager.add_reading(meter.id, 200, timestamp="2024-03-01")
        manager.add_reading(meter.id, 100, timestamp="2024-01-01")
        manager.add_reading(meter.id, 150, timestamp="2024-02-01")

        values = [r.value for r in manager.get_readings_for_meter(meter.id)]

        assert values == [100, 150, 200]
        assert manager.get_latest_reading(meter.id).value == 200

    @pytest.mark.asyncio
    async def test_update_settings(self, manager):
        await manager.init()

        settings = manager.update_settings(currency="CHF", theme="light")

        assert settings.currency == "CHF"
        assert manager.get_settings().theme == "light"

    @pytest.mark.asyncio
    async def test_storage_mode_cannot_be_set_directly(self, manager):
        await manager.init()
        with pytest.raises(ValidationError):
            manager.update_settings(storage_mode=StorageMode.CLOUD)


class TestAutosave:
    """Tests for debounced persistence."""

    @pytest.mark.asyncio
    async def test_burst_of_mutations_saves_once(self, manager, memory_adapter):
        await manager.init()
        meter_type = manager.add_meter_type("Water", "m³")
        meter = manager.add_meter("Kitchen", meter_type.id)
        for value in range(5):
            manager.add_reading(meter.id, value)
        assert memory_adapter.saves == 0

        await _settle()

        assert memory_adapter.saves == 1
        assert len(memory_adapter.stored["readings"]) == 5
        assert manager.is_dirty is False

    @pytest.mark.asyncio
    async def test_persisted_equals_in_memory(self, manager, memory_adapter):
        await manager.init()
        meter_type = manager.add_meter_type("Water", "m³")
        manager.add_meter("Kitchen", meter_type.id)

        await _settle()

        assert memory_adapter.stored == manager.data.to_document()

    @pytest.mark.asyncio
    async def test_adapter_receives_a_copy(self, manager, memory_adapter):
        captured = []
        original_save = memory_adapter.save

        async def capture(dataset):
            captured.append(dataset)
            await original_save(dataset)

        memory_adapter.save = capture
        await manager.init()
        manager.add_meter_type("Water", "m³")
        await manager.save_now()

        assert captured[0] is not manager.data
        assert captured[0].meter_types[0] is not manager.data.meter_types[0]

    @pytest.mark.asyncio
    async def test_save_now_updates_last_modified_and_notifies(self, manager):
        await manager.init()
        before = manager.data.last_modified
        seen = []
        manager.on_change(seen.append)

        manager.add_meter_type("Water", "m³")
        await manager.save_now()

        assert manager.data.last_modified >= before
        assert seen == [manager.data]

    @pytest.mark.asyncio
    async def test_concurrent_save_now_writes_once(self, memory_adapter):
        memory_adapter.save_delay = 0.02
        manager = DataManager(memory_adapter, autosave_delay=0.01)
        await manager.init()
        manager.add_meter_type("Water", "m³")

        await asyncio.gather(manager.save_now(), manager.save_now())

        assert memory_adapter.saves == 1
        assert len(memory_adapter.stored["meterTypes"]) == 1

    @pytest.mark.asyncio
    async def test_mutation_during_save_is_not_lost(self, memory_adapter):
        memory_adapter.save_delay = 0.03
        manager = DataManager(memory_adapter, autosave_delay=0.01)
        await manager.init()
        manager.add_meter_type("Water", "m³")

        save = asyncio.ensure_future(manager.save_now())
        await asyncio.sleep(0.005)
        manager.add_meter_type("Power", "kWh")
        await save
        await _settle(0.15)

        assert memory_adapter.saves == 2
        assert [t["name"] for t in memory_adapter.stored["meterTypes"]] == ["Water", "Power"]

    @pytest.mark.asyncio
    async def test_background_failure_is_recorded(self, manager, memory_adapter):
        await manager.init()
        memory_adapter.save_error = NetworkError("offline")
        manager.add_meter_type("Water", "m³")

        await _settle()

        assert isinstance(manager.last_save_error, NetworkError)
        assert manager.is_dirty is True

    @pytest.mark.asyncio
    async def test_save_now_propagates_errors(self, manager, memory_adapter):
        await manager.init()
        memory_adapter.save_error = NetworkError("offline")
        manager.add_meter_type("Water", "m³")

        with pytest.raises(NetworkError):
            await manager.save_now()
        assert manager.save_in_progress is False

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_save(self, manager, memory_adapter):
        await manager.init()

        def broken(_data):
            raise RuntimeError("boom")

        manager.on_change(broken)
        manager.add_meter_type("Water", "m³")
        await manager.save_now()

        assert memory_adapter.saves == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self, manager):
        await manager.init()
        seen = []
        unsubscribe = manager.on_change(seen.append)
        unsubscribe()

        await manager.save_now()

        assert seen == []

    @pytest.mark.asyncio
    async def test_aclose_flushes_pending_changes(self, manager, memory_adapter):
        await manager.init()
        manager.add_meter_type("Water", "m³")

        await manager.aclose()

        assert memory_adapter.saves == 1
        assert manager.is_dirty is False


class TestFlushOnUnload:
    """Tests for the synchronous last-chance save."""

    @pytest.mark.asyncio
    async def test_local_backend_is_flushed(self, manager, memory_adapter):
        await manager.init()
        manager.add_meter_type("Water", "m³")

        assert manager.flush_on_unload() is True
        assert memory_adapter.sync_saves == 1
        assert memory_adapter.stored["meterTypes"][0]["name"] == "Water"

    @pytest.mark.asyncio
    async def test_remote_backend_is_skipped(self, make_adapter):
        adapter = make_adapter(StorageMode.WEBDAV)
        manager = DataManager(adapter, autosave_delay=0.01)
        await manager.init()
        manager.add_meter_type("Water", "m³")

        assert manager.flush_on_unload() is False
        assert adapter.sync_saves == 0

    @pytest.mark.asyncio
    async def test_nothing_to_flush(self, manager, memory_adapter):
        await manager.init()
        assert manager.flush_on_unload() is False


class TestPermissionFallback:
    """Tests for moving data to the local database when permission is lost."""

    @pytest.mark.asyncio
    async def test_save_falls_back_to_local(self, fallback_adapter, make_adapter):
        file_adapter = make_adapter(StorageMode.FILESYSTEM)
        manager = DataManager(file_adapter, fallback_factory=lambda: fallback_adapter, autosave_delay=0.01)
        await manager.init()
        events = []
        manager.on_permission_error(lambda error, adapter: events.append((error, adapter)))

        manager.add_meter_type("Water", "m³")
        file_adapter.save_error = PermissionDeniedError("gone", state="prompt")
        await manager.save_now()

        assert manager.adapter is fallback_adapter
        assert fallback_adapter.stored["meterTypes"][0]["name"] == "Water"
        assert fallback_adapter.stored["settings"]["storageMode"] == "local"
        assert manager.data.settings.storage_mode is StorageMode.LOCAL
        assert len(events) == 1
        assert events[0][1] is file_adapter
        assert events[0][0].state == "prompt"

    @pytest.mark.asyncio
    async def test_without_fallback_error_propagates(self, make_adapter):
        file_adapter = make_adapter(StorageMode.FILESYSTEM)
        manager = DataManager(file_adapter, autosave_delay=0.01)
        await manager.init()
        file_adapter.save_error = PermissionDeniedError("gone")

        with pytest.raises(PermissionDeniedError):
            await manager.save_now()


class TestSwitchAdapter:
    """Tests for hot-swapping the storage adapter."""

    @pytest.mark.asyncio
    async def test_migrate_pushes_current_data(self, manager, make_adapter):
        await manager.init()
        meter_type = manager.add_meter_type("Water", "m³")
        meter = manager.add_meter("Kitchen", meter_type.id)
        manager.add_reading(meter.id, 100)
        before = manager.data.to_document()

        target = make_adapter(StorageMode.CLOUD)
        await manager.switch_adapter(target)
        reloaded = await target.load()
        loaded = reloaded.to_document()

        assert manager.adapter is target
        assert target.init_calls == 1
        assert loaded["settings"]["storageMode"] == "cloud"
        for key in ("meterTypes", "meters", "readings", "groups", "tariffs"):
            assert loaded[key] == before[key]
        assert manager.data.settings.storage_mode is StorageMode.CLOUD
        assert manager.data.last_modified == reloaded.last_modified

    @pytest.mark.asyncio
    async def test_mutation_during_migrate_is_not_lost(self, manager, memory_adapter, make_adapter):
        await manager.init()
        manager.add_meter_type("Water", "m³")
        await _settle()
        local_saves = memory_adapter.saves
        target = make_adapter(StorageMode.CLOUD, save_delay=0.05)

        switch = asyncio.ensure_future(manager.switch_adapter(target))
        await asyncio.sleep(0.01)
        manager.add_meter_type("Power", "kWh")
        await switch

        assert [t.name for t in manager.data.meter_types] == ["Water", "Power"]
        assert manager.data.settings.storage_mode is StorageMode.CLOUD
        assert manager.is_dirty is True

        await _settle(0.2)

        assert memory_adapter.saves == local_saves
        assert [t["name"] for t in target.stored["meterTypes"]] == ["Water", "Power"]
        assert manager.is_dirty is False

    @pytest.mark.asyncio
    async def test_migrate_ignores_existing_remote_data(self, manager, sample_document, make_adapter):
        await manager.init()
        manager.add_meter_type("Power", "kWh")
        target = make_adapter(StorageMode.WEBDAV, stored=sample_document)

        await manager.switch_adapter(target)

        assert [t["name"] for t in target.stored["meterTypes"]] == ["Power"]

    @pytest.mark.asyncio
    async def test_reload_discards_unsaved_edits(self, manager, sample_document, make_adapter):
        await manager.init()
        manager.add_meter_type("Unsaved", "x")
        target = make_adapter(StorageMode.CLOUD, stored=sample_document)

        await manager.switch_adapter(target, load_from_new=True)

        assert [t.name for t in manager.data.meter_types] == ["Water"]
        assert len(manager.data.readings) == 2
        assert manager.data.settings.storage_mode is StorageMode.CLOUD

    @pytest.mark.asyncio
    async def test_reload_persists_changed_mode_tag(self, manager, sample_document, make_adapter):
        await manager.init()
        target = make_adapter(StorageMode.CLOUD, stored=sample_document)

        await manager.switch_adapter(target, load_from_new=True)
        await _settle()

        assert target.saves == 1
        assert target.stored["settings"]["storageMode"] == "cloud"

    @pytest.mark.asyncio
    async def test_reload_with_matching_mode_does_not_save(self, manager, sample_document, make_adapter):
        await manager.init()
        target = make_adapter(StorageMode.LOCAL, stored=sample_document)

        await manager.switch_adapter(target, load_from_new=True)
        await _settle()

        assert target.saves == 0

    @pytest.mark.asyncio
    async def test_skip_init(self, manager, make_adapter):
        await manager.init()
        target = make_adapter(StorageMode.CLOUD)

        await manager.switch_adapter(target, skip_init=True)

        assert target.init_calls == 0

    @pytest.mark.asyncio
    async def test_pending_autosave_is_cancelled(self, manager, memory_adapter, make_adapter):
        await manager.init()
        manager.add_meter_type("Water", "m³")
        target = make_adapter(StorageMode.CLOUD)

        await manager.switch_adapter(target)
        await _settle()

        assert memory_adapter.saves == 0
        assert target.saves == 1

    @pytest.mark.asyncio
    async def test_failed_switch_keeps_current_adapter(self, manager, memory_adapter, make_adapter):
        await manager.init()
        target = make_adapter(StorageMode.CLOUD)
        target.save_error = NetworkError("offline")

        with pytest.raises(NetworkError):
            await manager.switch_adapter(target)

        assert manager.adapter is memory_adapter
        assert manager.data.settings.storage_mode is StorageMode.LOCAL


class TestBackup:
    """Tests for JSON export and import."""

    @pytest.mark.asyncio
    async def test_export_is_indented_json(self, manager):
        await manager.init()
        manager.add_meter_type("Water", "m³")

        text = manager.export_json()

        assert text.startswith("{\n  ")
        assert json.loads(text)["meterTypes"][0]["unit"] == "m³"

    @pytest.mark.asyncio
    async def test_import_replaces_and_saves(self, manager, memory_adapter, sample_document):
        await manager.init()
        sample_document["settings"]["storageMode"] = "cloud"

        dataset = await manager.import_json(json.dumps(sample_document))

        assert manager.data is dataset
        assert len(dataset.readings) == 2
        assert dataset.settings.storage_mode is StorageMode.LOCAL
        assert memory_adapter.saves == 1

    @pytest.mark.asyncio
    async def test_import_waits_for_running_save(self, manager, memory_adapter, sample_document):
        await manager.init()
        memory_adapter.save_delay = 0.05
        manager.add_meter_type("Power", "kWh")

        save = asyncio.ensure_future(manager.save_now())
        await asyncio.sleep(0.01)
        await manager.import_json(json.dumps(sample_document))
        await save

        assert memory_adapter.saves == 2
        assert [t["name"] for t in memory_adapter.stored["meterTypes"]] == ["Water"]
        assert len(memory_adapter.stored["readings"]) == 2
        assert manager.is_dirty is False

    @pytest.mark.asyncio
    async def test_import_rejects_missing_keys(self, manager):
        await manager.init()
        with pytest.raises(ValidationError):
            await manager.import_json(json.dumps({"version": "1.0", "meters": []}))

    @pytest.mark.asyncio
    async def test_import_rejects_invalid_json(self, manager):
        await manager.init()
        with pytest.raises(ValidationError):
            await manager.import_json("{not json")

    @pytest.mark.asyncio
    async def test_import_rejects_dangling_references(self, manager, sample_document):
        await manager.init()
        sample_document["readings"][0]["meterId"] = "ghost"

        with pytest.raises(ValidationError):
            await manager.import_json(json.dumps(sample_document))
        assert manager.data.readings == []
