"""
Tests for dataset models and the wire format.
"""

from datetime import date, datetime, timezone

import pytest

from meterforge.models import (
    Dataset,
    Meter,
    Reading,
    Settings,
    StorageMode,
    Tariff,
    to_utc_datetime,
)


class TestStorageMode:
    """Tests for the storage mode tag."""

    def test_values(self):
        assert StorageMode("local") is StorageMode.LOCAL
        assert StorageMode("webdav") is StorageMode.WEBDAV

    def test_browser_client_tag_maps_to_local(self):
        """Datasets written by the web client call local storage 'indexeddb'."""
        assert StorageMode("indexeddb") is StorageMode.LOCAL
        assert Settings.model_validate({"storageMode": "indexeddb"}).storage_mode is StorageMode.LOCAL

    def test_unknown_mode_rejected(self):
        with pytest.raises(ValueError):
            StorageMode("ftp")


class TestDataset:
    """Tests for the Dataset aggregate."""

    def test_empty_template(self):
        dataset = Dataset.empty(StorageMode.WEBDAV)

        assert dataset.version == "1.0"
        assert dataset.meters == []
        assert dataset.readings == []
        assert dataset.settings.storage_mode is StorageMode.WEBDAV
        assert dataset.settings.currency == "EUR"
        assert dataset.has_data() is False

    def test_parses_wire_format(self, sample_document):
        dataset = Dataset.model_validate(sample_document)

        assert dataset.meter_types[0].unit == "m³"
        assert dataset.meters[0].type_id == "mt1"
        assert dataset.readings[1].value == 150.0
        assert dataset.readings[0].timestamp == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert dataset.has_data() is True

    def test_document_uses_camel_case(self, sample_document):
        document = Dataset.model_validate(sample_document).to_document()

        assert "meterTypes" in document
        assert "lastModified" in document
        assert document["meters"][0]["typeId"] == "mt1"
        assert document["settings"]["storageMode"] == "local"

    def test_null_collections_become_empty(self):
        dataset = Dataset.model_validate({"version": "1.0", "meters": None, "readings": None, "settings": None})

        assert dataset.meters == []
        assert dataset.readings == []
        assert dataset.settings.theme == "dark"

    def test_missing_fields_get_defaults(self):
        dataset = Dataset.model_validate({"meters": [], "readings": []})

        assert dataset.groups == []
        assert dataset.tariffs == []
        assert dataset.settings.storage_mode is StorageMode.LOCAL

    def test_unknown_fields_are_preserved(self, sample_document):
        sample_document["meters"][0]["color"] = "#ff0000"
        sample_document["customField"] = 42

        document = Dataset.model_validate(sample_document).to_document()

        assert document["meters"][0]["color"] == "#ff0000"
        assert document["customField"] == 42

    def test_naive_timestamps_are_utc(self):
        reading = Reading(meter_id="m1", value=1, timestamp=datetime(2024, 3, 1, 12, 0))
        assert reading.timestamp.tzinfo is not None
        assert reading.timestamp.utcoffset().total_seconds() == 0

    def test_summary(self, sample_document):
        summary = Dataset.model_validate(sample_document).summary()
        assert summary == {"meter_types": 1, "meters": 1, "readings": 2}


class TestEntities:
    """Tests for entity defaults."""

    def test_ids_are_generated(self):
        first = Meter(name="A", type_id="mt1")
        second = Meter(name="B", type_id="mt1")
        assert first.id != second.id

    def test_meter_defaults(self):
        meter = Meter(name="A", type_id="mt1")
        assert meter.group_id is None
        assert meter.tariff_id is None
        assert meter.is_continuous is False

    def test_empty_name_rejected(self):
        with pytest.raises(ValueError):
            Meter(name="", type_id="mt1")

    def test_tariff_accepts_iso_timestamps(self):
        tariff = Tariff.model_validate({
            "name": "Standard",
            "meterTypeId": "mt1",
            "pricePerUnit": 2.5,
            "validFrom": "2024-01-01T00:00:00.000Z",
        })
        assert tariff.valid_from == date(2024, 1, 1)
        assert tariff.base_charge == 0

    def test_tariff_validity(self):
        tariff = Tariff(
            name="2024",
            meter_type_id="mt1",
            price_per_unit=1.0,
            valid_from=date(2024, 1, 1),
            valid_to=date(2024, 12, 31),
        )
        assert tariff.is_active_on(date(2024, 6, 1))
        assert tariff.is_active_on(date(2024, 12, 31))
        assert not tariff.is_active_on(date(2023, 12, 31))
        assert not tariff.is_active_on(date(2025, 1, 1))

    def test_open_ended_tariff(self):
        tariff = Tariff(name="Open", meter_type_id="mt1", price_per_unit=1.0, valid_from=date(2024, 1, 1))
        assert tariff.is_active_on(date(2030, 1, 1))


class TestTimestamps:
    """Tests for timestamp coercion."""

    def test_iso_string_with_z(self):
        assert to_utc_datetime("2024-02-01T00:00:00Z") == datetime(2024, 2, 1, tzinfo=timezone.utc)

    def test_plain_date(self):
        assert to_utc_datetime(date(2024, 2, 1)) == datetime(2024, 2, 1, tzinfo=timezone.utc)

    def test_date_string(self):
        assert to_utc_datetime("2024-02-01") == datetime(2024, 2, 1, tzinfo=timezone.utc)

    def test_invalid_value(self):
        with pytest.raises(TypeError):
            to_utc_datetime(12345)
