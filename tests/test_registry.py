from datetime import timedelta

import pytest

from errors import DeviceNotFound, StoreUnavailable, ValidationError
from models import DeviceSettings, utcnow
from registry import default_device_name


def test_sighting_creates_device_once(registry):
    first = registry.upsert_on_sighting("ESP32-123456")
    second = registry.upsert_on_sighting("ESP32-123456")

    assert len(registry.list_devices()) == 1
    assert first.name == "Device 123456"
    assert first.is_online and first.last_seen is not None
    assert first.settings.moisture_threshold_low == 30
    assert first.settings.moisture_threshold_high == 55
    assert second.last_seen >= first.last_seen


def test_default_name_for_short_ids():
    assert default_device_name("A1") == "Device A1"


def test_sighting_of_registered_device_keeps_its_settings(registry):
    device = registry.save_device("dev1", "Huerta", None, DeviceSettings(moisture_threshold_low=40))
    assert not device.is_online and device.last_seen is None

    seen = registry.upsert_on_sighting("dev1")
    stored = registry.find_by_device_id("dev1")
    assert seen.is_online and stored.is_online
    assert stored.last_seen is not None
    assert stored.name == "Huerta"
    assert stored.settings.moisture_threshold_low == 40
    assert stored.created_at == device.created_at


def test_mark_seen_sets_online(registry):
    device = registry.save_device("dev1", "Huerta")
    assert not device.is_online and device.last_seen is None

    seen = registry.mark_seen(device)
    assert seen.is_online and seen.last_seen is not None
    assert registry.find_by_device_id("dev1").is_online


def test_mark_seen_after_concurrent_delete_does_not_fail(registry):
    device = registry.save_device("dev1", "Huerta")
    registry.delete("dev1")

    seen = registry.mark_seen(device)

    assert seen.name == "Huerta" and seen.is_online
    assert len(registry.list_devices()) == 1


@pytest.mark.parametrize("low, high", [(60, 40), (50, 50), (-1, 40), (30, 101)])
def test_invalid_thresholds_leave_device_unchanged(registry, low, high):
    registry.upsert_on_sighting("dev1")

    with pytest.raises(ValidationError):
        registry.set_thresholds("dev1", low, high)

    settings = registry.find_by_device_id("dev1").settings
    assert (settings.moisture_threshold_low, settings.moisture_threshold_high) == (30, 55)


def test_set_thresholds(registry):
    registry.upsert_on_sighting("dev1")
    device = registry.set_thresholds("dev1", 25, 70)
    assert (device.settings.moisture_threshold_low, device.settings.moisture_threshold_high) == (25, 70)

    with pytest.raises(DeviceNotFound):
        registry.set_thresholds("ghost", 25, 70)


def test_set_mode(registry):
    registry.upsert_on_sighting("dev1")
    assert registry.set_mode("dev1", False).auto_mode is False
    assert registry.find_by_device_id("dev1").auto_mode is False

    with pytest.raises(DeviceNotFound):
        registry.set_mode("ghost", True)


def test_set_notifications(registry):
    registry.upsert_on_sighting("dev1")
    assert registry.set_notifications("dev1", False).settings.notifications_enabled is False


def test_delete(registry):
    registry.upsert_on_sighting("dev1")
    registry.delete("dev1")
    assert registry.find_by_device_id("dev1") is None

    with pytest.raises(DeviceNotFound):
        registry.delete("dev1")


def test_save_device_creates_and_updates(registry):
    created = registry.save_device("dev1", "Huerta", "Patio")
    assert created.location == "Patio"

    updated = registry.save_device(
        "dev1",
        "Huerta norte",
        settings=DeviceSettings(moisture_threshold_low=20, moisture_threshold_high=60),
    )
    assert updated.name == "Huerta norte"
    assert updated.location == "Patio"
    assert updated.settings.moisture_threshold_high == 60

    with pytest.raises(ValidationError):
        registry.save_device(
            "dev1",
            "Huerta",
            settings=DeviceSettings(moisture_threshold_low=70, moisture_threshold_high=60),
        )


def test_mark_offline_before(registry):
    registry.upsert_on_sighting("dev1")

    assert registry.mark_offline_before(utcnow() - timedelta(minutes=5)) == []

    stale = registry.mark_offline_before(utcnow() + timedelta(minutes=5))
    assert [d.device_id for d in stale] == ["dev1"]
    assert not registry.find_by_device_id("dev1").is_online
    assert registry.mark_offline_before(utcnow() + timedelta(minutes=5)) == []


def test_storage_failure_is_reported(registry, tmp_path):
    registry.db.db_path = str(tmp_path / "missing" / "test.db")
    with pytest.raises(StoreUnavailable):
        registry.upsert_on_sighting("dev1")
