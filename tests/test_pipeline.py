import asyncio
from datetime import timedelta

from errors import DeviceNotFound, StoreUnavailable
from fanout import DEVICE_ALERT, DEVICE_STATUS, SENSOR_DATA
from models import TopicKind, utcnow
from notifications import AlertNotifier
from pipeline import IngestionPipeline, IngestState
from readings import ReadingStore
from registry import DeviceRegistry

from conftest import FakeGateway


def ingest(pipeline, kind, payload):
    async def scenario():
        state = await pipeline.ingest_message(kind, payload)
        await pipeline.notifier.drain()
        return state

    return asyncio.run(scenario())


def test_sensor_reading_with_failed_dht(pipeline, readings, registry, gateway, subscriber):
    state = ingest(
        pipeline,
        TopicKind.PRIMARY_SENSOR,
        {"device_id": "A1", "soil_moisture": 15, "temperature": -999, "humidity": -999, "pump": True},
    )

    assert state == IngestState.DONE
    [stored] = readings.query("A1")
    assert (stored.soil_moisture, stored.temperature, stored.humidity) == (15, 0, 0)
    assert stored.dht_error is True and stored.pump_status is True

    assert registry.find_by_device_id("A1").is_online

    [alert] = gateway.sent
    assert alert.device_id == "A1"
    assert alert.device_name == "Device A1"
    assert len(alert.violations) == 1

    [event] = subscriber.events(SENSOR_DATA)
    assert event["data"]["deviceId"] == "A1"
    assert event["data"]["soilMoisture"] == 15
    assert event["data"]["dhtError"] is True


def test_raw_bytes_on_alternate_topic(pipeline, readings, gateway, subscriber):
    body = b'{"id": "ESP32-AB12CD", "moisture": 45, "temp": 22, "humid": 60, "pumpStatus": false}'
    assert ingest(pipeline, TopicKind.ALTERNATE_SENSOR, body) == IngestState.DONE

    assert readings.count("ESP32-AB12CD") == 1
    assert gateway.sent == []
    assert len(subscriber.events(SENSOR_DATA)) == 1


def test_repeat_sightings_create_one_device(pipeline, registry):
    for _ in range(3):
        ingest(pipeline, TopicKind.PRIMARY_SENSOR, {"device_id": "new-1", "soil_moisture": 40})
    assert [d.device_id for d in registry.list_devices()] == ["new-1"]


def test_malformed_payload_is_rejected(pipeline, readings, subscriber):
    assert ingest(pipeline, TopicKind.PRIMARY_SENSOR, b"{oops") == IngestState.REJECTED
    assert ingest(pipeline, TopicKind.PRIMARY_SENSOR, {"temperature": "x"}) == IngestState.REJECTED
    assert readings.count() == 0
    assert subscriber.messages == []


def test_out_of_range_reading_is_rejected_at_store(pipeline, readings, registry, subscriber):
    state = ingest(pipeline, TopicKind.PRIMARY_SENSOR, {"device_id": "A1", "soil_moisture": 150})

    assert state == IngestState.REJECTED
    assert readings.count() == 0
    assert registry.find_by_device_id("A1") is None
    assert subscriber.messages == []


def test_registry_failure_keeps_reading_and_fanout(readings, fanout, notifier, gateway, subscriber, db):
    class BrokenRegistry(DeviceRegistry):
        def upsert_on_sighting(self, device_id, default_name=None):
            raise StoreUnavailable("database is locked")

    pipeline = IngestionPipeline(BrokenRegistry(db), readings, fanout, notifier)
    state = ingest(pipeline, TopicKind.PRIMARY_SENSOR, {"device_id": "A1", "soil_moisture": 5})

    assert state == IngestState.DONE
    assert readings.count("A1") == 1
    assert gateway.sent == []
    assert len(subscriber.events(SENSOR_DATA)) == 1


def test_device_deleted_during_sighting_keeps_reading_and_fanout(
    readings, fanout, notifier, subscriber, db
):
    class DeletedMidSighting(DeviceRegistry):
        def upsert_on_sighting(self, device_id, default_name=None):
            super().upsert_on_sighting(device_id)
            self.delete(device_id)
            raise DeviceNotFound(device_id)

    registry = DeletedMidSighting(db)
    pipeline = IngestionPipeline(registry, readings, fanout, notifier)
    state = ingest(pipeline, TopicKind.PRIMARY_SENSOR, {"device_id": "A1", "soil_moisture": 40})

    assert state == IngestState.DONE
    assert readings.count("A1") == 1
    assert registry.find_by_device_id("A1") is None
    assert len(subscriber.events(SENSOR_DATA)) == 1


def test_store_failure_rejects_before_sighting(registry, fanout, notifier, gateway, subscriber, db):
    class BrokenStore(ReadingStore):
        def append(self, reading):
            raise StoreUnavailable("disk I/O error")

    pipeline = IngestionPipeline(registry, BrokenStore(db), fanout, notifier)
    state = ingest(pipeline, TopicKind.PRIMARY_SENSOR, {"device_id": "A1", "soil_moisture": 5})

    assert state == IngestState.REJECTED
    assert registry.find_by_device_id("A1") is None
    assert gateway.sent == []
    assert subscriber.messages == []


def test_gateway_failure_is_contained(registry, readings, fanout, subscriber):
    notifier = AlertNotifier(FakeGateway(fail=True))
    pipeline = IngestionPipeline(registry, readings, fanout, notifier)

    state = ingest(pipeline, TopicKind.PRIMARY_SENSOR, {"device_id": "A1", "soil_moisture": 5})

    assert state == IngestState.DONE
    assert notifier.pending == 0
    assert len(subscriber.events(SENSOR_DATA)) == 1


def test_notifications_disabled(pipeline, registry, gateway):
    registry.upsert_on_sighting("A1")
    registry.set_notifications("A1", False)

    ingest(pipeline, TopicKind.PRIMARY_SENSOR, {"device_id": "A1", "soil_moisture": 5})
    assert gateway.sent == []


def test_status_connected_updates_existing_device(pipeline, registry, readings, subscriber):
    registry.save_device("A1", "Huerta")

    state = ingest(pipeline, TopicKind.STATUS, {"device_id": "A1", "status": "connected"})

    assert state == IngestState.DONE
    device = registry.find_by_device_id("A1")
    assert device.is_online and device.last_seen is not None
    assert readings.count() == 0
    assert subscriber.messages == [
        {"event": DEVICE_STATUS, "data": {"deviceId": "A1", "isOnline": True}}
    ]


def test_status_sighting_provisions_unknown_device(pipeline, registry):
    ingest(pipeline, TopicKind.STATUS, {"device_id": "B7", "status": "connected"})
    assert registry.find_by_device_id("B7").name == "Device B7"


def test_other_statuses_are_ignored(pipeline, registry, subscriber):
    state = ingest(pipeline, TopicKind.STATUS, {"device_id": "A1", "status": "sleeping"})
    assert state == IngestState.DONE
    assert registry.find_by_device_id("A1") is None
    assert subscriber.messages == []


def test_device_alert_goes_to_gateway_and_dashboard(pipeline, registry, readings, gateway, subscriber):
    registry.save_device("A1", "Huerta")

    state = ingest(
        pipeline,
        TopicKind.ALERT,
        {"deviceId": "A1", "type": "pump_failure", "message": "Bomba sin caudal", "soil_moisture": 12},
    )

    assert state == IngestState.DONE
    [alert] = gateway.sent
    assert (alert.kind, alert.message, alert.device_name) == ("pump_failure", "Bomba sin caudal", "Huerta")
    assert alert.soil_moisture == 12
    assert readings.count() == 0

    [event] = subscriber.events(DEVICE_ALERT)
    assert event["data"]["deviceId"] == "A1"
    assert event["data"]["alertType"] == "pump_failure"


def test_device_alert_for_unknown_device_is_only_broadcast(pipeline, registry, gateway, subscriber):
    ingest(pipeline, TopicKind.ALERT, {"id": "ghost", "type": "tamper"})

    assert gateway.sent == []
    assert registry.find_by_device_id("ghost") is None
    assert len(subscriber.events(DEVICE_ALERT)) == 1


def test_sweep_offline(pipeline, registry, subscriber):
    registry.upsert_on_sighting("A1")

    assert asyncio.run(pipeline.sweep_offline()) == []
    stale = asyncio.run(pipeline.sweep_offline(now=utcnow() + timedelta(hours=1)))

    assert [d.device_id for d in stale] == ["A1"]
    assert not registry.find_by_device_id("A1").is_online
    assert subscriber.messages == [
        {"event": DEVICE_STATUS, "data": {"deviceId": "A1", "isOnline": False}}
    ]
