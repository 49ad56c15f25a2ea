from datetime import datetime, timedelta, timezone

import pytest

from errors import ValidationError
from models import Reading

BASE = datetime(2024, 5, 1, 10, tzinfo=timezone.utc)


def make_reading(device_id="A1", minutes=0, **overrides):
    values = dict(
        device_id=device_id,
        soil_moisture=40,
        temperature=22,
        humidity=55,
        pump_status=False,
        timestamp=BASE + timedelta(minutes=minutes),
    )
    values.update(overrides)
    return Reading(**values)


def test_append_returns_stored_copy(readings):
    stored = readings.append(make_reading(dht_error=True))
    assert stored.id > 0
    assert stored.dht_error is True
    assert readings.count("A1") == 1


@pytest.mark.parametrize("overrides", [{"soil_moisture": 101}, {"humidity": 120}])
def test_out_of_range_values_are_rejected(readings, overrides):
    with pytest.raises(ValidationError):
        readings.append(make_reading(**overrides))
    assert readings.count() == 0


def test_reading_for_unregistered_device_is_stored(readings, registry):
    readings.append(make_reading(device_id="nobody"))
    assert registry.find_by_device_id("nobody") is None
    assert readings.count("nobody") == 1


def test_query_filters_and_order(readings):
    for minutes in (0, 10, 20):
        readings.append(make_reading(minutes=minutes))
    readings.append(make_reading(device_id="B2", minutes=5))

    newest_first = readings.query("A1")
    assert [r.timestamp for r in newest_first] == [
        BASE + timedelta(minutes=m) for m in (20, 10, 0)
    ]

    window = readings.query(since=BASE + timedelta(minutes=5), until=BASE + timedelta(minutes=10))
    assert {(r.device_id, r.timestamp.minute) for r in window} == {("A1", 10), ("B2", 5)}

    assert len(readings.query(limit=2)) == 2


def test_latest_per_device(readings):
    readings.append(make_reading(minutes=0, soil_moisture=10))
    readings.append(make_reading(minutes=30, soil_moisture=30))
    readings.append(make_reading(device_id="B2", minutes=5, soil_moisture=50))

    latest = {r.device_id: r.soil_moisture for r in readings.latest_per_device()}
    assert latest == {"A1": 30, "B2": 50}
