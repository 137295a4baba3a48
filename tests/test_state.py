import pytest

from devicelink.models import Message


def test_update_replaces_entry(cache):
    cache.update(Message("esp8266/led/control", b"OFF"))
    entry = cache.update(Message("esp8266/led/control", b"ON", qos=1, retained=True))

    assert cache.get("esp8266/led/control") is entry
    assert entry.device_id == "esp8266"
    assert entry.payload == b"ON"
    assert len(cache) == 1


def test_snapshot_is_stable_and_read_only(cache):
    cache.update(Message("lamp/state", b"1"))
    before = cache.snapshot()

    cache.update(Message("lamp/state", b"0"))
    cache.update(Message("fan/state", b"1"))

    assert before["lamp/state"].payload == b"1"
    assert "fan/state" not in before
    assert cache.snapshot()["lamp/state"].payload == b"0"
    with pytest.raises(TypeError):
        before["lamp/state"] = None


def test_devices_groups_by_first_level(cache):
    cache.update(Message("esp8266/led/control", b"ON"))
    cache.update(Message("esp8266/temp", b"21.5"))
    cache.update(Message("lamp/state", b"1"))

    assert sorted(e.topic for e in cache.devices("esp8266")) == ["esp8266/led/control", "esp8266/temp"]
    assert cache.devices("fan") == []


def test_to_dict(cache):
    entry = cache.update(Message("esp8266/led/control", b"ON", retained=True))
    data = entry.to_dict()

    assert data["deviceId"] == "esp8266"
    assert data["payload"] == "ON"
    assert data["retained"] is True
    assert data["lastUpdate"] == entry.updated_at.isoformat()
