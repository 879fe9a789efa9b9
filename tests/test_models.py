from __future__ import annotations

import pytest

from homelink.models import (
    DeviceStatus,
    DeviceType,
    GatewayStatus,
    device_from_api,
    gateway_from_api,
    parse_status,
    parse_timestamp,
    power_from_state,
    snapshot_from_api,
)


@pytest.mark.parametrize(
    "value,expected",
    [
        ("on", DeviceStatus.ON),
        (True, DeviceStatus.ON),
        ("0", DeviceStatus.OFF),
        (0, DeviceStatus.OFF),
        (1, DeviceStatus.ON),
        ("UNKNOWN", DeviceStatus.UNKNOWN),
        ("dim", None),
        (None, None),
    ],
)
def test_parse_status(value, expected):
    assert parse_status(value) is expected


def test_power_from_state_ignores_unknown():
    assert power_from_state({"power": "UNKNOWN"}) is None
    assert power_from_state({"power": "ON"}) is DeviceStatus.ON
    assert power_from_state(None) is None
    assert power_from_state({"power": 0}) is DeviceStatus.OFF
    assert power_from_state({"power": 1}) is DeviceStatus.ON


def test_device_from_api_prefers_state_power():
    dev = device_from_api(
        {
            "id": 10,
            "deviceCode": " LIGHT_1 ",
            "gpioPin": 4,
            "name": "Hall",
            "deviceType": "light",
            "deviceStatus": "ON",
            "stateValue": '{"power": "OFF", "brightness": 30}',
            "roomId": "2",
        }
    )
    assert dev.code == "LIGHT_1"
    assert dev.type is DeviceType.LIGHT
    assert dev.status is DeviceStatus.OFF
    assert dev.state == {"power": "OFF", "brightness": 30}
    assert dev.room_id == 2
    assert dev.to_dict()["status"] == "OFF"


def test_device_from_api_requires_id():
    with pytest.raises(ValueError):
        device_from_api({"name": "x"})


def test_gateway_from_api():
    gw = gateway_from_api(
        {"id": 5, "serialNumber": "MCU-9", "status": "online", "isOnline": True, "lastHeartbeat": "2024-01-01T00:00:00Z"},
        premises_id=3,
    )
    assert gw.premises_id == 3
    assert gw.status is GatewayStatus.ONLINE
    assert gw.reported_online is True
    assert gw.last_heartbeat == 1704067200.0


def test_gateway_unknown_status_is_error():
    assert gateway_from_api({"id": 1, "status": "weird"}, premises_id=1).status is GatewayStatus.ERROR


def test_parse_timestamp_units():
    assert parse_timestamp(1700000000) == 1700000000.0
    assert parse_timestamp(1700000000000) == 1700000000.0
    assert parse_timestamp("not a date") is None


def test_snapshot_from_api():
    snap = snapshot_from_api({"temperature": 20, "lastUpdate": 1700000000000, "rawData": "..."}, premises_id=1, now=5.0)
    assert snap.readings == {"temperature": 20}
    assert snap.captured_at == 1700000000.0
    assert snapshot_from_api({"gas": 1}, premises_id=1, now=5.0).captured_at == 5.0


def test_numeric_zero_power_overrides_coarse_status():
    dev = device_from_api({"id": 1, "deviceStatus": "ON", "stateValue": '{"power": 0}'})
    assert dev.status is DeviceStatus.OFF
    assert device_from_api({"id": 2, "deviceStatus": 0}).status is DeviceStatus.OFF
