from __future__ import annotations

import json
import time
from datetime import datetime
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class DeviceStatus(str, Enum):
    ON = "ON"
    OFF = "OFF"
    UNKNOWN = "UNKNOWN"


class DeviceType(str, Enum):
    LIGHT = "LIGHT"
    DOOR = "DOOR"
    AIR_CONDITIONER = "AIR_CONDITIONER"
    FAN = "FAN"
    CAMERA = "CAMERA"
    SENSOR = "SENSOR"
    SWITCH = "SWITCH"
    CURTAIN = "CURTAIN"
    OTHER = "OTHER"


class GatewayStatus(str, Enum):
    PAIRING = "PAIRING"
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    ERROR = "ERROR"


# Device commands accepted by the backend.
TURN_ON = "TURN_ON"
TURN_OFF = "TURN_OFF"
TOGGLE = "TOGGLE"
ACTIONS = (TURN_ON, TURN_OFF, TOGGLE)


@dataclass(frozen=True)
class Device:
    id: int
    code: str = ""
    pin: int | None = None
    name: str = ""
    type: DeviceType = DeviceType.OTHER
    status: DeviceStatus = DeviceStatus.UNKNOWN
    state: dict[str, Any] | None = None
    room_id: int | None = None
    room_name: str = ""
    created_at: str | None = None
    updated_at: str | None = None
    # Set by an optimistic command, cleared by the next poll or push for the device.
    pending: bool = False

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["type"] = self.type.value
        out["status"] = self.status.value
        return out


@dataclass(frozen=True)
class Gateway:
    id: int
    premises_id: int
    serial: str = ""
    name: str = ""
    status: GatewayStatus = GatewayStatus.OFFLINE
    last_heartbeat: float | None = None
    reported_online: bool = False
    ip: str = ""
    firmware: str = ""

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["status"] = self.status.value
        return out


@dataclass(frozen=True)
class TelemetrySnapshot:
    premises_id: int
    readings: dict[str, Any] = field(default_factory=dict)
    captured_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"premises_id": self.premises_id, "readings": dict(self.readings), "captured_at": self.captured_at}


def parse_status(value: Any) -> DeviceStatus | None:
    """Map a coarse status coming from the backend or a push to DeviceStatus.

    Returns None for values that are not a known coarse status.
    """
    if isinstance(value, bool):
        return DeviceStatus.ON if value else DeviceStatus.OFF
    s = ("" if value is None else str(value)).strip().upper()
    if s in ("ON", "TRUE", "1"):
        return DeviceStatus.ON
    if s in ("OFF", "FALSE", "0"):
        return DeviceStatus.OFF
    if s == "UNKNOWN":
        return DeviceStatus.UNKNOWN
    return None


def parse_device_type(value: Any) -> DeviceType:
    try:
        return DeviceType(str(value or "").strip().upper())
    except ValueError:
        return DeviceType.OTHER


def parse_state_blob(value: Any) -> dict[str, Any] | None:
    """Structured device state: accepts a dict or its JSON text form."""
    if value is None:
        return None
    if isinstance(value, dict):
        return dict(value)
    s = str(value).strip()
    if not s or s[0] != "{":
        return None
    try:
        obj = json.loads(s)
    except (json.JSONDecodeError, ValueError):
        return None
    return obj if isinstance(obj, dict) else None


def power_from_state(state: dict[str, Any] | None) -> DeviceStatus | None:
    if not state:
        return None
    power = state.get("power")
    if power is None:
        return None
    st = parse_status(power)
    if st is DeviceStatus.UNKNOWN:
        return None
    return st


def _int_or_none(v: Any) -> int | None:
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def parse_timestamp(v: Any) -> float | None:
    """Epoch seconds from epoch seconds/milliseconds or an ISO-8601 string."""
    if v is None or v == "":
        return None
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        f = float(v)
        return f / 1000.0 if f > 1e11 else f
    s = str(v).strip()
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        return dt.timestamp()
    except ValueError:
        return None


def device_from_api(raw: dict[str, Any]) -> Device:
    """Build a Device from a backend device response.

    The status is derived from stateValue whenever it carries a known power value.
    """
    did = _int_or_none(raw.get("id"))
    if did is None:
        raise ValueError("device without id")
    state = parse_state_blob(raw.get("stateValue"))
    coarse = raw.get("deviceStatus")
    if coarse is None:
        coarse = raw.get("status")
    status = power_from_state(state) or parse_status(coarse) or DeviceStatus.UNKNOWN
    return Device(
        id=did,
        code=str(raw.get("deviceCode") or "").strip(),
        pin=_int_or_none(raw.get("gpioPin")),
        name=str(raw.get("name") or "").strip(),
        type=parse_device_type(raw.get("deviceType")),
        status=status,
        state=state,
        room_id=_int_or_none(raw.get("roomId")),
        room_name=str(raw.get("roomName") or ""),
        created_at=raw.get("createdAt"),
        updated_at=raw.get("updatedAt"),
    )


def gateway_from_api(raw: dict[str, Any], *, premises_id: int) -> Gateway:
    try:
        status = GatewayStatus(str(raw.get("status") or "").strip().upper())
    except ValueError:
        status = GatewayStatus.ERROR
    return Gateway(
        id=_int_or_none(raw.get("id")) or 0,
        premises_id=_int_or_none(raw.get("homeId")) or premises_id,
        serial=str(raw.get("serialNumber") or ""),
        name=str(raw.get("name") or ""),
        status=status,
        last_heartbeat=parse_timestamp(raw.get("lastHeartbeat")),
        reported_online=bool(raw.get("isOnline") or False),
        ip=str(raw.get("ipAddress") or ""),
        firmware=str(raw.get("firmwareVersion") or ""),
    )


def snapshot_from_api(raw: dict[str, Any], *, premises_id: int, now: float | None = None) -> TelemetrySnapshot:
    readings = {k: v for k, v in raw.items() if k not in ("lastUpdate", "rawData")}
    captured = parse_timestamp(raw.get("lastUpdate"))
    if captured is None:
        captured = time.time() if now is None else now
    return TelemetrySnapshot(premises_id=premises_id, readings=readings, captured_at=captured)
