"""Push topics and their payloads.

Each topic carries one message kind; `decode` validates the raw JSON (or bare
text) against that kind and returns a typed message, raising MessageError when
the shape does not fit.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from .errors import MessageError
from .models import parse_state_blob


class Kind(str, Enum):
    DEVICE_STATUS = "device-status"
    GATEWAY_STATUS = "status"
    TELEMETRY = "sensors"
    ENROLLMENT_STATUS = "rfid/learn/status"
    CREDENTIAL_LIST = "rfid/cards"
    ACCESS = "rfid/access"
    EMERGENCY = "emergency"


def topic_for(base_topic: str, premises_id: int, kind: Kind) -> str:
    return f"{base_topic.rstrip('/')}/home/{int(premises_id)}/{kind.value}"


@dataclass(frozen=True)
class DeviceStatusDelta:
    pin: int | None = None
    code: str | None = None
    status: str | None = None
    state: dict[str, Any] | None = None


@dataclass(frozen=True)
class GatewayStatusMessage:
    online: bool


@dataclass(frozen=True)
class TelemetryMessage:
    readings: dict[str, Any]


@dataclass(frozen=True)
class EnrollmentStatusMessage:
    learning_mode: bool
    complete: bool
    success: bool
    result: str = ""
    card_count: int | None = None


@dataclass(frozen=True)
class CredentialListChanged:
    payload: Any = None


@dataclass(frozen=True)
class AccessEvent:
    card_uid: str
    authorized: bool
    card_name: str = ""
    status: str = ""


@dataclass(frozen=True)
class EmergencyMessage:
    type: str
    active: bool
    fire: bool = False
    gas: bool = False
    timestamp: float | None = None
    resolved_label: str = ""


Message = Union[
    DeviceStatusDelta,
    GatewayStatusMessage,
    TelemetryMessage,
    EnrollmentStatusMessage,
    CredentialListChanged,
    AccessEvent,
    EmergencyMessage,
]


def _as_object(kind: Kind, payload: Any) -> dict[str, Any]:
    # Some producers double-encode: a JSON string holding a JSON object.
    if isinstance(payload, str):
        s = payload.strip()
        if s.startswith("{"):
            try:
                payload = json.loads(s)
            except (json.JSONDecodeError, ValueError) as e:
                raise MessageError(f"{kind.value}: invalid JSON ({e})") from e
    if not isinstance(payload, dict):
        raise MessageError(f"{kind.value}: expected an object, got {type(payload).__name__}")
    return payload


def _opt_int(kind: Kind, v: Any, key: str) -> int | None:
    if v is None or v == "":
        return None
    if isinstance(v, bool):
        raise MessageError(f"{kind.value}: {key} must be an integer")
    try:
        return int(v)
    except (TypeError, ValueError) as e:
        raise MessageError(f"{kind.value}: {key} must be an integer") from e


def _bool(v: Any) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("true", "1", "yes", "on")
    return bool(v)


def _decode_device_status(payload: Any) -> DeviceStatusDelta:
    obj = _as_object(Kind.DEVICE_STATUS, payload)
    pin = _opt_int(Kind.DEVICE_STATUS, obj.get("gpioPin"), "gpioPin")
    code = obj.get("deviceCode")
    code_s = str(code).strip() if code is not None else None
    if pin is None and not code_s:
        raise MessageError("device-status: neither gpioPin nor deviceCode present")
    status = obj.get("status")
    state_raw = obj.get("stateValue")
    state = parse_state_blob(state_raw)
    if state_raw is not None and state is None:
        raise MessageError("device-status: stateValue is not a JSON object")
    return DeviceStatusDelta(
        pin=pin,
        code=code_s or None,
        status=str(status).strip() if status is not None else None,
        state=state,
    )


def _decode_gateway_status(payload: Any) -> GatewayStatusMessage:
    value = payload
    if isinstance(payload, dict):
        value = payload.get("status")
    s = str(value or "").strip().lower()
    if s in ("online", "true"):
        return GatewayStatusMessage(online=True)
    if s in ("offline", "false"):
        return GatewayStatusMessage(online=False)
    raise MessageError(f"status: unexpected literal {value!r}")


def _decode_telemetry(payload: Any) -> TelemetryMessage:
    obj = _as_object(Kind.TELEMETRY, payload)
    return TelemetryMessage(readings=dict(obj))


def _decode_enrollment_status(payload: Any) -> EnrollmentStatusMessage:
    obj = _as_object(Kind.ENROLLMENT_STATUS, payload)
    if "complete" not in obj and "learningMode" not in obj:
        raise MessageError("rfid/learn/status: missing complete/learningMode")
    return EnrollmentStatusMessage(
        learning_mode=_bool(obj.get("learningMode")),
        complete=_bool(obj.get("complete")),
        success=_bool(obj.get("success")),
        result=str(obj.get("result") or ""),
        card_count=_opt_int(Kind.ENROLLMENT_STATUS, obj.get("cardCount"), "cardCount"),
    )


def _decode_access(payload: Any) -> AccessEvent:
    obj = _as_object(Kind.ACCESS, payload)
    uid = str(obj.get("cardUid") or "").strip()
    if not uid:
        raise MessageError("rfid/access: missing cardUid")
    return AccessEvent(
        card_uid=uid,
        authorized=_bool(obj.get("authorized")),
        card_name=str(obj.get("cardName") or ""),
        status=str(obj.get("status") or ""),
    )


def _decode_emergency(payload: Any) -> EmergencyMessage:
    obj = _as_object(Kind.EMERGENCY, payload)
    if "isActive" not in obj:
        raise MessageError("emergency: missing isActive")
    ts = obj.get("timestamp")
    try:
        timestamp = float(ts) / 1000.0 if ts is not None else None
    except (TypeError, ValueError):
        timestamp = None
    return EmergencyMessage(
        type=str(obj.get("type") or "UNKNOWN").strip().upper(),
        active=_bool(obj.get("isActive")),
        fire=_bool(obj.get("fire")),
        gas=_bool(obj.get("gas")),
        timestamp=timestamp,
        resolved_label=str(obj.get("resolvedTypeLabel") or ""),
    )


def decode(kind: Kind, payload: Any) -> Message:
    if kind is Kind.DEVICE_STATUS:
        return _decode_device_status(payload)
    if kind is Kind.GATEWAY_STATUS:
        return _decode_gateway_status(payload)
    if kind is Kind.TELEMETRY:
        return _decode_telemetry(payload)
    if kind is Kind.ENROLLMENT_STATUS:
        return _decode_enrollment_status(payload)
    if kind is Kind.CREDENTIAL_LIST:
        return CredentialListChanged(payload=payload)
    if kind is Kind.ACCESS:
        return _decode_access(payload)
    if kind is Kind.EMERGENCY:
        return _decode_emergency(payload)
    raise MessageError(f"unknown message kind {kind!r}")
