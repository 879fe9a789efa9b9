from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Literal

MATCH_SUBSTRING = "substring"
MATCH_UNIQUE = "unique"
MATCH_EXACT = "exact"

MatchMode = Literal["substring", "unique", "exact"]


@dataclass(frozen=True)
class MqttConfig:
    host: str
    port: int
    username: str
    password: str
    base_topic: str
    client_id: str


@dataclass(frozen=True)
class BackendConfig:
    base_url: str
    token: str
    timeout_s: float


@dataclass(frozen=True)
class TimingConfig:
    grace_window_s: float
    staleness_threshold_s: float
    cache_max_age_s: float
    poll_interval_s: float
    silence_threshold_s: float
    enrollment_timeout_s: float


@dataclass(frozen=True)
class Settings:
    mqtt: MqttConfig
    backend: BackendConfig
    timing: TimingConfig
    premises_id: int | None
    identity_match: MatchMode
    cache_path: str
    debug: bool


def read_options() -> dict[str, Any]:
    path = os.environ.get("HOMELINK_OPTIONS", "/data/options.json")
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return {}


def load_settings(options: dict[str, Any]) -> Settings:
    def _read_float(raw: dict[str, Any], key: str, default: float) -> float:
        try:
            v = raw.get(key)
            if v is None:
                return float(default)
            return float(v)
        except Exception:
            return float(default)

    mqtt_raw = options.get("mqtt") or {}
    mqtt = MqttConfig(
        host=str(mqtt_raw.get("host") or "localhost"),
        port=int(mqtt_raw.get("port") or 1883),
        username=str(mqtt_raw.get("username") or ""),
        password=str(mqtt_raw.get("password") or ""),
        base_topic=str(mqtt_raw.get("base_topic") or "smarthome").rstrip("/"),
        client_id=str(mqtt_raw.get("client_id") or "homelink"),
    )

    backend_raw = options.get("backend") or {}
    backend = BackendConfig(
        base_url=str(backend_raw.get("base_url") or "http://localhost:8080/api/v1").rstrip("/"),
        token=str(backend_raw.get("token") or ""),
        timeout_s=max(1.0, _read_float(backend_raw, "timeout_s", 10.0)),
    )

    timing_raw = options.get("timing") or {}
    timing = TimingConfig(
        grace_window_s=max(0.0, _read_float(timing_raw, "grace_window_s", 90.0)),
        staleness_threshold_s=max(1.0, _read_float(timing_raw, "staleness_threshold_s", 120.0)),
        cache_max_age_s=max(0.0, _read_float(timing_raw, "cache_max_age_s", 3600.0)),
        poll_interval_s=max(1.0, _read_float(timing_raw, "poll_interval_s", 30.0)),
        silence_threshold_s=max(0.0, _read_float(timing_raw, "silence_threshold_s", 60.0)),
        enrollment_timeout_s=max(1.0, _read_float(timing_raw, "enrollment_timeout_s", 15.0)),
    )

    match = str(options.get("identity_match") or MATCH_SUBSTRING).strip().lower()
    if match not in (MATCH_SUBSTRING, MATCH_UNIQUE, MATCH_EXACT):
        match = MATCH_SUBSTRING

    premises_raw = options.get("premises_id")
    try:
        premises_id = int(premises_raw) if premises_raw not in (None, "") else None
    except (TypeError, ValueError):
        premises_id = None

    return Settings(
        mqtt=mqtt,
        backend=backend,
        timing=timing,
        premises_id=premises_id,
        identity_match=match,  # type: ignore[arg-type]
        cache_path=str(options.get("cache_path") or os.environ.get("HOMELINK_CACHE") or "/data/cache.json"),
        debug=bool(options.get("debug") or False),
    )
