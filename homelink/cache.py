from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable

from .models import TelemetrySnapshot

_LOGGER = logging.getLogger("homelink.cache")

KEY_PREFIX = "telemetry:"


@dataclass(frozen=True)
class CachedSnapshot:
    snapshot: TelemetrySnapshot
    stale: bool = True


class SnapshotCache:
    """Last-known-good telemetry per premises, persisted to a JSON file."""

    def __init__(self, path: str = "/data/cache.json", *, clock: Callable[[], float] = time.time):
        self._path = path
        self._clock = clock

    @property
    def path(self) -> str:
        return self._path

    @staticmethod
    def key_for(premises_id: int) -> str:
        return f"{KEY_PREFIX}{int(premises_id)}"

    def read_raw(self) -> dict[str, Any]:
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            raw = {}
        except (json.JSONDecodeError, ValueError):
            # Corrupt file: keep it aside for debugging and start empty.
            try:
                ts = time.strftime("%Y%m%d-%H%M%S")
                os.replace(self._path, f"{self._path}.corrupt.{ts}")
            except OSError:
                pass
            _LOGGER.warning("Cache file %s was corrupt; starting empty", self._path)
            raw = {}
        if not isinstance(raw, dict):
            raw = {}
        return raw

    def write_raw(self, state: dict[str, Any]) -> None:
        d = os.path.dirname(self._path)
        if d:
            os.makedirs(d, exist_ok=True)
        tmp = self._path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(state, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self._path)

    def save(self, premises_id: int, snapshot: TelemetrySnapshot) -> None:
        raw = self.read_raw()
        raw[self.key_for(premises_id)] = {
            "captured_at": float(snapshot.captured_at),
            "readings": dict(snapshot.readings),
        }
        try:
            self.write_raw(raw)
        except (OSError, TypeError, ValueError) as e:
            _LOGGER.warning("Failed to persist telemetry for premises %s: %s", premises_id, e)

    def restore(self, premises_id: int, max_age: float) -> CachedSnapshot | None:
        item = self.read_raw().get(self.key_for(premises_id))
        if not isinstance(item, dict):
            return None
        try:
            captured_at = float(item.get("captured_at"))
        except (TypeError, ValueError):
            return None
        readings = item.get("readings")
        if not isinstance(readings, dict):
            return None
        age = self._clock() - captured_at
        if age > float(max_age):
            _LOGGER.debug("Cached telemetry for premises %s is %.0fs old; ignoring", premises_id, age)
            return None
        snap = TelemetrySnapshot(premises_id=int(premises_id), readings=dict(readings), captured_at=captured_at)
        return CachedSnapshot(snapshot=snap, stale=True)

    def forget(self, premises_id: int) -> bool:
        raw = self.read_raw()
        if raw.pop(self.key_for(premises_id), None) is None:
            return False
        self.write_raw(raw)
        return True
