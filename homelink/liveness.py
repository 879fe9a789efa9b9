from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from .models import Gateway, GatewayStatus, TelemetrySnapshot


class Liveness(str, Enum):
    UNPAIRED = "unpaired"
    PAIRING = "pairing"
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass(frozen=True)
class GatewayView:
    liveness: Liveness
    stale: bool
    controls_enabled: bool
    last_push: float | None
    snapshot_age_s: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "liveness": self.liveness.value,
            "stale": self.stale,
            "controls_enabled": self.controls_enabled,
            "last_push": self.last_push,
            "snapshot_age_s": self.snapshot_age_s,
        }


class LivenessDetector:
    """Derives gateway liveness and snapshot staleness on every read.

    A reported-offline gateway is still treated as online while push traffic
    for its premises is younger than the grace window; the backend's own
    heartbeat check can lag behind a gateway that is visibly pushing.
    """

    def __init__(
        self,
        *,
        grace_window_s: float = 90.0,
        staleness_threshold_s: float = 120.0,
        clock: Callable[[], float] = time.time,
    ):
        self._grace_window_s = float(grace_window_s)
        self._staleness_threshold_s = float(staleness_threshold_s)
        self._clock = clock
        self._last_push: dict[int, float] = {}

    @property
    def grace_window_s(self) -> float:
        return self._grace_window_s

    @property
    def staleness_threshold_s(self) -> float:
        return self._staleness_threshold_s

    def note_push(self, premises_id: int, at: float | None = None) -> None:
        ts = self._clock() if at is None else float(at)
        prev = self._last_push.get(premises_id)
        if prev is None or ts > prev:
            self._last_push[premises_id] = ts

    def last_push(self, premises_id: int) -> float | None:
        return self._last_push.get(premises_id)

    def forget(self, premises_id: int) -> None:
        self._last_push.pop(premises_id, None)

    def evaluate(self, premises_id: int, gateway: Gateway | None, now: float | None = None) -> Liveness:
        if gateway is None:
            return Liveness.UNPAIRED
        if gateway.status is GatewayStatus.PAIRING:
            return Liveness.PAIRING
        if gateway.reported_online:
            return Liveness.ONLINE
        t = self._clock() if now is None else now
        last = self._last_push.get(premises_id)
        if last is not None and t - last <= self._grace_window_s:
            return Liveness.ONLINE
        return Liveness.OFFLINE

    def snapshot_age(self, snapshot: TelemetrySnapshot | None, now: float | None = None) -> float | None:
        if snapshot is None:
            return None
        t = self._clock() if now is None else now
        return max(0.0, t - snapshot.captured_at)

    def is_stale(self, snapshot: TelemetrySnapshot | None, now: float | None = None) -> bool:
        age = self.snapshot_age(snapshot, now)
        if age is None:
            return True
        return age > self._staleness_threshold_s

    def view(
        self,
        premises_id: int,
        gateway: Gateway | None,
        snapshot: TelemetrySnapshot | None,
        *,
        restored: bool = False,
        now: float | None = None,
    ) -> GatewayView:
        t = self._clock() if now is None else now
        liveness = self.evaluate(premises_id, gateway, t)
        return GatewayView(
            liveness=liveness,
            stale=restored or self.is_stale(snapshot, t),
            controls_enabled=liveness is Liveness.ONLINE,
            last_push=self._last_push.get(premises_id),
            snapshot_age_s=self.snapshot_age(snapshot, t),
        )
