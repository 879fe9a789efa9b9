from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Callable

from .backend import BackendClient
from .cache import SnapshotCache
from .enrollment import EnrollmentResult, EnrollmentSession, EnrollmentState
from .errors import BackendError, CommandFailed, CommandRejected, GatewayUnavailable, HomelinkError, MessageError
from .identity import IdentityResolver
from .liveness import GatewayView, LivenessDetector
from .messages import (
    AccessEvent,
    DeviceStatusDelta,
    EmergencyMessage,
    GatewayStatusMessage,
    Kind,
    TelemetryMessage,
    decode,
    topic_for,
)
from .models import (
    TURN_OFF,
    TURN_ON,
    Device,
    DeviceStatus,
    Gateway,
    GatewayStatus,
    TelemetrySnapshot,
    device_from_api,
    gateway_from_api,
    snapshot_from_api,
)
from .reconciler import StateReconciler
from .scheduler import PollingScheduler
from .settings import TimingConfig
from .subscriptions import SubscriptionHandle, SubscriptionRegistry

_LOGGER = logging.getLogger("homelink.session")

DEFAULT_TIMING = TimingConfig(
    grace_window_s=90.0,
    staleness_threshold_s=120.0,
    cache_max_age_s=3600.0,
    poll_interval_s=30.0,
    silence_threshold_s=60.0,
    enrollment_timeout_s=15.0,
)

EventListener = Callable[[str, dict[str, Any]], None]


@dataclass(frozen=True)
class Notification:
    kind: str
    message: str
    level: str = "info"
    at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "level": self.level, "at": self.at}


@dataclass(frozen=True)
class EmergencyState:
    type: str
    active: bool
    fire: bool = False
    gas: bool = False
    timestamp: float | None = None
    label: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "active": self.active,
            "fire": self.fire,
            "gas": self.gas,
            "timestamp": self.timestamp,
            "label": self.label,
        }


class PremisesSession:
    """Everything that belongs to the one premises currently open.

    Only one premises is active at a time. Switching closes the old one first:
    its subscriptions, scheduler and enrollment go away, and results of I/O
    started for it are dropped when they come back.
    """

    def __init__(
        self,
        *,
        registry: SubscriptionRegistry,
        backend: BackendClient,
        cache: SnapshotCache,
        base_topic: str = "smarthome",
        timing: TimingConfig | None = None,
        resolver: IdentityResolver | None = None,
        clock: Callable[[], float] = time.time,
        max_notifications: int = 50,
    ):
        self._registry = registry
        self._backend = backend
        self._cache = cache
        self._base_topic = base_topic
        self._timing = timing or DEFAULT_TIMING
        self._clock = clock

        self._reconciler = StateReconciler(resolver, clock=clock)
        self._reconciler.add_listener(self._on_device_changed)
        self._liveness = LivenessDetector(
            grace_window_s=self._timing.grace_window_s,
            staleness_threshold_s=self._timing.staleness_threshold_s,
            clock=clock,
        )

        self._premises_id: int | None = None
        # bumped on every open/close; late I/O results carrying an old value are dropped
        self._epoch = 0
        self._gateway: Gateway | None = None
        self._snapshot: TelemetrySnapshot | None = None
        self._restored = False
        self._emergency: EmergencyState | None = None
        self._enrollment: EnrollmentSession | None = None
        self._scheduler: PollingScheduler | None = None
        self._handles: list[SubscriptionHandle] = []
        self._notifications: deque[Notification] = deque(maxlen=max_notifications)
        self._listeners: list[EventListener] = []

    # -- events ------------------------------------------------------------

    def add_listener(self, cb: EventListener) -> None:
        self._listeners.append(cb)

    def remove_listener(self, cb: EventListener) -> None:
        try:
            self._listeners.remove(cb)
        except ValueError:
            pass

    def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        for cb in list(self._listeners):
            try:
                cb(event_type, data)
            except Exception:
                _LOGGER.exception("Session listener failed")

    def _notify(self, kind: str, message: str, level: str = "info") -> Notification:
        n = Notification(kind=kind, message=message, level=level, at=self._clock())
        self._notifications.append(n)
        self._emit("notification", n.to_dict())
        return n

    def _on_device_changed(self, dev: Device) -> None:
        self._emit("device", dev.to_dict())

    def _on_enrollment_result(self, result: EnrollmentResult) -> None:
        if result.state is EnrollmentState.SUCCESS:
            self._notify("enrollment", result.message)
        else:
            self._notify("enrollment", result.message, level="error")
        self._emit("enrollment", result.to_dict())

    # -- lifecycle ---------------------------------------------------------

    @property
    def premises_id(self) -> int | None:
        return self._premises_id

    @property
    def is_open(self) -> bool:
        return self._premises_id is not None

    async def open(self, premises_id: int) -> None:
        if self._premises_id is not None:
            await self.close()

        pid = int(premises_id)
        self._epoch += 1
        self._premises_id = pid
        _LOGGER.info("Opening premises %s", pid)

        cached = self._cache.restore(pid, self._timing.cache_max_age_s)
        if cached is not None:
            self._snapshot = cached.snapshot
            self._restored = True
            _LOGGER.info("Restored cached telemetry for premises %s (stale until refreshed)", pid)

        self._enrollment = EnrollmentSession(
            pid,
            backend=self._backend,
            registry=self._registry,
            status_topic=self.topic(Kind.ENROLLMENT_STATUS),
            timeout_s=self._timing.enrollment_timeout_s,
            clock=self._clock,
        )
        self._enrollment.add_listener(self._on_enrollment_result)

        handlers: list[tuple[Kind, Callable[[Any], None]]] = [
            (Kind.DEVICE_STATUS, self._on_device_status),
            (Kind.GATEWAY_STATUS, self._on_gateway_status),
            (Kind.TELEMETRY, self._on_telemetry),
            (Kind.CREDENTIAL_LIST, self._enrollment.handle_credential_list),
            (Kind.ACCESS, self._on_access),
            (Kind.EMERGENCY, self._on_emergency),
        ]
        for kind, handler in handlers:
            self._handles.append(self._registry.subscribe(self.topic(kind), handler))

        try:
            await self.force_refresh()
        except BackendError as e:
            _LOGGER.warning("Initial refresh for premises %s incomplete: %s", pid, e)

        self._scheduler = PollingScheduler(
            self.force_refresh,
            lambda: self._liveness.last_push(pid),
            interval_s=self._timing.poll_interval_s,
            silence_threshold_s=self._timing.silence_threshold_s,
            clock=self._clock,
        )
        self._scheduler.start()
        self._emit("premises", {"premises_id": pid})

    async def close(self) -> None:
        pid = self._premises_id
        if pid is None:
            return
        _LOGGER.info("Closing premises %s", pid)
        self._epoch += 1
        self._premises_id = None

        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None:
            scheduler.stop()
        enrollment, self._enrollment = self._enrollment, None
        if enrollment is not None:
            enrollment.teardown()
        for handle in self._handles:
            self._registry.unsubscribe(handle)
        self._handles = []

        self._reconciler.clear()
        self._liveness.forget(pid)
        self._gateway = None
        self._snapshot = None
        self._restored = False
        self._emergency = None
        self._notifications.clear()

    async def switch(self, premises_id: int) -> None:
        await self.close()
        await self.open(premises_id)

    def topic(self, kind: Kind) -> str:
        if self._premises_id is None:
            raise HomelinkError("No premises is open")
        return topic_for(self._base_topic, self._premises_id, kind)

    def _require_open(self) -> int:
        if self._premises_id is None:
            raise HomelinkError("No premises is open")
        return self._premises_id

    # -- read side ---------------------------------------------------------

    def devices(self) -> list[Device]:
        return sorted(self._reconciler.devices(), key=lambda d: d.id)

    def device(self, device_id: int) -> Device | None:
        return self._reconciler.get(device_id)

    def gateway(self) -> Gateway | None:
        return self._gateway

    def telemetry(self) -> TelemetrySnapshot | None:
        return self._snapshot

    def gateway_view(self) -> GatewayView:
        pid = self._premises_id if self._premises_id is not None else 0
        return self._liveness.view(pid, self._gateway, self._snapshot, restored=self._restored)

    def enrollment(self) -> EnrollmentSession | None:
        return self._enrollment

    def enrollment_state(self) -> EnrollmentState:
        if self._enrollment is None:
            return EnrollmentState.IDLE
        return self._enrollment.state

    def emergency(self) -> EmergencyState | None:
        return self._emergency

    def notifications(self) -> list[Notification]:
        return list(self._notifications)

    # -- refresh -----------------------------------------------------------

    async def refresh_devices(self) -> None:
        pid, epoch = self._require_open(), self._epoch
        raws = await self._backend.list_devices(pid)
        devices: list[Device] = []
        for raw in raws:
            try:
                devices.append(device_from_api(raw))
            except ValueError as e:
                _LOGGER.warning("Skipping device entry: %s", e)
        if epoch != self._epoch:
            return
        self._reconciler.apply_full_poll(devices)

    async def refresh_gateway(self) -> None:
        pid, epoch = self._require_open(), self._epoch
        raw = await self._backend.get_gateway(pid)
        if epoch != self._epoch:
            return
        self._gateway = gateway_from_api(raw, premises_id=pid) if raw is not None else None
        self._emit("gateway", self.gateway_view().to_dict())

    async def refresh_telemetry(self) -> None:
        pid, epoch = self._require_open(), self._epoch
        raw = await self._backend.get_sensor_data(pid)
        if epoch != self._epoch or raw is None:
            return
        self._set_snapshot(snapshot_from_api(raw, premises_id=pid, now=self._clock()))

    async def force_refresh(self) -> None:
        """Poll devices, gateway and telemetry; existing state survives a failed part."""
        errors: list[BackendError] = []
        for part in (self.refresh_devices, self.refresh_gateway, self.refresh_telemetry):
            try:
                await part()
            except BackendError as e:
                _LOGGER.warning("Refresh step %s failed: %s", part.__name__, e)
                errors.append(e)
        if errors:
            raise errors[0]

    def _set_snapshot(self, snap: TelemetrySnapshot) -> None:
        self._snapshot = snap
        self._restored = False
        self._cache.save(snap.premises_id, snap)
        self._emit("telemetry", snap.to_dict())

    # -- commands ----------------------------------------------------------

    async def issue_command(self, device_id: int, action: str) -> Device:
        self._require_open()
        epoch = self._epoch
        view = self.gateway_view()
        if not view.controls_enabled:
            raise GatewayUnavailable(view.liveness.value)
        try:
            target = self._reconciler.apply_optimistic_command(device_id, action)
        except KeyError as e:
            raise CommandFailed(device_id, str(action), "unknown device") from e

        # Toggle is resolved locally so the backend sees the same target as the UI.
        wire_action = TURN_ON if target is DeviceStatus.ON else TURN_OFF
        try:
            await self._backend.device_command(device_id, wire_action)
        except CommandRejected as e:
            self._notify("command", f"Device {device_id}: {e}", level="error")
            raise CommandFailed(device_id, wire_action, str(e)) from e
        except BackendError as e:
            self._notify("command", f"Device {device_id}: command not delivered ({e})", level="warning")
            raise CommandFailed(device_id, wire_action, str(e)) from e
        dev = self._reconciler.get(device_id)
        if epoch != self._epoch or dev is None:
            # premises closed or device removed while the command was in flight
            raise CommandFailed(device_id, wire_action, "device no longer present")
        return dev

    async def start_enrollment(self, name: str | None = None) -> None:
        self._require_open()
        enrollment = self._enrollment
        if enrollment is None:
            raise HomelinkError("Card enrollment is not available")
        await enrollment.start(name)
        self._emit("enrollment", {"state": enrollment.state.value})

    async def cancel_enrollment(self) -> bool:
        if self._enrollment is None:
            return False
        cancelled = await self._enrollment.cancel()
        if cancelled:
            self._emit("enrollment", {"state": self._enrollment.state.value})
        return cancelled

    async def create_device(self, payload: dict[str, Any]) -> Device:
        pid = self._require_open()
        body = dict(payload)
        body.setdefault("homeId", pid)
        raw = await self._backend.create_device(body)
        dev = device_from_api(raw)
        self._reconciler.add_device(dev)
        self._notify("device", f"Device {dev.name or dev.id} added")
        return dev

    async def delete_device(self, device_id: int) -> bool:
        self._require_open()
        await self._backend.delete_device(device_id)
        removed = self._reconciler.remove_device(device_id)
        if removed:
            self._emit("device_removed", {"id": device_id})
        return removed

    async def unpair_gateway(self) -> None:
        self._require_open()
        gw = self._gateway
        if gw is None:
            raise HomelinkError("No gateway is paired")
        await self._backend.unpair_gateway(gw.id)
        self._gateway = None
        self._notify("gateway", f"Gateway {gw.serial or gw.id} unpaired")
        self._emit("gateway", self.gateway_view().to_dict())

    # -- push handlers -----------------------------------------------------

    def _on_device_status(self, body: Any) -> None:
        pid = self._premises_id
        if pid is None:
            return
        try:
            msg = decode(Kind.DEVICE_STATUS, body)
        except MessageError as e:
            _LOGGER.warning("Ignoring device status: %s", e)
            return
        assert isinstance(msg, DeviceStatusDelta)
        self._liveness.note_push(pid)
        self._reconciler.apply_push_delta(msg)

    def _on_gateway_status(self, body: Any) -> None:
        pid = self._premises_id
        if pid is None:
            return
        try:
            msg = decode(Kind.GATEWAY_STATUS, body)
        except MessageError as e:
            _LOGGER.warning("Ignoring gateway status: %s", e)
            return
        assert isinstance(msg, GatewayStatusMessage)
        now = self._clock()
        gw = self._gateway
        if msg.online:
            self._liveness.note_push(pid, now)
            if gw is not None:
                self._gateway = replace(gw, status=GatewayStatus.ONLINE, reported_online=True, last_heartbeat=now)
        elif gw is not None:
            self._gateway = replace(gw, status=GatewayStatus.OFFLINE, reported_online=False)
        self._emit("gateway", self.gateway_view().to_dict())

    def _on_telemetry(self, body: Any) -> None:
        pid = self._premises_id
        if pid is None:
            return
        try:
            msg = decode(Kind.TELEMETRY, body)
        except MessageError as e:
            _LOGGER.warning("Ignoring telemetry: %s", e)
            return
        assert isinstance(msg, TelemetryMessage)
        now = self._clock()
        self._liveness.note_push(pid, now)
        readings = {k: v for k, v in msg.readings.items() if k not in ("lastUpdate", "rawData")}
        self._set_snapshot(TelemetrySnapshot(premises_id=pid, readings=readings, captured_at=now))

    def _on_emergency(self, body: Any) -> None:
        if self._premises_id is None:
            return
        try:
            msg = decode(Kind.EMERGENCY, body)
        except MessageError as e:
            _LOGGER.warning("Ignoring emergency message: %s", e)
            return
        assert isinstance(msg, EmergencyMessage)
        state = EmergencyState(
            type=msg.type,
            active=msg.active,
            fire=msg.fire,
            gas=msg.gas,
            timestamp=msg.timestamp,
            label=msg.resolved_label,
        )
        self._emergency = state
        if msg.active:
            self._notify("emergency", f"Emergency: {msg.type}", level="critical")
        else:
            label = msg.resolved_label or msg.type
            self._notify("emergency", f"Emergency cleared ({label})")
        self._emit("emergency", state.to_dict())

    def _on_access(self, body: Any) -> None:
        if self._premises_id is None:
            return
        try:
            msg = decode(Kind.ACCESS, body)
        except MessageError as e:
            _LOGGER.warning("Ignoring access event: %s", e)
            return
        assert isinstance(msg, AccessEvent)
        who = msg.card_name or msg.card_uid
        if msg.authorized:
            self._notify("access", f"Access granted: {who}")
        else:
            self._notify("access", f"Access denied: {who}", level="warning")
