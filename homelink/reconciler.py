from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Callable, Iterable

from .identity import IdentityResolver
from .messages import DeviceStatusDelta
from .models import TOGGLE, TURN_OFF, TURN_ON, Device, DeviceStatus, parse_status, power_from_state

_LOGGER = logging.getLogger("homelink.reconciler")

# Fields replaced wholesale by a full poll.
_POLL_FIELDS = (
    "code",
    "pin",
    "name",
    "type",
    "status",
    "state",
    "room_id",
    "room_name",
    "created_at",
    "updated_at",
    "pending",
)


class StateReconciler:
    """Authoritative in-memory device collection for one premises.

    Every write carries a timestamp and each field remembers the timestamp of
    the write that set it; a write only lands on fields it is not older than.
    Each apply builds a new Device and swaps it in, so a record never holds a
    half-applied update.
    """

    def __init__(self, resolver: IdentityResolver | None = None, *, clock: Callable[[], float] = time.time):
        self._resolver = resolver or IdentityResolver()
        self._clock = clock
        self._devices: dict[int, Device] = {}
        self._stamps: dict[int, dict[str, float]] = {}
        self._listeners: list[Callable[[Device], None]] = []

    # -- read side ---------------------------------------------------------

    def devices(self) -> list[Device]:
        return list(self._devices.values())

    def get(self, device_id: int) -> Device | None:
        return self._devices.get(device_id)

    def __len__(self) -> int:
        return len(self._devices)

    def add_listener(self, cb: Callable[[Device], None]) -> None:
        self._listeners.append(cb)

    def remove_listener(self, cb: Callable[[Device], None]) -> None:
        try:
            self._listeners.remove(cb)
        except ValueError:
            pass

    def _emit(self, dev: Device) -> None:
        for cb in list(self._listeners):
            try:
                cb(dev)
            except Exception:
                _LOGGER.exception("Device listener failed")

    # -- write side --------------------------------------------------------

    def _write(self, device_id: int, updates: dict[str, Any], ts: float) -> Device | None:
        cur = self._devices.get(device_id)
        if cur is None:
            return None
        stamps = self._stamps.setdefault(device_id, {})
        accepted = {k: v for k, v in updates.items() if ts >= stamps.get(k, float("-inf"))}
        if not accepted:
            _LOGGER.debug("Discarding out-of-date update for device %s", device_id)
            return cur
        for k in accepted:
            stamps[k] = ts
        nxt = replace(cur, **accepted)
        self._devices[device_id] = nxt
        if nxt != cur:
            self._emit(nxt)
        return nxt

    def apply_full_poll(self, devices: Iterable[Device], ts: float | None = None) -> None:
        """Replace every listed device wholesale with the backend's view.

        Devices absent from the list are kept; removal is an explicit command.
        """
        at = self._clock() if ts is None else ts
        for dev in devices:
            if dev.id not in self._devices:
                self._devices[dev.id] = dev
                self._stamps[dev.id] = {k: at for k in _POLL_FIELDS}
                self._emit(dev)
                continue
            updates = {k: getattr(dev, k) for k in _POLL_FIELDS}
            updates["pending"] = False
            self._write(dev.id, updates, at)

    def apply_optimistic_command(self, device_id: int, action: str, ts: float | None = None) -> DeviceStatus:
        """Flip the local coarse status before the backend confirms.

        No rollback happens here on command failure; the next poll or push
        corrects the record.
        """
        cur = self._devices.get(device_id)
        if cur is None:
            raise KeyError(device_id)
        act = str(action or "").strip().upper()
        if act == TURN_ON:
            target = DeviceStatus.ON
        elif act == TURN_OFF:
            target = DeviceStatus.OFF
        elif act == TOGGLE:
            target = DeviceStatus.OFF if cur.status is DeviceStatus.ON else DeviceStatus.ON
        else:
            raise ValueError(f"unsupported action {action!r}")
        at = self._clock() if ts is None else ts
        self._write(device_id, {"status": target, "pending": True}, at)
        return target

    def apply_push_delta(self, delta: DeviceStatusDelta, ts: float | None = None) -> int | None:
        device_id = self._resolver.resolve(self._devices.values(), pin=delta.pin, code=delta.code)
        if device_id is None:
            _LOGGER.debug("Push delta for unknown device pin=%s code=%s dropped", delta.pin, delta.code)
            return None

        updates: dict[str, Any] = {}
        status = power_from_state(delta.state)
        if status is None and delta.status is not None:
            status = parse_status(delta.status)
            if status is None:
                _LOGGER.warning("Invalid device status %r for device %s, skipping status", delta.status, device_id)
        if status is not None:
            updates["status"] = status
            updates["pending"] = False
        if delta.state is not None:
            updates["state"] = dict(delta.state)
        if not updates:
            return device_id

        at = self._clock() if ts is None else ts
        self._write(device_id, updates, at)
        return device_id

    def add_device(self, device: Device, ts: float | None = None) -> Device:
        at = self._clock() if ts is None else ts
        self._devices[device.id] = device
        self._stamps[device.id] = {k: at for k in _POLL_FIELDS}
        self._emit(device)
        return device

    def remove_device(self, device_id: int) -> bool:
        self._stamps.pop(device_id, None)
        return self._devices.pop(device_id, None) is not None

    def clear(self) -> None:
        self._devices.clear()
        self._stamps.clear()
