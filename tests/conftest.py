from __future__ import annotations

import json
from typing import Any, Callable

import pytest

from homelink.errors import BackendError


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeTransport:
    """Records broker traffic; no network."""

    def __init__(self, connected: bool = True):
        self.connected = connected
        self.activations = 0
        self.subscribed: list[str] = []
        self.unsubscribed: list[str] = []
        self._on_message: Callable[[str, bytes], None] | None = None
        self._on_connect: Callable[[], None] | None = None

    def activate(self) -> None:
        self.activations += 1

    def deactivate(self) -> None:
        self.connected = False

    def subscribe_topic(self, topic: str, *, qos: int = 0) -> None:
        if self.connected:
            self.subscribed.append(topic)

    def unsubscribe_topic(self, topic: str) -> None:
        if self.connected:
            self.unsubscribed.append(topic)

    def set_message_handler(self, handler):
        self._on_message = handler

    def set_connect_handler(self, handler):
        self._on_connect = handler

    def drop(self) -> None:
        self.connected = False

    def reconnect(self) -> None:
        self.connected = True
        if self._on_connect is not None:
            self._on_connect()

    def deliver(self, topic: str, payload: Any) -> None:
        if isinstance(payload, (dict, list)):
            data = json.dumps(payload).encode("utf-8")
        elif isinstance(payload, str):
            data = payload.encode("utf-8")
        else:
            data = payload
        assert self._on_message is not None
        self._on_message(topic, data)


class FakeBackend:
    """In-memory stand-in for BackendClient."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.devices: list[dict[str, Any]] = []
        self.gateway: dict[str, Any] | None = None
        self.sensor_data: dict[str, Any] | None = None
        self.cards: dict[str, Any] = {"cards": [], "count": 0, "maxCards": 10}
        self.learning: dict[str, Any] | None = None
        self.errors: dict[str, Exception] = {}
        self.learning_gate = None  # optional asyncio.Event awaited by learning_status
        self.command_gate = None  # optional asyncio.Event awaited by device_command
        self.cards_gate = None  # optional asyncio.Event awaited by list_cards

    def _maybe_fail(self, name: str) -> None:
        err = self.errors.get(name)
        if err is not None:
            raise err

    async def list_devices(self, premises_id, *, page_size=200):
        self.calls.append(("list_devices", premises_id))
        self._maybe_fail("list_devices")
        return [dict(d) for d in self.devices]

    async def get_gateway(self, premises_id):
        self.calls.append(("get_gateway", premises_id))
        self._maybe_fail("get_gateway")
        return dict(self.gateway) if self.gateway is not None else None

    async def get_sensor_data(self, premises_id):
        self.calls.append(("get_sensor_data", premises_id))
        self._maybe_fail("get_sensor_data")
        return dict(self.sensor_data) if self.sensor_data is not None else None

    async def device_command(self, device_id, action):
        self.calls.append(("device_command", device_id, action))
        if self.command_gate is not None:
            await self.command_gate.wait()
        self._maybe_fail("device_command")
        return None

    async def create_device(self, payload):
        self.calls.append(("create_device", payload))
        self._maybe_fail("create_device")
        return {"id": 99, **payload}

    async def delete_device(self, device_id):
        self.calls.append(("delete_device", device_id))
        self._maybe_fail("delete_device")

    async def unpair_gateway(self, gateway_id):
        self.calls.append(("unpair_gateway", gateway_id))
        self._maybe_fail("unpair_gateway")

    async def list_cards(self, premises_id):
        self.calls.append(("list_cards", premises_id))
        if self.cards_gate is not None:
            await self.cards_gate.wait()
        self._maybe_fail("list_cards")
        return dict(self.cards)

    async def start_learning(self, premises_id, name=None):
        self.calls.append(("start_learning", premises_id, name))
        self._maybe_fail("start_learning")
        return {"learningMode": True}

    async def learning_status(self, premises_id):
        self.calls.append(("learning_status", premises_id))
        if self.learning_gate is not None:
            await self.learning_gate.wait()
        self._maybe_fail("learning_status")
        return dict(self.learning) if self.learning is not None else None

    async def cancel_learning(self, premises_id):
        self.calls.append(("cancel_learning", premises_id))
        self._maybe_fail("cancel_learning")

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def backend_down() -> BackendError:
    return BackendError("connection refused")
