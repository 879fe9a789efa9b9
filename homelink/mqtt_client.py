from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

import paho.mqtt.client as mqtt

_LOGGER = logging.getLogger("homelink.mqtt")


@dataclass(frozen=True)
class MqttStatus:
    connected: bool
    last_error: str | None


class MqttClient:
    """Shared push-channel connection.

    paho runs its network loop in its own thread; when a loop is given every
    user callback is handed over to it so state is only touched from the loop.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str,
        password: str,
        client_id: str,
        loop: asyncio.AbstractEventLoop | None = None,
    ):
        self._host = host
        self._port = port
        self._loop = loop
        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)
        if username:
            self._client.username_pw_set(username, password)

        self._lock = threading.Lock()
        self._active = False
        self._connected = False
        self._last_error: str | None = None

        self._on_message_user: Callable[[str, bytes], None] | None = None
        self._on_connect_user: Callable[[], None] | None = None
        self._on_disconnect_user: Callable[[], None] | None = None

        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def _dispatch(self, cb: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._run_user, cb, *args)
        else:
            self._run_user(cb, *args)

    @staticmethod
    def _run_user(cb: Callable[..., None], *args: Any) -> None:
        try:
            cb(*args)
        except Exception:
            # Keep MQTT thread alive
            _LOGGER.exception("MQTT callback failed")

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if getattr(reason_code, "is_failure", False):
            with self._lock:
                self._connected = False
                self._last_error = f"connect reason_code={reason_code}"
            _LOGGER.warning("MQTT connect refused: %s", reason_code)
            return
        with self._lock:
            self._connected = True
            self._last_error = None
            on_connect_user = self._on_connect_user
        _LOGGER.info("MQTT connected %s:%s", self._host, self._port)
        if on_connect_user is not None:
            self._dispatch(on_connect_user)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        with self._lock:
            self._connected = False
            if getattr(reason_code, "value", reason_code) != 0:
                self._last_error = f"disconnect reason_code={reason_code}"
            on_disconnect_user = self._on_disconnect_user
        _LOGGER.info("MQTT disconnected (%s)", reason_code)
        if on_disconnect_user is not None:
            self._dispatch(on_disconnect_user)

    def _on_message(self, client, userdata, msg):
        handler = self._on_message_user
        if handler is None:
            return
        self._dispatch(handler, str(msg.topic), bytes(msg.payload or b""))

    def set_message_handler(self, handler: Callable[[str, bytes], None] | None) -> None:
        self._on_message_user = handler

    def set_connect_handler(self, handler: Callable[[], None] | None) -> None:
        self._on_connect_user = handler

    def set_disconnect_handler(self, handler: Callable[[], None] | None) -> None:
        self._on_disconnect_user = handler

    @property
    def connected(self) -> bool:
        with self._lock:
            return self._connected

    def activate(self) -> None:
        with self._lock:
            if self._active:
                return
            self._active = True
        try:
            # Auto-reconnect is paho's; re-subscribe happens in the connect handler.
            self._client.reconnect_delay_set(min_delay=1, max_delay=30)
            self._client.connect_async(self._host, self._port, keepalive=30)
            self._client.loop_start()
            _LOGGER.info("Activating MQTT connection %s:%s", self._host, self._port)
        except Exception as e:
            with self._lock:
                self._active = False
                self._connected = False
                self._last_error = str(e)
            _LOGGER.warning("MQTT activate failed: %s", e)

    def deactivate(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        try:
            self._client.loop_stop()
            self._client.disconnect()
        finally:
            with self._lock:
                self._connected = False

    def status(self) -> MqttStatus:
        with self._lock:
            return MqttStatus(connected=self._connected, last_error=self._last_error)

    def subscribe_topic(self, topic: str, *, qos: int = 0) -> None:
        if not self.connected:
            return
        self._client.subscribe(topic, qos=qos)

    def unsubscribe_topic(self, topic: str) -> None:
        if not self.connected:
            return
        self._client.unsubscribe(topic)
