from __future__ import annotations

import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol

_LOGGER = logging.getLogger("homelink.subscriptions")

Handler = Callable[[Any], None]


class Transport(Protocol):
    connected: bool

    def activate(self) -> None: ...

    def subscribe_topic(self, topic: str, *, qos: int = 0) -> None: ...

    def unsubscribe_topic(self, topic: str) -> None: ...

    def set_message_handler(self, handler: Callable[[str, bytes], None] | None) -> None: ...

    def set_connect_handler(self, handler: Callable[[], None] | None) -> None: ...


@dataclass(frozen=True)
class SubscriptionHandle:
    id: int
    topic: str


@dataclass
class _Entry:
    handle: SubscriptionHandle
    handler: Handler


def decode_payload(payload: bytes | str) -> Any:
    """JSON body if there is one, otherwise the bare text (e.g. "online")."""
    if isinstance(payload, (bytes, bytearray)):
        text = bytes(payload).decode("utf-8")
    else:
        text = str(payload)
    s = text.strip()
    if not s:
        return ""
    try:
        return json.loads(s)
    except (json.JSONDecodeError, ValueError):
        if s[0] in "{[":
            raise
        return s


class SubscriptionRegistry:
    """(topic, handler) pairs that must survive reconnects.

    Entries are kept in registration order; on every connect each distinct
    topic is subscribed again in that order.
    """

    def __init__(self, transport: Transport, *, qos: int = 1):
        self._transport = transport
        self._qos = qos
        self._ids = itertools.count(1)
        self._entries: dict[int, _Entry] = {}
        transport.set_message_handler(self._on_message)
        transport.set_connect_handler(self._on_connect)

    def subscribe(self, topic: str, handler: Handler) -> SubscriptionHandle:
        for entry in self._entries.values():
            if entry.handle.topic == topic and entry.handler == handler:
                return entry.handle

        first_for_topic = topic not in self.topics()
        handle = SubscriptionHandle(id=next(self._ids), topic=topic)
        self._entries[handle.id] = _Entry(handle=handle, handler=handler)

        self._transport.activate()
        if first_for_topic and self._transport.connected:
            self._transport.subscribe_topic(topic, qos=self._qos)
        elif first_for_topic:
            _LOGGER.debug("Queueing subscription for %s (not connected yet)", topic)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle | None) -> None:
        if handle is None:
            return
        entry = self._entries.pop(handle.id, None)
        if entry is None:
            return
        if handle.topic not in self.topics():
            self._transport.unsubscribe_topic(handle.topic)

    def clear(self) -> None:
        for handle in [e.handle for e in self._entries.values()]:
            self.unsubscribe(handle)

    def topics(self) -> list[str]:
        out: list[str] = []
        for entry in self._entries.values():
            if entry.handle.topic not in out:
                out.append(entry.handle.topic)
        return out

    def active_count(self) -> int:
        return len(self._entries)

    def _on_connect(self) -> None:
        topics = self.topics()
        if topics:
            _LOGGER.info("Resubscribing %d topic(s)", len(topics))
        for topic in topics:
            try:
                self._transport.subscribe_topic(topic, qos=self._qos)
            except Exception:
                _LOGGER.exception("Resubscribe failed for %s", topic)

    def _on_message(self, topic: str, payload: bytes | str) -> None:
        entries = [e for e in self._entries.values() if e.handle.topic == topic]
        if not entries:
            return
        try:
            body = decode_payload(payload)
        except (UnicodeDecodeError, json.JSONDecodeError, ValueError) as e:
            _LOGGER.warning("Dropping malformed payload on %s: %s", topic, e)
            return
        for entry in entries:
            # an earlier handler may have unsubscribed this one
            if entry.handle.id not in self._entries:
                continue
            try:
                entry.handler(body)
            except Exception:
                _LOGGER.exception("Handler failed for %s", topic)
