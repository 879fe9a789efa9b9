from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from homelink.mqtt_client import MqttClient


def _client(loop=None) -> MqttClient:
    return MqttClient(host="localhost", port=1883, username="", password="", client_id="homelink-test", loop=loop)


def test_message_without_loop_is_delivered_inline():
    c = _client()
    seen = []
    c.set_message_handler(lambda topic, payload: seen.append((topic, payload)))
    c._on_message(None, None, SimpleNamespace(topic="a/b", payload=b"online"))
    assert seen == [("a/b", b"online")]


@pytest.mark.asyncio
async def test_message_is_marshalled_onto_loop():
    c = _client()
    c.attach_loop(asyncio.get_running_loop())
    seen = []
    c.set_message_handler(lambda topic, payload: seen.append(topic))
    c._on_message(None, None, SimpleNamespace(topic="a/b", payload=b"{}"))
    assert seen == []
    await asyncio.sleep(0)
    assert seen == ["a/b"]


def test_handler_errors_are_contained():
    c = _client()

    def boom(topic, payload):
        raise RuntimeError("bug")

    c.set_message_handler(boom)
    c._on_message(None, None, SimpleNamespace(topic="a/b", payload=b""))


def test_connect_and_disconnect_track_status():
    c = _client()
    connects = []
    c.set_connect_handler(lambda: connects.append(True))

    c._on_connect(None, None, None, SimpleNamespace(is_failure=False))
    assert c.connected
    assert connects == [True]

    c._on_disconnect(None, None, None, SimpleNamespace(value=7))
    assert not c.connected
    assert c.status().last_error is not None


def test_refused_connect_is_recorded():
    c = _client()
    c._on_connect(None, None, None, SimpleNamespace(is_failure=True))
    assert not c.connected
    assert "reason_code" in c.status().last_error


def test_subscribe_is_noop_while_disconnected():
    c = _client()
    c.subscribe_topic("a/b", qos=1)
    c.unsubscribe_topic("a/b")
    assert not c.connected
