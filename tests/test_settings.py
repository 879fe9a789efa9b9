from __future__ import annotations

import json

from homelink.settings import load_settings, read_options


def test_defaults():
    s = load_settings({})
    assert s.mqtt.host == "localhost"
    assert s.mqtt.port == 1883
    assert s.mqtt.base_topic == "smarthome"
    assert s.backend.base_url == "http://localhost:8080/api/v1"
    assert s.timing.grace_window_s == 90.0
    assert s.timing.staleness_threshold_s == 120.0
    assert s.timing.cache_max_age_s == 3600.0
    assert s.timing.poll_interval_s == 30.0
    assert s.timing.silence_threshold_s == 60.0
    assert s.timing.enrollment_timeout_s == 15.0
    assert s.identity_match == "substring"
    assert s.premises_id is None


def test_overrides_and_clamping():
    s = load_settings(
        {
            "mqtt": {"host": "broker", "port": 8883, "base_topic": "acme/"},
            "backend": {"base_url": "https://api.example/v1/", "token": "t", "timeout_s": 0},
            "timing": {"grace_window_s": "45", "poll_interval_s": "bogus"},
            "identity_match": "UNIQUE",
            "premises_id": "7",
            "debug": True,
        }
    )
    assert s.mqtt.base_topic == "acme"
    assert s.backend.base_url == "https://api.example/v1"
    assert s.backend.timeout_s == 1.0
    assert s.timing.grace_window_s == 45.0
    assert s.timing.poll_interval_s == 30.0
    assert s.identity_match == "unique"
    assert s.premises_id == 7
    assert s.debug is True


def test_unknown_match_mode_falls_back():
    assert load_settings({"identity_match": "fuzzy"}).identity_match == "substring"


def test_read_options(tmp_path, monkeypatch):
    path = tmp_path / "options.json"
    path.write_text(json.dumps({"premises_id": 4}), encoding="utf-8")
    monkeypatch.setenv("HOMELINK_OPTIONS", str(path))
    assert read_options() == {"premises_id": 4}

    monkeypatch.setenv("HOMELINK_OPTIONS", str(tmp_path / "missing.json"))
    assert read_options() == {}
