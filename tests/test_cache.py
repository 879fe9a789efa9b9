from __future__ import annotations

import json
import os

from homelink.cache import SnapshotCache
from homelink.models import TelemetrySnapshot


def test_save_and_restore_is_flagged_stale(tmp_path, clock):
    cache = SnapshotCache(str(tmp_path / "cache.json"), clock=clock)
    snap = TelemetrySnapshot(premises_id=3, readings={"temperature": 22.0, "gas": 5}, captured_at=clock.now)
    cache.save(3, snap)

    clock.advance(600)
    restored = cache.restore(3, max_age=3600)
    assert restored is not None
    assert restored.stale is True
    assert restored.snapshot.readings == {"temperature": 22.0, "gas": 5}
    assert restored.snapshot.captured_at == snap.captured_at


def test_restore_respects_max_age(tmp_path, clock):
    cache = SnapshotCache(str(tmp_path / "cache.json"), clock=clock)
    cache.save(3, TelemetrySnapshot(premises_id=3, readings={"a": 1}, captured_at=clock.now))
    clock.advance(3601)
    assert cache.restore(3, max_age=3600) is None


def test_restore_missing_premises(tmp_path, clock):
    cache = SnapshotCache(str(tmp_path / "cache.json"), clock=clock)
    assert cache.restore(1, max_age=3600) is None
    cache.save(2, TelemetrySnapshot(premises_id=2, readings={}, captured_at=clock.now))
    assert cache.restore(1, max_age=3600) is None


def test_keys_are_per_premises(tmp_path, clock):
    path = tmp_path / "cache.json"
    cache = SnapshotCache(str(path), clock=clock)
    cache.save(1, TelemetrySnapshot(premises_id=1, readings={"a": 1}, captured_at=clock.now))
    cache.save(2, TelemetrySnapshot(premises_id=2, readings={"b": 2}, captured_at=clock.now))
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert set(raw) == {"telemetry:1", "telemetry:2"}

    assert cache.forget(1) is True
    assert cache.forget(1) is False
    assert cache.restore(2, max_age=60).snapshot.readings == {"b": 2}


def test_corrupt_file_is_moved_aside(tmp_path, clock):
    path = tmp_path / "cache.json"
    path.write_text("{not json", encoding="utf-8")
    cache = SnapshotCache(str(path), clock=clock)

    assert cache.restore(1, max_age=3600) is None
    assert not path.exists()
    assert any(name.startswith("cache.json.corrupt.") for name in os.listdir(tmp_path))
