from __future__ import annotations

import pytest

from homelink.identity import IdentityResolver
from homelink.models import Device


@pytest.fixture
def devices():
    return [
        Device(id=1, code="LIGHT_KITCHEN", pin=4),
        Device(id=2, code="LIGHT_KITCHEN_2", pin=5),
        Device(id=3, code="FAN", pin=None),
    ]


def test_pin_wins_over_code(devices):
    r = IdentityResolver()
    assert r.resolve(devices, pin=5, code="LIGHT_KITCHEN") == 2


def test_exact_code_is_case_insensitive(devices):
    r = IdentityResolver()
    assert r.resolve(devices, code="light_kitchen") == 1
    assert r.resolve(devices, code="  fan ") == 3


def test_unknown_pin_falls_back_to_code(devices):
    r = IdentityResolver()
    assert r.resolve(devices, pin=99, code="FAN") == 3


def test_substring_either_direction(devices):
    r = IdentityResolver()
    assert r.resolve(devices, code="FAN_LIVING") == 3
    assert r.resolve(devices, code="KITCHEN_2") == 2


def test_ambiguous_substring_first_match_by_default(devices):
    r = IdentityResolver()
    # both kitchen lights contain "KITCHEN"
    assert r.resolve(devices, code="KITCHEN") == 1


def test_unique_mode_drops_ambiguous_match(devices):
    r = IdentityResolver("unique")
    assert r.resolve(devices, code="KITCHEN") is None
    assert r.resolve(devices, code="KITCHEN_2") == 2


def test_exact_mode_disables_substring(devices):
    r = IdentityResolver("exact")
    assert r.resolve(devices, code="FAN_LIVING") is None
    assert r.resolve(devices, code="fan") == 3


def test_no_identifiers_resolve_to_none(devices):
    r = IdentityResolver()
    assert r.resolve(devices) is None
    assert r.resolve([], pin=4, code="x") is None


def test_unknown_mode_rejected():
    with pytest.raises(ValueError):
        IdentityResolver("fuzzy")  # type: ignore[arg-type]


def test_pin_match_beats_conflicting_code():
    devices = [Device(id=1, code="LED_A", pin=5), Device(id=2, code="LED_B", pin=6)]
    r = IdentityResolver()
    assert r.resolve(devices, pin=5, code="LED_B") == 1
    assert r.resolve(devices, code="led_a") == 1
