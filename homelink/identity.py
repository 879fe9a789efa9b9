from __future__ import annotations

import logging
from typing import Iterable

from .models import Device
from .settings import MATCH_EXACT, MATCH_SUBSTRING, MATCH_UNIQUE, MatchMode

_LOGGER = logging.getLogger("homelink.identity")


class IdentityResolver:
    """Maps an inbound (pin, code) pair to one locally known device id.

    Tiers, strongest first: exact pin, case-insensitive exact code, then
    case-insensitive substring in either direction. The first device of the
    first matching tier wins. The substring tier can pick the wrong device when
    codes are not prefix-disjoint; `mode` controls how much of it is trusted:

    - "substring": first substring match wins
    - "unique": substring match accepted only when exactly one device matches
    - "exact": substring tier disabled
    """

    def __init__(self, mode: MatchMode = MATCH_SUBSTRING):
        if mode not in (MATCH_SUBSTRING, MATCH_UNIQUE, MATCH_EXACT):
            raise ValueError(f"unknown match mode {mode!r}")
        self._mode = mode

    @property
    def mode(self) -> MatchMode:
        return self._mode

    def resolve(self, devices: Iterable[Device], *, pin: int | None = None, code: str | None = None) -> int | None:
        items = list(devices)

        if pin is not None:
            for dev in items:
                if dev.pin is not None and dev.pin == pin:
                    return dev.id

        needle = (code or "").strip().lower()
        if not needle:
            _LOGGER.debug("No device for pin=%s (no code to fall back to)", pin)
            return None

        for dev in items:
            if dev.code and dev.code.strip().lower() == needle:
                return dev.id

        if self._mode == MATCH_EXACT:
            _LOGGER.debug("No exact device match for pin=%s code=%s", pin, code)
            return None

        matches = [dev.id for dev in items if dev.code and _overlaps(dev.code.strip().lower(), needle)]
        if not matches:
            _LOGGER.debug("No device match for pin=%s code=%s", pin, code)
            return None
        if self._mode == MATCH_UNIQUE and len(matches) > 1:
            _LOGGER.info("Ambiguous code %s matches devices %s; dropping", code, matches)
            return None
        return matches[0]


def _overlaps(known: str, inbound: str) -> bool:
    return inbound in known or known in inbound
