from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Protocol

from .errors import BackendError, EnrollmentInProgress, MessageError
from .messages import EnrollmentStatusMessage, Kind, decode
from .subscriptions import SubscriptionHandle, SubscriptionRegistry

_LOGGER = logging.getLogger("homelink.enrollment")

TIMEOUT_MESSAGE = "Card enrollment timed out, please retry"


class EnrollmentState(str, Enum):
    IDLE = "idle"
    AWAITING_HARDWARE = "awaiting_hardware"
    SUCCESS = "success"
    FAILURE = "failure"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class EnrollmentResult:
    state: EnrollmentState
    message: str = ""
    card_name: str | None = None
    at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"state": self.state.value, "message": self.message, "card_name": self.card_name, "at": self.at}


class EnrollmentBackend(Protocol):
    async def start_learning(self, premises_id: int, name: str | None = None) -> dict[str, Any]: ...

    async def learning_status(self, premises_id: int) -> dict[str, Any] | None: ...

    async def cancel_learning(self, premises_id: int) -> None: ...

    async def list_cards(self, premises_id: int) -> dict[str, Any]: ...


class EnrollmentSession:
    """Single-flight card learning for one premises.

    The gateway answers on the enrollment status topic; if nothing arrives
    before the timeout, the backend is asked once for the learning status
    before giving up. Every exit from AWAITING_HARDWARE disarms the timer and
    drops the status subscription.
    """

    def __init__(
        self,
        premises_id: int,
        *,
        backend: EnrollmentBackend,
        registry: SubscriptionRegistry,
        status_topic: str,
        timeout_s: float = 15.0,
        clock: Callable[[], float] = time.time,
    ):
        self._premises_id = int(premises_id)
        self._backend = backend
        self._registry = registry
        self._status_topic = status_topic
        self._timeout_s = float(timeout_s)
        self._clock = clock

        self._state = EnrollmentState.IDLE
        self._generation = 0
        self._card_name: str | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._handle: SubscriptionHandle | None = None
        self._fallback: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._refresh_tasks: set[asyncio.Task] = set()

        self._cards: list[dict[str, Any]] = []
        self._card_limit: int | None = None
        self._listeners: list[Callable[[EnrollmentResult], None]] = []
        self.last_result: EnrollmentResult | None = None

    @property
    def premises_id(self) -> int:
        return self._premises_id

    @property
    def state(self) -> EnrollmentState:
        return self._state

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    def add_listener(self, cb: Callable[[EnrollmentResult], None]) -> None:
        self._listeners.append(cb)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "card_name": self._card_name,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "cards": list(self._cards),
            "max_cards": self._card_limit,
        }

    # -- lifecycle ---------------------------------------------------------

    async def start(self, name: str | None = None) -> None:
        if self._state is EnrollmentState.AWAITING_HARDWARE:
            raise EnrollmentInProgress(self._premises_id)

        self._loop = asyncio.get_running_loop()
        self._generation += 1
        gen = self._generation
        self._state = EnrollmentState.AWAITING_HARDWARE
        self._card_name = (name or "").strip() or None
        self._handle = self._registry.subscribe(self._status_topic, self.handle_status)
        _LOGGER.info("Card enrollment started for premises %s", self._premises_id)

        try:
            await self._backend.start_learning(self._premises_id, self._card_name)
        except BaseException:
            if gen == self._generation:
                self._exit_awaiting()
                self._state = EnrollmentState.IDLE
            raise

        # A push may already have settled this attempt while begin was in flight.
        if gen == self._generation and self._state is EnrollmentState.AWAITING_HARDWARE:
            self._timer = self._loop.call_later(self._timeout_s, self._on_timeout, gen)

    async def cancel(self) -> bool:
        if self._state is not EnrollmentState.AWAITING_HARDWARE:
            return False
        self._generation += 1
        self._exit_awaiting()
        self._state = EnrollmentState.IDLE
        _LOGGER.info("Card enrollment cancelled for premises %s", self._premises_id)
        try:
            await self._backend.cancel_learning(self._premises_id)
        except BackendError as e:
            _LOGGER.warning("Backend cancel for premises %s failed: %s", self._premises_id, e)
        return True

    def teardown(self) -> None:
        self._generation += 1
        self._exit_awaiting()
        for task in list(self._refresh_tasks):
            task.cancel()
        self._refresh_tasks.clear()
        self._state = EnrollmentState.IDLE

    def _disarm(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def _exit_awaiting(self) -> None:
        self._disarm()
        handle, self._handle = self._handle, None
        self._registry.unsubscribe(handle)
        task, self._fallback = self._fallback, None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    def _finish(self, state: EnrollmentState, message: str) -> None:
        self._generation += 1
        self._exit_awaiting()
        result = EnrollmentResult(state=state, message=message, card_name=self._card_name, at=self._clock())
        self.last_result = result
        self._state = state
        if state is EnrollmentState.SUCCESS:
            _LOGGER.info("Card enrollment succeeded for premises %s", self._premises_id)
        else:
            _LOGGER.warning("Card enrollment ended (%s) for premises %s: %s", state.value, self._premises_id, message)
        for cb in list(self._listeners):
            try:
                cb(result)
            except Exception:
                _LOGGER.exception("Enrollment listener failed")
        self._state = EnrollmentState.IDLE
        if state is EnrollmentState.SUCCESS:
            self._schedule_refresh()

    # -- inputs ------------------------------------------------------------

    def handle_status(self, body: Any) -> None:
        try:
            msg = decode(Kind.ENROLLMENT_STATUS, body)
        except MessageError as e:
            _LOGGER.warning("Ignoring enrollment status: %s", e)
            return
        self.apply_status(msg)

    def apply_status(self, msg: EnrollmentStatusMessage) -> bool:
        """Returns True when the message settled the current attempt."""
        if self._state is not EnrollmentState.AWAITING_HARDWARE:
            return False
        if not msg.complete:
            # learningMode=false alone is not an outcome
            return False
        if msg.success:
            self._finish(EnrollmentState.SUCCESS, msg.result or "Card enrolled")
        else:
            self._finish(EnrollmentState.FAILURE, msg.result or "Card enrollment failed")
        return True

    def _on_timeout(self, gen: int) -> None:
        self._timer = None
        if gen != self._generation or self._state is not EnrollmentState.AWAITING_HARDWARE:
            return
        assert self._loop is not None
        self._fallback = self._loop.create_task(self._fallback_poll(gen))

    async def _fallback_poll(self, gen: int) -> None:
        status: dict[str, Any] | None = None
        try:
            status = await self._backend.learning_status(self._premises_id)
        except asyncio.CancelledError:
            raise
        except BackendError as e:
            _LOGGER.warning("Learning status check failed for premises %s: %s", self._premises_id, e)
        except Exception:
            _LOGGER.exception("Learning status check crashed for premises %s", self._premises_id)

        if gen != self._generation or self._state is not EnrollmentState.AWAITING_HARDWARE:
            # a push or a cancel got there first
            return
        self._fallback = None
        if status is not None:
            try:
                msg = decode(Kind.ENROLLMENT_STATUS, status)
            except MessageError:
                msg = None
            if isinstance(msg, EnrollmentStatusMessage) and self.apply_status(msg):
                return
        self._finish(EnrollmentState.TIMED_OUT, TIMEOUT_MESSAGE)

    # -- credentials -------------------------------------------------------

    def cards(self) -> list[dict[str, Any]]:
        return list(self._cards)

    async def refresh_cards(self) -> list[dict[str, Any]]:
        data = await self._backend.list_cards(self._premises_id)
        cards = data.get("cards") if isinstance(data, dict) else None
        self._cards = [c for c in (cards or []) if isinstance(c, dict)]
        limit = data.get("maxCards") if isinstance(data, dict) else None
        self._card_limit = int(limit) if isinstance(limit, int) else self._card_limit
        return list(self._cards)

    def handle_credential_list(self, _body: Any) -> None:
        self._schedule_refresh()

    def _schedule_refresh(self) -> None:
        try:
            loop = self._loop or asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._refresh_quietly())
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh_cards()
        except asyncio.CancelledError:
            raise
        except BackendError as e:
            _LOGGER.warning("Card list refresh failed for premises %s: %s", self._premises_id, e)
        except Exception:
            _LOGGER.exception("Card list refresh crashed for premises %s", self._premises_id)


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
