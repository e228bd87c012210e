"""SOS activation state machine.

Turns raw button gestures into a single trigger intent:

* hold for the full hold duration, then confirm (or let the countdown run
  out, or cancel);
* or tap quickly ``rapid_tap_count`` times inside the tap window.

All timing goes through the injected scheduler.
"""

from __future__ import annotations

import enum
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable

from nearhelp.core import emergency_policies as policies
from nearhelp.core.scheduler import Scheduler, TimerHandle
from nearhelp.schemas.records import TriggerReason

logger = logging.getLogger(__name__)


class ActivationState(str, enum.Enum):
    IDLE = "idle"
    HOLDING = "holding"
    RAPID_COUNTING = "rapid_counting"
    CONFIRMING = "confirming"
    TRIGGERED = "triggered"


_TRANSITIONS: dict[ActivationState, frozenset[ActivationState]] = {
    ActivationState.IDLE: frozenset({ActivationState.HOLDING}),
    ActivationState.HOLDING: frozenset(
        {
            ActivationState.IDLE,
            ActivationState.RAPID_COUNTING,
            ActivationState.CONFIRMING,
            ActivationState.TRIGGERED,
        }
    ),
    ActivationState.RAPID_COUNTING: frozenset({ActivationState.HOLDING, ActivationState.IDLE}),
    ActivationState.CONFIRMING: frozenset({ActivationState.IDLE, ActivationState.TRIGGERED}),
    ActivationState.TRIGGERED: frozenset({ActivationState.IDLE}),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass(frozen=True)
class ActivationSnapshot:
    state: ActivationState
    hold_progress: float
    tap_count: int
    countdown: int


class SosActivation:
    """Gesture state machine for one SOS button."""

    def __init__(
        self,
        scheduler: Scheduler,
        on_trigger: Callable[[TriggerReason], Any],
        *,
        on_change: Callable[[ActivationSnapshot], Any] | None = None,
        on_hold_start: Callable[[], Any] | None = None,
        is_busy: Callable[[], bool] | None = None,
        hold_duration_ms: int = policies.HOLD_DURATION_MS,
        hold_sample_ms: int = policies.HOLD_SAMPLE_MS,
        rapid_tap_count: int = policies.RAPID_TAP_COUNT,
        rapid_tap_window_ms: int = policies.RAPID_TAP_WINDOW_MS,
        confirmation_seconds: int = policies.CONFIRMATION_SECONDS,
    ) -> None:
        self._scheduler = scheduler
        self._on_trigger = on_trigger
        self._on_change = on_change
        self._on_hold_start = on_hold_start
        self._is_busy = is_busy
        self.hold_duration_ms = hold_duration_ms
        self.hold_sample_ms = hold_sample_ms
        self.rapid_tap_count = rapid_tap_count
        self.rapid_tap_window_ms = rapid_tap_window_ms
        self.confirmation_seconds = confirmation_seconds

        self.state = ActivationState.IDLE
        self.hold_progress = 0.0
        self.tap_count = 0
        self.countdown = confirmation_seconds
        self._hold_ticks = 0
        self._disposed = False

        self._hold_tick_timer: TimerHandle | None = None
        self._hold_complete_timer: TimerHandle | None = None
        self._tap_window_timer: TimerHandle | None = None
        self._countdown_timer: TimerHandle | None = None

    # -- public events --------------------------------------------------------

    def press(self) -> None:
        if self._disposed or self.state not in (ActivationState.IDLE, ActivationState.RAPID_COUNTING):
            return
        if self._is_busy is not None and self._is_busy():
            logger.debug("SOS press ignored while busy")
            return
        self._transition(ActivationState.HOLDING)
        self.hold_progress = 0.0
        self._hold_ticks = 0
        # completion is scheduled first so it wins a tie with the last tick
        self._hold_complete_timer = self._scheduler.call_later(self.hold_duration_ms / 1000, self._hold_complete)
        self._hold_tick_timer = self._scheduler.call_later(self.hold_sample_ms / 1000, self._hold_tick)
        self._run_hook(self._on_hold_start)
        self._emit()

    def release(self) -> None:
        if self._disposed or self.state != ActivationState.HOLDING:
            return
        self._cancel_hold_timers()
        progress = self.hold_progress
        self.hold_progress = 0.0
        self._hold_ticks = 0
        if 0 < progress < 100:
            self._register_tap()
            return
        self._transition(ActivationState.RAPID_COUNTING if self.tap_count else ActivationState.IDLE)
        self._emit()

    def confirm(self) -> None:
        if self._disposed or self.state != ActivationState.CONFIRMING:
            return
        self._trigger(TriggerReason.CONFIRMED)

    def cancel(self) -> None:
        if self._disposed or self.state != ActivationState.CONFIRMING:
            return
        self._cancel(self._countdown_timer)
        self._countdown_timer = None
        self.countdown = self.confirmation_seconds
        self._transition(ActivationState.IDLE)
        self._emit()

    def dispose(self) -> None:
        """Drop every pending timer; later events are ignored."""
        self._cancel_all()
        self._disposed = True
        self.state = ActivationState.IDLE
        self.hold_progress = 0.0
        self.tap_count = 0
        self.countdown = self.confirmation_seconds

    def snapshot(self) -> ActivationSnapshot:
        return ActivationSnapshot(
            state=self.state,
            hold_progress=self.hold_progress,
            tap_count=self.tap_count,
            countdown=self.countdown,
        )

    # -- timers ---------------------------------------------------------------

    def _hold_tick(self) -> None:
        self._hold_tick_timer = None
        if self.state != ActivationState.HOLDING:
            return
        self._hold_ticks += 1
        self.hold_progress = min(100.0, self._hold_ticks * self.hold_sample_ms * 100.0 / self.hold_duration_ms)
        if self.hold_progress < 100:
            self._hold_tick_timer = self._scheduler.call_later(self.hold_sample_ms / 1000, self._hold_tick)
        self._emit()

    def _hold_complete(self) -> None:
        self._hold_complete_timer = None
        if self.state != ActivationState.HOLDING:
            return
        self._cancel(self._hold_tick_timer)
        self._hold_tick_timer = None
        self.hold_progress = 0.0
        self._hold_ticks = 0
        self._transition(ActivationState.CONFIRMING)
        self.countdown = self.confirmation_seconds
        self._countdown_timer = self._scheduler.call_later(1.0, self._countdown_tick)
        logger.info("SOS hold complete, confirming")
        self._emit()

    def _countdown_tick(self) -> None:
        self._countdown_timer = None
        if self.state != ActivationState.CONFIRMING:
            return
        self.countdown -= 1
        if self.countdown <= 0:
            self.countdown = 0
            self._trigger(TriggerReason.AUTO)
            return
        self._countdown_timer = self._scheduler.call_later(1.0, self._countdown_tick)
        self._emit()

    def _tap_window_expired(self) -> None:
        self._tap_window_timer = None
        self.tap_count = 0
        if self.state == ActivationState.RAPID_COUNTING:
            self._transition(ActivationState.IDLE)
        self._emit()

    # -- internals ------------------------------------------------------------

    def _register_tap(self) -> None:
        self.tap_count += 1
        self._cancel(self._tap_window_timer)
        self._tap_window_timer = None
        if self.tap_count >= self.rapid_tap_count:
            logger.info("SOS rapid tap threshold reached")
            self._trigger(TriggerReason.RAPID_TAP)
            return
        self._tap_window_timer = self._scheduler.call_later(self.rapid_tap_window_ms / 1000, self._tap_window_expired)
        self._transition(ActivationState.RAPID_COUNTING)
        self._emit()

    def _trigger(self, reason: TriggerReason) -> None:
        if self.state == ActivationState.TRIGGERED:
            return
        self._transition(ActivationState.TRIGGERED)
        self._cancel_all()
        self.tap_count = 0
        self.hold_progress = 0.0
        self.countdown = self.confirmation_seconds
        logger.info("SOS triggered: reason=%s", reason.value)
        self._emit()
        try:
            result = self._on_trigger(reason)
            if inspect.isawaitable(result):
                self._scheduler.spawn(result)
        finally:
            self._transition(ActivationState.IDLE)
            self._emit()

    def _transition(self, target: ActivationState) -> None:
        if target == self.state:
            return
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {target.value}")
        self.state = target

    def _run_hook(self, hook: Callable[[], Any] | None) -> None:
        if hook is None:
            return
        result = hook()
        if inspect.isawaitable(result):
            self._scheduler.spawn(result)

    def _emit(self) -> None:
        if self._on_change is None:
            return
        result = self._on_change(self.snapshot())
        if inspect.isawaitable(result):
            self._scheduler.spawn(result)

    def _cancel_hold_timers(self) -> None:
        self._cancel(self._hold_tick_timer)
        self._cancel(self._hold_complete_timer)
        self._hold_tick_timer = None
        self._hold_complete_timer = None

    def _cancel_all(self) -> None:
        self._cancel_hold_timers()
        self._cancel(self._tap_window_timer)
        self._cancel(self._countdown_timer)
        self._tap_window_timer = None
        self._countdown_timer = None

    @staticmethod
    def _cancel(handle: TimerHandle | None) -> None:
        if handle is not None:
            handle.cancel()
