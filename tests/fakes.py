"""Test doubles for time, notifications and positioning."""

from __future__ import annotations

import asyncio
import heapq
import itertools
from datetime import datetime, timedelta, timezone

from nearhelp.core.exceptions import LocationError
from nearhelp.core.scheduler import AsyncioScheduler
from nearhelp.schemas.records import Location

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _Handle:
    def __init__(self, due: datetime, callback) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(AsyncioScheduler):
    """Scheduler whose clock only moves when the test calls ``advance``.

    Background coroutines still run on the event loop; use ``drain``.
    """

    def __init__(self, start: datetime = START) -> None:
        super().__init__()
        self._now = start
        self._heap: list[tuple[datetime, int, _Handle]] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self._now

    def call_later(self, delay_s: float, callback) -> _Handle:
        handle = _Handle(self._now + timedelta(seconds=max(delay_s, 0.0)), callback)
        heapq.heappush(self._heap, (handle.due, next(self._seq), handle))
        return handle

    def advance(self, seconds: float) -> None:
        target = self._now + timedelta(seconds=seconds)
        while self._heap and self._heap[0][0] <= target:
            due, _, handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            self._now = due
            handle.callback()
        self._now = target

    def pending(self) -> int:
        return sum(1 for _, _, h in self._heap if not h.cancelled)


class FakeNotifier:
    """Records deliveries; raises for user ids listed in ``fail_for``."""

    def __init__(self, fail_for: set[int] | None = None) -> None:
        self.sent: list[tuple[int, object]] = []
        self.fail_for = fail_for or set()
        self.on_deliver = None

    async def deliver(self, user_id: int, payload, event: str = "alert") -> bool:
        if user_id in self.fail_for:
            raise RuntimeError("device unreachable")
        self.sent.append((user_id, payload))
        if self.on_deliver is not None:
            await self.on_deliver(user_id, payload)
        return True

    def recipients(self, kind: str | None = None) -> list[int]:
        return [uid for uid, p in self.sent if kind is None or p.data.get("type") == kind]


class FakePositionSource:
    """Plays back a script of fixes, LocationErrors or ``"hang"``."""

    def __init__(self, *script) -> None:
        self.script = list(script)
        self.calls: list[tuple[bool, int]] = []

    async def get_current_position(self, high_accuracy: bool, timeout_ms: int) -> Location:
        self.calls.append((high_accuracy, timeout_ms))
        step = self.script.pop(0) if self.script else LocationError(LocationError.UNAVAILABLE)
        if step == "hang":
            await asyncio.sleep(3600)
        if isinstance(step, LocationError):
            raise step
        return step


def fix(lat: float, lng: float, at: datetime = START) -> Location:
    return Location(latitude=lat, longitude=lng, accuracy_m=10.0, captured_at=at)
