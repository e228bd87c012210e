"""Location provider.

A ``PositionSource`` is whatever can produce a fix: the device (through the
client) or a stored last-known position. ``LocationService`` applies the
timeout and retry policy and keeps the last good fix.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Protocol

from nearhelp.core import emergency_policies as policies
from nearhelp.core.exceptions import LocationError
from nearhelp.db.store import DocumentStore
from nearhelp.schemas.records import Location

logger = logging.getLogger(__name__)


class PositionSource(Protocol):
    async def get_current_position(self, high_accuracy: bool, timeout_ms: int) -> Location: ...


class ReportedPositionSource:
    """Position the client sent with the request.

    The client either includes a fix or the error its device reported
    (``permission_denied``, ``unavailable`` or ``timeout``).
    """

    def __init__(self, location: Location | None = None, error: str | None = None) -> None:
        self._location = location
        self._error = error

    async def get_current_position(self, high_accuracy: bool, timeout_ms: int) -> Location:
        if self._location is not None:
            return self._location
        raise LocationError(self._error or LocationError.UNAVAILABLE)


class StoredPositionSource:
    """Last position the user reported through presence updates."""

    def __init__(self, store: DocumentStore, user_id: int) -> None:
        self._store = store
        self._user_id = user_id

    async def get_current_position(self, high_accuracy: bool, timeout_ms: int) -> Location:
        user = await self._store.get_user(self._user_id)
        if user is None or user.latitude is None or user.longitude is None:
            raise LocationError(LocationError.UNAVAILABLE, "No stored location")
        return Location(
            latitude=user.latitude,
            longitude=user.longitude,
            captured_at=user.location_updated_at or user.last_active or datetime.now(timezone.utc),
        )


class LocationService:
    """High-accuracy attempt, one relaxed retry on timeout, last-known cache."""

    def __init__(
        self,
        clock,
        timeout_ms: int = policies.LOCATION_TIMEOUT_MS,
        retry_timeout_ms: int = policies.LOCATION_RETRY_TIMEOUT_MS,
        cache_max_age_s: int = policies.LOCATION_CACHE_MAX_AGE_S,
    ) -> None:
        self._clock = clock
        self.timeout_ms = timeout_ms
        self.retry_timeout_ms = retry_timeout_ms
        self.cache_max_age_s = cache_max_age_s
        self._last_known: dict[int, Location] = {}

    def last_known(self, user_id: int) -> Location | None:
        loc = self._last_known.get(user_id)
        if loc is None:
            return None
        if self._clock() - loc.captured_at > timedelta(seconds=self.cache_max_age_s):
            return None
        return loc

    def remember(self, user_id: int, location: Location) -> None:
        self._last_known[user_id] = location

    async def _attempt(self, source: PositionSource, high_accuracy: bool, timeout_ms: int) -> Location:
        try:
            return await asyncio.wait_for(source.get_current_position(high_accuracy, timeout_ms), timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise LocationError(LocationError.TIMEOUT) from e

    async def get_location(self, user_id: int, source: PositionSource) -> Location:
        """Fetch a fresh fix. Raises LocationError when nothing can be had."""
        try:
            loc = await self._attempt(source, True, self.timeout_ms)
        except LocationError as e:
            if not e.retryable:
                logger.warning("Location fetch failed for user=%s: %s", user_id, e.kind)
                raise
            logger.info("High-accuracy location timed out for user=%s, retrying relaxed", user_id)
            loc = await self._attempt(source, False, self.retry_timeout_ms)
        self.remember(user_id, loc)
        return loc

    async def warm(self, user_id: int, source: PositionSource) -> None:
        """Refresh the cache unless it already holds a recent fix."""
        if self.last_known(user_id) is not None:
            return
        try:
            await self.get_location(user_id, source)
        except LocationError as e:
            logger.info("Location warm-up failed for user=%s: %s", user_id, e.kind)

    async def best_effort(
        self,
        user_id: int,
        source: PositionSource,
        fallback: PositionSource | None = None,
    ) -> tuple[Location | None, str | None]:
        """Fresh fix, else any cached fix, else ``fallback``, else None.

        Returns ``(location, warning)``; warning is set whenever the fresh
        fetch did not succeed.
        """
        try:
            return await self.get_location(user_id, source), None
        except LocationError as e:
            reason = e.kind
        cached = self._last_known.get(user_id)
        if cached is None and fallback is not None:
            try:
                cached = await fallback.get_current_position(False, self.retry_timeout_ms)
            except LocationError:
                cached = None
        if cached is not None:
            return cached, f"Using last known location ({reason})"
        return None, f"Location unavailable ({reason})"
