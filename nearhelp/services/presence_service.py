"""Presence: last reported position, online flag and push token."""

from __future__ import annotations

import logging

from nearhelp.db.store import DocumentStore
from nearhelp.schemas.records import Location, UserPresenceRecord
from nearhelp.services.location_service import LocationService

logger = logging.getLogger(__name__)


class PresenceService:
    def __init__(self, store: DocumentStore, locations: LocationService, clock) -> None:
        self._store = store
        self._locations = locations
        self._clock = clock

    async def report_location(
        self,
        user_id: int,
        latitude: float,
        longitude: float,
        accuracy_m: float | None = None,
    ) -> UserPresenceRecord:
        """Store the user's position and keep it as their last known fix."""
        record = await self._store.update_presence(user_id, latitude=latitude, longitude=longitude)
        self._locations.remember(
            user_id,
            Location(latitude=latitude, longitude=longitude, accuracy_m=accuracy_m, captured_at=self._clock()),
        )
        return record

    async def set_online(self, user_id: int, online: bool) -> UserPresenceRecord:
        logger.debug("Presence user=%s online=%s", user_id, online)
        return await self._store.update_presence(user_id, is_online=online)

    async def heartbeat(self, user_id: int) -> UserPresenceRecord:
        """Refresh last_active without touching anything else."""
        return await self._store.update_presence(user_id)

    async def register_push_token(self, user_id: int, token: str | None) -> UserPresenceRecord:
        return await self._store.update_presence(user_id, push_token=token)

    async def get(self, user_id: int) -> UserPresenceRecord | None:
        return await self._store.get_user(user_id)
