"""Geo helpers and expanding-radius helper discovery."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from nearhelp.core import emergency_policies as policies
from nearhelp.core.exceptions import DiscoveryError, StoreUnavailableError
from nearhelp.db.store import DocumentStore
from nearhelp.schemas.records import EmergencyRecord, EmergencyStatus, Location, UserPresenceRecord

logger = logging.getLogger(__name__)


@dataclass
class HelperCandidate:
    """Potential helper found around a victim."""

    user_id: int
    display_name: str
    email: str | None
    phone: str | None
    latitude: float
    longitude: float
    distance_km: float
    is_online: bool
    push_token: str | None = None


@dataclass
class DiscoveryResult:
    helpers: list[HelperCandidate]
    radius_km: float


@dataclass
class NearbyEmergency:
    """Open emergency as seen from a helper's position."""

    emergency: EmergencyRecord
    distance_km: float


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance between two lat/lng points in kilometers."""
    R = 6371.0  # Earth radius in km
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2
    )
    return R * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def is_online(user: UserPresenceRecord, now: datetime, window_minutes: int = policies.ONLINE_WINDOW_MINUTES) -> bool:
    """Explicit online flag, or activity within the last few minutes."""
    if user.is_online:
        return True
    if user.last_active is None:
        return False
    return now - user.last_active <= timedelta(minutes=window_minutes)


def rank_candidates(candidates: list[HelperCandidate]) -> list[HelperCandidate]:
    """Online helpers first, then nearest first."""
    return sorted(candidates, key=lambda c: (not c.is_online, c.distance_km))


class HelperDiscovery:
    """Expanding-radius search for people near a victim.

    Starts at ``min_radius_km`` and grows by ``increment_km`` until someone is
    found or ``max_radius_km`` has been searched. An empty result at the
    ceiling is not an error.
    """

    def __init__(
        self,
        store: DocumentStore,
        clock,
        min_radius_km: float = policies.SEARCH_MIN_RADIUS_KM,
        increment_km: float = policies.SEARCH_RADIUS_INCREMENT_KM,
        max_radius_km: float = policies.SEARCH_MAX_RADIUS_KM,
        online_window_minutes: int = policies.ONLINE_WINDOW_MINUTES,
    ) -> None:
        if min_radius_km <= 0 or increment_km <= 0 or max_radius_km < min_radius_km:
            raise ValueError("Invalid search radius configuration")
        self._store = store
        self._clock = clock
        self.min_radius_km = min_radius_km
        self.increment_km = increment_km
        self.max_radius_km = max_radius_km
        self.online_window_minutes = online_window_minutes

    def radii(self) -> list[float]:
        """Search radii in order; the last one is always the ceiling."""
        out: list[float] = []
        radius = self.min_radius_km
        while radius < self.max_radius_km:
            out.append(radius)
            radius += self.increment_km
        out.append(self.max_radius_km)
        return out

    async def discover(self, victim_id: int, latitude: float, longitude: float) -> DiscoveryResult:
        try:
            users = await self._store.list_located_users(exclude_user_id=victim_id)
        except StoreUnavailableError as e:
            raise DiscoveryError("Helper scan failed") from e

        now = self._clock()
        measured: list[HelperCandidate] = []
        for u in users:
            if u.latitude is None or u.longitude is None:
                continue
            measured.append(
                HelperCandidate(
                    user_id=u.user_id,
                    display_name=u.display_name,
                    email=u.email,
                    phone=u.phone,
                    latitude=u.latitude,
                    longitude=u.longitude,
                    distance_km=round(haversine_km(latitude, longitude, u.latitude, u.longitude), 3),
                    is_online=is_online(u, now, self.online_window_minutes),
                    push_token=u.push_token,
                )
            )

        radius = self.max_radius_km
        for radius in self.radii():
            inside = [c for c in measured if c.distance_km <= radius]
            if inside:
                logger.info("Found %s helper(s) within %.1f km of victim=%s", len(inside), radius, victim_id)
                return DiscoveryResult(helpers=rank_candidates(inside), radius_km=radius)

        logger.info("No helpers within %.1f km of victim=%s", radius, victim_id)
        return DiscoveryResult(helpers=[], radius_km=radius)


async def find_nearby_emergencies(
    store: DocumentStore,
    helper_id: int,
    location: Location,
    radius_km: float = policies.NEARBY_EMERGENCY_RADIUS_KM,
) -> list[NearbyEmergency]:
    """Active emergencies of other users within ``radius_km``, nearest first."""
    emergencies = await store.list_emergencies(statuses=[EmergencyStatus.ACTIVE.value])
    nearby: list[NearbyEmergency] = []
    for e in emergencies:
        if e.victim_id == helper_id or e.location is None:
            continue
        d = haversine_km(location.latitude, location.longitude, e.location.latitude, e.location.longitude)
        if d <= radius_km:
            nearby.append(NearbyEmergency(emergency=e, distance_km=round(d, 3)))
    nearby.sort(key=lambda n: n.distance_km)
    return nearby
