"""Helper discovery tests."""

from datetime import timedelta

import pytest

from nearhelp.core.exceptions import DiscoveryError, StoreUnavailableError
from nearhelp.services.geo_service import HelperDiscovery, find_nearby_emergencies, haversine_km
from nearhelp.schemas.records import TriggerReason
from nearhelp.services.location_service import ReportedPositionSource
from tests.fakes import START, fix

# One degree of latitude is ~111.19 km
KM = 1 / 111.195
VICTIM = (40.0, -74.0)


def _north(km: float) -> tuple[float, float]:
    return VICTIM[0] + km * KM, VICTIM[1]


def test_haversine_one_degree_of_latitude():
    assert haversine_km(0, 0, 1, 0) == pytest.approx(111.19, abs=0.01)
    assert haversine_km(10, 10, 10, 10) == 0


def test_radii_end_at_ceiling():
    d = HelperDiscovery(store=None, clock=lambda: START, min_radius_km=5, increment_km=5, max_radius_km=20)
    assert d.radii() == [5, 10, 15, 20]
    d = HelperDiscovery(store=None, clock=lambda: START, min_radius_km=5, increment_km=5, max_radius_km=12)
    assert d.radii() == [5, 10, 12]


def test_invalid_radius_configuration():
    with pytest.raises(ValueError):
        HelperDiscovery(store=None, clock=lambda: START, min_radius_km=10, increment_km=5, max_radius_km=5)


@pytest.mark.asyncio
async def test_candidate_at_18km_found_at_radius_20(nh, make_user):
    """Expanding search with ceiling 20 km and 5 km steps reaches 20 km."""
    victim = make_user("Victim", *VICTIM)
    helper = make_user("Far Helper", *_north(18), online=True)
    d = HelperDiscovery(nh.store, nh.scheduler.now, min_radius_km=5, increment_km=5, max_radius_km=20)

    result = await d.discover(victim.uid, *VICTIM)

    assert result.radius_km == 20
    assert [h.user_id for h in result.helpers] == [helper.uid]
    assert result.helpers[0].distance_km == pytest.approx(18, abs=0.05)


@pytest.mark.asyncio
async def test_first_nonempty_radius_wins(nh, make_user):
    victim = make_user("Victim", *VICTIM)
    near = make_user("Near", *_north(7))
    make_user("Farther", *_north(14))
    d = HelperDiscovery(nh.store, nh.scheduler.now, min_radius_km=5, increment_km=5, max_radius_km=20)

    result = await d.discover(victim.uid, *VICTIM)

    assert result.radius_km == 10
    assert [h.user_id for h in result.helpers] == [near.uid]


@pytest.mark.asyncio
async def test_online_first_then_distance(nh, make_user):
    victim = make_user("Victim", *VICTIM)
    offline_close = make_user("Offline Close", *_north(1))
    online_far = make_user("Online Far", *_north(4), online=True)
    recent = make_user("Recently Active", *_north(3), last_active=START - timedelta(minutes=2))
    stale = make_user("Stale", *_north(2), last_active=START - timedelta(minutes=30))

    result = await nh.discovery.discover(victim.uid, *VICTIM)

    assert [h.user_id for h in result.helpers] == [recent.uid, online_far.uid, offline_close.uid, stale.uid]
    assert [h.is_online for h in result.helpers] == [True, True, False, False]


@pytest.mark.asyncio
async def test_empty_at_ceiling_is_not_an_error(nh, make_user):
    victim = make_user("Victim", *VICTIM)
    make_user("Too Far", *_north(30))
    make_user("No Location")
    d = HelperDiscovery(nh.store, nh.scheduler.now, min_radius_km=5, increment_km=5, max_radius_km=20)

    result = await d.discover(victim.uid, *VICTIM)

    assert result.helpers == []
    assert result.radius_km == 20


@pytest.mark.asyncio
async def test_victim_is_never_a_candidate(nh, make_user):
    victim = make_user("Victim", *VICTIM, online=True)
    result = await nh.discovery.discover(victim.uid, *VICTIM)
    assert result.helpers == []


@pytest.mark.asyncio
async def test_store_failure_raises_discovery_error(nh, monkeypatch):
    async def broken(*args, **kwargs):
        raise StoreUnavailableError("connection refused")

    monkeypatch.setattr(nh.store, "list_located_users", broken)
    with pytest.raises(DiscoveryError):
        await nh.discovery.discover(1, *VICTIM)


@pytest.mark.asyncio
async def test_nearby_emergencies_sorted_by_distance(nh, make_user):
    helper = make_user("Helper", *VICTIM)
    placed = {"Alice": 12, "Bob": 3, "Carol": 40}
    victims = {}
    for name, km in placed.items():
        victims[name] = make_user(name)
        source = ReportedPositionSource(fix(*_north(km)))
        await nh.emergencies.trigger_emergency(victims[name], TriggerReason.MANUAL, source)

    found = await find_nearby_emergencies(nh.store, helper.uid, fix(*VICTIM), radius_km=20)

    assert [n.emergency.victim_id for n in found] == [victims["Bob"].uid, victims["Alice"].uid]
    assert found[0].distance_km < found[1].distance_km


@pytest.mark.asyncio
async def test_nearby_skips_own_and_closed_emergencies(nh, make_user):
    helper = make_user("Helper", *VICTIM)
    other = make_user("Other")
    own = await nh.emergencies.trigger_emergency(helper, TriggerReason.MANUAL, ReportedPositionSource(fix(*VICTIM)))
    theirs = await nh.emergencies.trigger_emergency(other, TriggerReason.MANUAL, ReportedPositionSource(fix(*_north(2))))
    assert own.emergency.status == "active"
    await nh.emergencies.resolve_emergency(other, theirs.emergency.id)

    assert await find_nearby_emergencies(nh.store, helper.uid, fix(*VICTIM)) == []
