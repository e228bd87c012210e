"""Location provider tests."""

import pytest

from nearhelp.core.exceptions import LocationError
from nearhelp.services.location_service import LocationService, ReportedPositionSource, StoredPositionSource
from tests.fakes import FakePositionSource, ManualScheduler, fix


@pytest.fixture
def clock():
    return ManualScheduler()


@pytest.fixture
def locations(clock):
    return LocationService(clock.now, timeout_ms=20, retry_timeout_ms=50, cache_max_age_s=60)


@pytest.mark.asyncio
async def test_fresh_fix_is_cached(locations):
    source = FakePositionSource(fix(10.0, 20.0))

    loc = await locations.get_location(1, source)

    assert loc.latitude == 10.0
    assert source.calls == [(True, 20)]
    assert locations.last_known(1) == loc


@pytest.mark.asyncio
async def test_timeout_retries_once_with_low_accuracy(locations):
    source = FakePositionSource("hang", fix(10.0, 20.0))

    loc = await locations.get_location(1, source)

    assert loc.longitude == 20.0
    assert source.calls == [(True, 20), (False, 50)]


@pytest.mark.asyncio
async def test_second_timeout_is_reported(locations):
    source = FakePositionSource("hang", "hang")

    with pytest.raises(LocationError) as exc:
        await locations.get_location(1, source)

    assert exc.value.kind == LocationError.TIMEOUT
    assert len(source.calls) == 2


@pytest.mark.asyncio
async def test_permission_denied_is_not_retried(locations):
    source = FakePositionSource(LocationError(LocationError.PERMISSION_DENIED), fix(1.0, 1.0))

    with pytest.raises(LocationError) as exc:
        await locations.get_location(1, source)

    assert exc.value.kind == LocationError.PERMISSION_DENIED
    assert not exc.value.retryable
    assert len(source.calls) == 1


@pytest.mark.asyncio
async def test_cache_expires(locations, clock):
    await locations.get_location(1, FakePositionSource(fix(10.0, 20.0)))
    clock.advance(61)
    assert locations.last_known(1) is None


@pytest.mark.asyncio
async def test_best_effort_prefers_fresh_fix(locations):
    loc, warning = await locations.best_effort(1, ReportedPositionSource(fix(3.0, 4.0)))
    assert loc.latitude == 3.0
    assert warning is None


@pytest.mark.asyncio
async def test_best_effort_falls_back_to_cache(locations, clock):
    await locations.get_location(1, FakePositionSource(fix(10.0, 20.0)))
    clock.advance(600)

    loc, warning = await locations.best_effort(1, ReportedPositionSource(error=LocationError.UNAVAILABLE))

    # a stale fix is still better than none during an emergency
    assert loc.latitude == 10.0
    assert "unavailable" in warning


@pytest.mark.asyncio
async def test_best_effort_uses_stored_position(nh, make_user):
    user = make_user("Stored", 45.0, 7.0)

    loc, warning = await nh.locations.best_effort(
        user.uid,
        ReportedPositionSource(error=LocationError.PERMISSION_DENIED),
        StoredPositionSource(nh.store, user.uid),
    )

    assert (loc.latitude, loc.longitude) == (45.0, 7.0)
    assert warning == "Using last known location (permission_denied)"


@pytest.mark.asyncio
async def test_best_effort_with_nothing_returns_none(nh, make_user):
    user = make_user("Nowhere")

    loc, warning = await nh.locations.best_effort(
        user.uid,
        ReportedPositionSource(),
        StoredPositionSource(nh.store, user.uid),
    )

    assert loc is None
    assert warning == "Location unavailable (unavailable)"


@pytest.mark.asyncio
async def test_warm_skips_when_cache_is_fresh(locations):
    await locations.get_location(1, FakePositionSource(fix(10.0, 20.0)))
    source = FakePositionSource(fix(11.0, 21.0))

    await locations.warm(1, source)

    assert source.calls == []
    assert locations.last_known(1).latitude == 10.0


@pytest.mark.asyncio
async def test_warm_swallows_location_errors(locations):
    await locations.warm(1, FakePositionSource(LocationError(LocationError.UNAVAILABLE)))
    assert locations.last_known(1) is None
