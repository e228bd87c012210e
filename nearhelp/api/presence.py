"""Presence and location API."""

from fastapi import APIRouter, Depends, HTTPException

from nearhelp.api.errors import http_error
from nearhelp.core.deps import get_engine, get_identity
from nearhelp.core.exceptions import EngineError
from nearhelp.core.identity import Identity
from nearhelp.schemas.presence import LocationUpdate, OnlineUpdate, PresenceResponse, PushTokenUpdate
from nearhelp.schemas.records import UserPresenceRecord
from nearhelp.services.engine import EmergencyEngine

router = APIRouter(tags=["presence"])


def _out(record: UserPresenceRecord) -> PresenceResponse:
    return PresenceResponse(
        user_id=record.user_id,
        latitude=record.latitude,
        longitude=record.longitude,
        location_updated_at=record.location_updated_at,
        is_online=record.is_online,
        last_active=record.last_active,
    )


@router.get("/presence/me", response_model=PresenceResponse)
async def get_my_presence(
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    record = await engine.presence.get(identity.uid)
    if record is None:
        raise HTTPException(status_code=404, detail="User not found")
    return _out(record)


@router.post("/presence", response_model=PresenceResponse)
async def update_online(
    data: OnlineUpdate,
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    """App foreground/background: mark the user online or offline."""
    try:
        return _out(await engine.presence.set_online(identity.uid, data.is_online))
    except EngineError as e:
        raise http_error(e)


@router.post("/presence/heartbeat", response_model=PresenceResponse)
async def heartbeat(
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    try:
        return _out(await engine.presence.heartbeat(identity.uid))
    except EngineError as e:
        raise http_error(e)


@router.post("/location", response_model=PresenceResponse)
async def update_location(
    data: LocationUpdate,
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    """User reports their current position."""
    try:
        record = await engine.presence.report_location(identity.uid, data.latitude, data.longitude, data.accuracy_m)
    except EngineError as e:
        raise http_error(e)
    return _out(record)


@router.post("/presence/push-token", response_model=PresenceResponse)
async def register_push_token(
    data: PushTokenUpdate,
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    try:
        return _out(await engine.presence.register_push_token(identity.uid, data.push_token))
    except EngineError as e:
        raise http_error(e)
