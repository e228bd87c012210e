"""Emergency API: trigger, resolve, active, history, nearby."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from nearhelp.api.errors import http_error
from nearhelp.core.deps import get_engine, get_identity
from nearhelp.core.exceptions import EngineError
from nearhelp.core.identity import Identity
from nearhelp.schemas.emergency import (
    DeviceLocation,
    EmergencyResponse,
    HelperResponse,
    LocationOut,
    NearbyEmergencyResponse,
    TriggerRequest,
    TriggerResponse,
)
from nearhelp.schemas.records import EmergencyRecord, Location, TriggerReason
from nearhelp.services.emergency_service import EmergencySession
from nearhelp.services.engine import EmergencyEngine
from nearhelp.services.geo_service import find_nearby_emergencies
from nearhelp.services.location_service import ReportedPositionSource

router = APIRouter(prefix="/emergencies", tags=["emergencies"])


def emergency_out(record: EmergencyRecord) -> EmergencyResponse:
    location = None
    if record.location is not None:
        location = LocationOut(**record.location.model_dump())
    return EmergencyResponse(
        id=record.id,
        victim_id=record.victim_id,
        victim_name=record.victim_name,
        status=record.status.value,
        trigger_reason=record.trigger_reason.value if record.trigger_reason else None,
        location=location,
        chat_id=record.chat_id,
        created_at=record.created_at,
        closed_at=record.closed_at,
        closed_reason=record.closed_reason.value if record.closed_reason else None,
    )


def session_out(session: EmergencySession) -> TriggerResponse:
    return TriggerResponse(
        emergency=emergency_out(session.emergency),
        chat_id=session.chat.id,
        expires_at=session.chat.expires_at,
        helpers=[
            HelperResponse(
                user_id=h.user_id,
                display_name=h.display_name,
                distance_km=h.distance_km,
                is_online=h.is_online,
            )
            for h in session.helpers
        ],
        search_radius_km=session.search_radius_km,
        notified_count=session.notified_count,
        warnings=session.warnings,
        location_warning=session.location_warning,
    )


def _position_source(engine: EmergencyEngine, device: DeviceLocation | None) -> ReportedPositionSource:
    if device is None:
        return ReportedPositionSource()
    if device.latitude is not None and device.longitude is not None:
        fix = Location(
            latitude=device.latitude,
            longitude=device.longitude,
            accuracy_m=device.accuracy_m,
            captured_at=engine.scheduler.now(),
        )
        return ReportedPositionSource(location=fix)
    return ReportedPositionSource(error=device.error)


@router.post("", response_model=TriggerResponse, status_code=status.HTTP_201_CREATED)
async def trigger(
    data: TriggerRequest,
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    """Raise an emergency. Responds 503 only if the alert did not go out."""
    try:
        session = await engine.emergencies.trigger_emergency(
            identity,
            TriggerReason(data.reason),
            _position_source(engine, data.location),
        )
    except EngineError as e:
        raise http_error(e)
    return session_out(session)


@router.get("/active", response_model=EmergencyResponse | None)
async def get_active(
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    """Most recent open emergency of the caller, or null."""
    record = await engine.emergencies.active_emergency(identity.uid)
    return emergency_out(record) if record else None


@router.get("/history", response_model=list[EmergencyResponse])
async def history(
    limit: int = Query(default=50, ge=1, le=200),
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    """Caller's alerts, newest first."""
    return [emergency_out(e) for e in await engine.emergencies.list_history(identity.uid, limit)]


@router.get("/nearby", response_model=list[NearbyEmergencyResponse])
async def nearby(
    latitude: float | None = Query(default=None, ge=-90, le=90),
    longitude: float | None = Query(default=None, ge=-180, le=180),
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    """Open emergencies around the caller (given position, else last reported)."""
    if latitude is not None and longitude is not None:
        here = Location(latitude=latitude, longitude=longitude, captured_at=engine.scheduler.now())
    else:
        presence = await engine.presence.get(identity.uid)
        if presence is None or presence.latitude is None or presence.longitude is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Location required")
        here = Location(latitude=presence.latitude, longitude=presence.longitude, captured_at=engine.scheduler.now())
    found = await find_nearby_emergencies(
        engine.store, identity.uid, here, engine.config.nearby_emergency_radius_km
    )
    return [NearbyEmergencyResponse(emergency=emergency_out(n.emergency), distance_km=n.distance_km) for n in found]


@router.get("/{emergency_id}", response_model=EmergencyResponse)
async def get_emergency(
    emergency_id: int,
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    try:
        return emergency_out(await engine.emergencies.get_emergency(emergency_id))
    except EngineError as e:
        raise http_error(e)


@router.post("/{emergency_id}/resolve", response_model=EmergencyResponse)
async def resolve(
    emergency_id: int,
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    """Victim marks the emergency resolved. Safe to repeat."""
    try:
        return emergency_out(await engine.emergencies.resolve_emergency(identity, emergency_id))
    except EngineError as e:
        raise http_error(e)
