"""Helper alert inbox API."""

from fastapi import APIRouter, Depends, Query

from nearhelp.api.errors import http_error
from nearhelp.core.deps import get_engine, get_identity
from nearhelp.core.exceptions import EngineError
from nearhelp.core.identity import Identity
from nearhelp.schemas.alert import HelperAlertResponse
from nearhelp.schemas.records import HelperAlertRecord
from nearhelp.services.engine import EmergencyEngine

router = APIRouter(prefix="/alerts", tags=["alerts"])


def _out(record: HelperAlertRecord) -> HelperAlertResponse:
    return HelperAlertResponse(
        id=record.id,
        emergency_id=record.emergency_id,
        chat_id=record.chat_id,
        victim_id=record.victim_id,
        victim_name=record.victim_name,
        distance_km=record.distance_km,
        alert_type=record.alert_type.value,
        delivery_status=record.delivery_status.value,
        created_at=record.created_at,
        delivered_at=record.delivered_at,
    )


@router.get("", response_model=list[HelperAlertResponse])
async def list_alerts(
    pending: bool = Query(default=False),
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    """Alerts addressed to the caller, newest first."""
    try:
        return [_out(a) for a in await engine.alerts.list_alerts(identity, pending_only=pending)]
    except EngineError as e:
        raise http_error(e)


@router.post("/{alert_id}/ack", response_model=HelperAlertResponse)
async def acknowledge(
    alert_id: int,
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    try:
        return _out(await engine.alerts.acknowledge_alert(identity, alert_id))
    except EngineError as e:
        raise http_error(e)
