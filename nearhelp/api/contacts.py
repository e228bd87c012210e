"""Emergency contacts API."""

from fastapi import APIRouter, Depends, status

from nearhelp.api.errors import http_error
from nearhelp.core.deps import get_engine, get_identity
from nearhelp.core.exceptions import EngineError
from nearhelp.core.identity import Identity
from nearhelp.schemas.contact import ContactCreate, ContactResponse, ContactUpdate
from nearhelp.schemas.records import EmergencyContactRecord
from nearhelp.services.engine import EmergencyEngine

router = APIRouter(prefix="/contacts", tags=["contacts"])


def _out(record: EmergencyContactRecord) -> ContactResponse:
    return ContactResponse(
        id=record.id,
        name=record.name,
        phone=record.phone,
        relationship=record.relationship,
        is_primary=record.is_primary,
    )


@router.get("", response_model=list[ContactResponse])
async def list_contacts(
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    """Primary contact first."""
    return [_out(c) for c in await engine.contacts.list_contacts(identity.uid)]


@router.post("", response_model=ContactResponse, status_code=status.HTTP_201_CREATED)
async def add_contact(
    data: ContactCreate,
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    try:
        record = await engine.contacts.add(identity.uid, data.name, data.phone, data.relationship, data.is_primary)
    except EngineError as e:
        raise http_error(e)
    return _out(record)


@router.patch("/{contact_id}", response_model=ContactResponse)
async def update_contact(
    contact_id: int,
    data: ContactUpdate,
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    try:
        record = await engine.contacts.update(identity.uid, contact_id, **data.model_dump(exclude_none=True))
    except EngineError as e:
        raise http_error(e)
    return _out(record)


@router.delete("/{contact_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_contact(
    contact_id: int,
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    try:
        await engine.contacts.remove(identity.uid, contact_id)
    except EngineError as e:
        raise http_error(e)
