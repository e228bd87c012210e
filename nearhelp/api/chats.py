"""Emergency chat API."""

from fastapi import APIRouter, Depends, status

from nearhelp.api.errors import http_error
from nearhelp.core.deps import get_engine, get_identity
from nearhelp.core.exceptions import EngineError
from nearhelp.core.identity import Identity
from nearhelp.schemas.chat import ChatResponse, ChatStatusResponse, MessageCreate, MessageResponse, SharedLocation
from nearhelp.schemas.records import ChatRecord, Location, MessageRecord
from nearhelp.services.engine import EmergencyEngine

router = APIRouter(prefix="/chats", tags=["chats"])


def chat_out(chat: ChatRecord) -> ChatResponse:
    return ChatResponse(
        id=chat.id,
        emergency_id=chat.emergency_id,
        participant_ids=sorted(chat.participant_ids),
        is_active=chat.is_active,
        created_at=chat.created_at,
        expires_at=chat.expires_at,
        closed_reason=chat.closed_reason.value if chat.closed_reason else None,
    )


def message_out(message: MessageRecord) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        chat_id=message.chat_id,
        sender_id=message.sender_id,
        sender_name=message.sender_name,
        text=message.text,
        kind=message.kind.value,
        latitude=message.latitude,
        longitude=message.longitude,
        sent_at=message.sent_at,
    )


@router.post("/{chat_id}/join", response_model=ChatResponse)
async def join_chat(
    chat_id: int,
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    """Helper joins the coordination chat. Joining again is a no-op."""
    try:
        return chat_out(await engine.chats.join(identity, chat_id))
    except EngineError as e:
        raise http_error(e)


@router.get("/{chat_id}", response_model=ChatResponse)
async def get_chat(
    chat_id: int,
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    try:
        return chat_out(await engine.chats.get_chat(identity, chat_id))
    except EngineError as e:
        raise http_error(e)


@router.get("/{chat_id}/status", response_model=ChatStatusResponse)
async def chat_status(
    chat_id: int,
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    try:
        chat = await engine.chats.get_chat(identity, chat_id)
    except EngineError as e:
        raise http_error(e)
    s = engine.chats.chat_status(chat)
    return ChatStatusResponse(
        is_active=s.is_active,
        is_expired=s.is_expired,
        is_resolved=s.is_resolved,
        is_read_only=s.is_read_only,
        status_message=s.status_message,
    )


@router.get("/{chat_id}/messages", response_model=list[MessageResponse])
async def list_messages(
    chat_id: int,
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    """Oldest first."""
    try:
        return [message_out(m) for m in await engine.chats.list_messages(identity, chat_id)]
    except EngineError as e:
        raise http_error(e)


@router.post("/{chat_id}/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    chat_id: int,
    data: MessageCreate,
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    try:
        return message_out(await engine.chats.send_message(identity, chat_id, data.text))
    except EngineError as e:
        raise http_error(e)


@router.post("/{chat_id}/location", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def share_location(
    chat_id: int,
    data: SharedLocation,
    identity: Identity = Depends(get_identity),
    engine: EmergencyEngine = Depends(get_engine),
):
    location = Location(
        latitude=data.latitude,
        longitude=data.longitude,
        accuracy_m=data.accuracy_m,
        captured_at=engine.scheduler.now(),
    )
    try:
        return message_out(await engine.chats.send_location(identity, chat_id, location))
    except EngineError as e:
        raise http_error(e)
