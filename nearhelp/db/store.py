"""Document-style persistent store.

Each public coroutine runs one short SQLAlchemy transaction on a worker
thread and returns validated records (never ORM rows). After a write commits,
subscribers of the touched collections get a fresh snapshot.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from nearhelp.core.emergency_policies import SYSTEM_SENDER_NAME
from nearhelp.core.exceptions import ChatEndedError, NotFoundError, StoreUnavailableError
from nearhelp.core.live_query import LiveQuery, LiveQueryHub, SnapshotCallback, Subscription
from nearhelp.models import ChatParticipant, ChatSession, Emergency, EmergencyContact, HelperAlert, Message, User
from nearhelp.schemas.records import (
    OPEN_STATUSES,
    ChatRecord,
    DeliveryStatus,
    EmergencyContactRecord,
    EmergencyRecord,
    EmergencyStatus,
    HelperAlertRecord,
    Location,
    MessageKind,
    MessageRecord,
    UserPresenceRecord,
    parse_record,
)

logger = logging.getLogger(__name__)

EMERGENCIES = "emergencies"
CHATS = "chats"
MESSAGES = "messages"
CONTACTS = "contacts"
ALERTS = "alerts"
USERS = "users"

_MODELS: dict[str, type] = {
    EMERGENCIES: Emergency,
    CHATS: ChatSession,
    MESSAGES: Message,
    CONTACTS: EmergencyContact,
    ALERTS: HelperAlert,
    USERS: User,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -- row -> record -------------------------------------------------------------


def _emergency_record(row: Emergency) -> EmergencyRecord:
    location = None
    if row.latitude is not None and row.longitude is not None:
        location = {
            "latitude": row.latitude,
            "longitude": row.longitude,
            "accuracy_m": row.location_accuracy_m,
            "captured_at": row.location_captured_at or row.created_at,
        }
    return parse_record(
        {
            "record_type": "emergency",
            "schema_version": row.schema_version,
            "id": row.id,
            "victim_id": row.victim_id,
            "victim_name": row.victim_name,
            "victim_contact": {"email": row.victim_email, "phone": row.victim_phone},
            "location": location,
            "status": row.status,
            "trigger_reason": row.trigger_reason,
            "language_preference": row.language_preference,
            "chat_id": row.chat_id,
            "created_at": row.created_at,
            "closed_at": row.closed_at,
            "closed_reason": row.closed_reason,
        }
    )


def _chat_record(db: Session, row: ChatSession) -> ChatRecord:
    members = db.execute(select(ChatParticipant.user_id).where(ChatParticipant.chat_id == row.id)).scalars().all()
    return parse_record(
        {
            "record_type": "chat",
            "schema_version": 1,
            "id": row.id,
            "emergency_id": row.emergency_id,
            "participant_ids": list(members),
            "is_active": row.is_active,
            "created_at": row.created_at,
            "expires_at": row.expires_at,
            "closed_at": row.closed_at,
            "closed_reason": row.closed_reason,
        }
    )


def _message_record(row: Message) -> MessageRecord:
    # rows without a kind predate typed messages
    return parse_record(
        {
            "record_type": "message",
            "schema_version": 1 if row.kind else 0,
            "id": row.id,
            "chat_id": row.chat_id,
            "sender_id": row.sender_id,
            "sender_name": row.sender_name,
            "text": row.text,
            "kind": row.kind,
            "latitude": row.latitude,
            "longitude": row.longitude,
            "sent_at": row.sent_at,
        }
    )


def _contact_record(row: EmergencyContact) -> EmergencyContactRecord:
    return EmergencyContactRecord(
        id=row.id,
        owner_id=row.owner_id,
        name=row.name,
        phone=row.phone,
        relationship=row.relationship,
        is_primary=row.is_primary,
    )


def _alert_record(row: HelperAlert) -> HelperAlertRecord:
    return HelperAlertRecord(
        id=row.id,
        helper_id=row.helper_id,
        emergency_id=row.emergency_id,
        chat_id=row.chat_id,
        victim_id=row.victim_id,
        victim_name=row.victim_name,
        distance_km=row.distance_km,
        alert_type=row.alert_type,
        delivery_status=row.delivery_status,
        created_at=row.created_at,
        delivered_at=row.delivered_at,
    )


def _presence_record(row: User) -> UserPresenceRecord:
    return UserPresenceRecord(
        user_id=row.id,
        display_name=row.display_name,
        email=row.email,
        phone=row.phone,
        language=row.language,
        latitude=row.latitude,
        longitude=row.longitude,
        location_updated_at=row.location_updated_at,
        is_online=row.is_online,
        last_active=row.last_active,
        push_token=row.push_token,
    )


def _to_record(db: Session, collection: str, row: Any) -> Any:
    if collection == EMERGENCIES:
        return _emergency_record(row)
    if collection == CHATS:
        return _chat_record(db, row)
    if collection == MESSAGES:
        return _message_record(row)
    if collection == CONTACTS:
        return _contact_record(row)
    if collection == ALERTS:
        return _alert_record(row)
    return _presence_record(row)


class DocumentStore:
    """Async facade over a SQLAlchemy session factory."""

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] | None = None,
        hub: LiveQueryHub | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or _utcnow
        self.hub = hub or LiveQueryHub()

    # -- plumbing -------------------------------------------------------------

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            with self._session_factory.begin() as db:
                return fn(db, *args)
        except IntegrityError:
            raise
        except DBAPIError as e:
            logger.error("Store call %s failed: %s", fn.__name__, e)
            raise StoreUnavailableError(str(e)) from e

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(self._call, fn, *args)

    async def _notify(self, *collections: str) -> None:
        for collection in collections:
            await self.hub.notify(collection)

    # -- live queries ---------------------------------------------------------

    async def query(self, live_query: LiveQuery) -> list[Any]:
        """Run a live query once and return its current snapshot."""
        model = _MODELS.get(live_query.collection)
        if model is None:
            raise ValueError(f"Unknown collection: {live_query.collection}")

        def _q(db: Session) -> list[Any]:
            stmt = select(model)
            for field_name, op, value in live_query.filters:
                column = getattr(model, field_name)
                stmt = stmt.where(column.in_(value) if op == "in" else column == value)
            if live_query.order_by:
                column = getattr(model, live_query.order_by)
                stmt = stmt.order_by(column.desc() if live_query.descending else column.asc(), model.id)
            else:
                stmt = stmt.order_by(model.id)
            if live_query.limit is not None:
                stmt = stmt.limit(live_query.limit)
            return [_to_record(db, live_query.collection, row) for row in db.execute(stmt).scalars().all()]

        return await self._run(_q)

    async def subscribe(self, live_query: LiveQuery, callback: SnapshotCallback | None = None) -> Subscription:
        """Open a subscription. The current snapshot is delivered immediately."""
        subscription = Subscription(query=live_query, fetch=lambda: self.query(live_query), callback=callback)
        self.hub.add(subscription)
        try:
            await subscription.refresh()
        except Exception:
            subscription.unsubscribe()
            raise
        return subscription

    # -- users / presence -----------------------------------------------------

    async def get_user(self, user_id: int) -> UserPresenceRecord | None:
        def _get(db: Session) -> UserPresenceRecord | None:
            row = db.get(User, user_id)
            return _presence_record(row) if row else None

        return await self._run(_get)

    async def list_located_users(self, exclude_user_id: int | None = None) -> list[UserPresenceRecord]:
        """Active users that have reported a position at least once."""

        def _list(db: Session) -> list[UserPresenceRecord]:
            stmt = select(User).where(
                User.is_active.is_(True),
                User.latitude.is_not(None),
                User.longitude.is_not(None),
            )
            if exclude_user_id is not None:
                stmt = stmt.where(User.id != exclude_user_id)
            return [_presence_record(u) for u in db.execute(stmt.order_by(User.id)).scalars().all()]

        return await self._run(_list)

    async def update_presence(self, user_id: int, **fields: Any) -> UserPresenceRecord:
        """Merge presence fields (latitude, longitude, is_online, push_token)."""
        allowed = {"latitude", "longitude", "is_online", "push_token"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown presence fields: {sorted(unknown)}")
        now = self._clock()

        def _update(db: Session) -> UserPresenceRecord:
            row = db.get(User, user_id)
            if not row:
                raise NotFoundError("User not found")
            for key, value in fields.items():
                setattr(row, key, value)
            if "latitude" in fields or "longitude" in fields:
                row.location_updated_at = now
            row.last_active = now
            db.flush()
            return _presence_record(row)

        record = await self._run(_update)
        await self._notify(USERS)
        return record

    # -- emergencies ----------------------------------------------------------

    async def create_emergency(
        self,
        *,
        victim_id: int,
        victim_name: str,
        victim_email: str | None,
        victim_phone: str | None,
        location: Location | None,
        trigger_reason: str | None,
        language_preference: str | None,
    ) -> EmergencyRecord:
        now = self._clock()

        def _create(db: Session) -> EmergencyRecord:
            row = Emergency(
                victim_id=victim_id,
                victim_name=victim_name,
                victim_email=victim_email,
                victim_phone=victim_phone,
                latitude=location.latitude if location else None,
                longitude=location.longitude if location else None,
                location_accuracy_m=location.accuracy_m if location else None,
                location_captured_at=location.captured_at if location else None,
                status=EmergencyStatus.WAITING.value,
                trigger_reason=trigger_reason,
                language_preference=language_preference,
                created_at=now,
            )
            db.add(row)
            db.flush()
            return _emergency_record(row)

        record = await self._run(_create)
        await self._notify(EMERGENCIES)
        return record

    async def get_emergency(self, emergency_id: int) -> EmergencyRecord | None:
        def _get(db: Session) -> EmergencyRecord | None:
            row = db.get(Emergency, emergency_id)
            return _emergency_record(row) if row else None

        return await self._run(_get)

    async def update_emergency(self, emergency_id: int, **fields: Any) -> EmergencyRecord:
        """Field merge on an open emergency (chat_id, status).

        The write only lands while the emergency is still open; a closed
        emergency is returned unchanged.
        """
        allowed = {"chat_id", "status"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown emergency fields: {sorted(unknown)}")

        def _update(db: Session) -> EmergencyRecord:
            # closing goes through close_emergency only
            db.execute(
                update(Emergency)
                .where(Emergency.id == emergency_id, Emergency.status != EmergencyStatus.CLOSED.value)
                .values(**fields)
            )
            row = db.get(Emergency, emergency_id)
            if not row:
                raise NotFoundError("Emergency not found")
            return _emergency_record(row)

        record = await self._run(_update)
        await self._notify(EMERGENCIES)
        return record

    async def list_emergencies(
        self,
        *,
        victim_id: int | None = None,
        statuses: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[EmergencyRecord]:
        """Emergencies newest first."""
        status_list = list(statuses) if statuses is not None else None

        def _list(db: Session) -> list[EmergencyRecord]:
            stmt = select(Emergency)
            if victim_id is not None:
                stmt = stmt.where(Emergency.victim_id == victim_id)
            if status_list is not None:
                stmt = stmt.where(Emergency.status.in_(status_list))
            stmt = stmt.order_by(Emergency.created_at.desc(), Emergency.id.desc())
            if limit is not None:
                stmt = stmt.limit(limit)
            return [_emergency_record(r) for r in db.execute(stmt).scalars().all()]

        return await self._run(_list)

    async def close_emergency(self, emergency_id: int, reason: str, closing_text: str) -> bool:
        """Close an emergency and its chat, compare-and-set style.

        Returns True only for the caller whose update flipped the status; that
        caller's transaction also writes the single closing system message.
        Every other caller gets False and writes nothing.
        """
        now = self._clock()

        def _close(db: Session) -> bool:
            result = db.execute(
                update(Emergency)
                .where(Emergency.id == emergency_id, Emergency.status != EmergencyStatus.CLOSED.value)
                .values(status=EmergencyStatus.CLOSED.value, closed_at=now, closed_reason=reason)
            )
            if result.rowcount != 1:
                return False
            row = db.get(Emergency, emergency_id)
            if row is not None and row.chat_id is not None:
                db.execute(
                    update(ChatSession)
                    .where(ChatSession.id == row.chat_id)
                    .values(is_active=False, closed_at=now, closed_reason=reason)
                )
                db.add(
                    Message(
                        chat_id=row.chat_id,
                        sender_id=None,
                        sender_name=SYSTEM_SENDER_NAME,
                        text=closing_text,
                        kind=MessageKind.SYSTEM.value,
                        sent_at=now,
                    )
                )
            return True

        won = await self._run(_close)
        if won:
            await self._notify(EMERGENCIES, CHATS, MESSAGES)
        return won

    # -- chats ----------------------------------------------------------------

    async def create_chat(self, emergency_id: int, participant_ids: Iterable[int], expires_at: datetime) -> ChatRecord:
        """Open the emergency's chat and link it to the emergency in one transaction."""
        now = self._clock()
        members = sorted(set(participant_ids))

        def _create(db: Session) -> ChatRecord:
            row = ChatSession(emergency_id=emergency_id, is_active=True, created_at=now, expires_at=expires_at)
            db.add(row)
            db.flush()
            for user_id in members:
                db.add(ChatParticipant(chat_id=row.id, user_id=user_id, joined_at=now))
            db.execute(update(Emergency).where(Emergency.id == emergency_id).values(chat_id=row.id))
            db.flush()
            return _chat_record(db, row)

        record = await self._run(_create)
        await self._notify(CHATS, EMERGENCIES)
        return record

    async def get_chat(self, chat_id: int) -> ChatRecord | None:
        def _get(db: Session) -> ChatRecord | None:
            row = db.get(ChatSession, chat_id)
            return _chat_record(db, row) if row else None

        return await self._run(_get)

    async def add_participants(self, chat_id: int, user_ids: Iterable[int]) -> tuple[ChatRecord, set[int]]:
        """Union-add members. Returns the chat and the ids that were new."""
        wanted = set(user_ids)
        now = self._clock()

        def _add(db: Session) -> tuple[ChatRecord, set[int]]:
            row = db.get(ChatSession, chat_id)
            if not row:
                raise NotFoundError("Chat not found")
            present = set(
                db.execute(select(ChatParticipant.user_id).where(ChatParticipant.chat_id == chat_id)).scalars().all()
            )
            added = wanted - present
            for user_id in sorted(added):
                db.add(ChatParticipant(chat_id=chat_id, user_id=user_id, joined_at=now))
            db.flush()
            return _chat_record(db, row), added

        try:
            chat, added = await self._run(_add)
        except IntegrityError:
            # a concurrent join inserted the same member first; the retry sees it
            chat, added = await self._run(_add)
        if added:
            await self._notify(CHATS)
        return chat, added

    async def list_expired_chats(self, now: datetime) -> list[ChatRecord]:
        def _list(db: Session) -> list[ChatRecord]:
            stmt = (
                select(ChatSession)
                .where(ChatSession.is_active.is_(True), ChatSession.expires_at.is_not(None), ChatSession.expires_at <= now)
                .order_by(ChatSession.expires_at)
            )
            return [_chat_record(db, r) for r in db.execute(stmt).scalars().all()]

        return await self._run(_list)

    # -- messages -------------------------------------------------------------

    async def append_message(
        self,
        chat_id: int,
        *,
        sender_id: int | None,
        sender_name: str,
        text: str,
        kind: str,
        latitude: float | None = None,
        longitude: float | None = None,
        require_active: bool = True,
    ) -> MessageRecord:
        """Append a message with a store-assigned timestamp.

        With ``require_active`` the chat is checked in the same transaction and
        ChatEndedError is raised without writing anything.
        """
        now = self._clock()

        def _append(db: Session) -> MessageRecord:
            chat = db.get(ChatSession, chat_id)
            if not chat:
                raise NotFoundError("Chat not found")
            if require_active and not chat.is_active:
                raise ChatEndedError("This emergency chat has ended")
            row = Message(
                chat_id=chat_id,
                sender_id=sender_id,
                sender_name=sender_name,
                text=text,
                kind=kind,
                latitude=latitude,
                longitude=longitude,
                sent_at=now,
            )
            db.add(row)
            db.flush()
            return _message_record(row)

        record = await self._run(_append)
        await self._notify(MESSAGES)
        return record

    async def list_messages(self, chat_id: int) -> list[MessageRecord]:
        def _list(db: Session) -> list[MessageRecord]:
            stmt = select(Message).where(Message.chat_id == chat_id).order_by(Message.sent_at, Message.id)
            return [_message_record(r) for r in db.execute(stmt).scalars().all()]

        return await self._run(_list)

    # -- emergency contacts ---------------------------------------------------

    async def create_contact(self, owner_id: int, **fields: Any) -> EmergencyContactRecord:
        now = self._clock()

        def _create(db: Session) -> EmergencyContactRecord:
            if fields.get("is_primary"):
                _clear_primary(db, owner_id)
            row = EmergencyContact(owner_id=owner_id, created_at=now, **fields)
            db.add(row)
            db.flush()
            return _contact_record(row)

        record = await self._run(_create)
        await self._notify(CONTACTS)
        return record

    async def list_contacts(self, owner_id: int) -> list[EmergencyContactRecord]:
        def _list(db: Session) -> list[EmergencyContactRecord]:
            stmt = (
                select(EmergencyContact)
                .where(EmergencyContact.owner_id == owner_id)
                .order_by(EmergencyContact.is_primary.desc(), EmergencyContact.id)
            )
            return [_contact_record(r) for r in db.execute(stmt).scalars().all()]

        return await self._run(_list)

    async def update_contact(self, contact_id: int, owner_id: int, **fields: Any) -> EmergencyContactRecord:
        def _update(db: Session) -> EmergencyContactRecord:
            row = db.get(EmergencyContact, contact_id)
            if not row or row.owner_id != owner_id:
                raise NotFoundError("Contact not found")
            if fields.get("is_primary"):
                _clear_primary(db, owner_id)
            for key, value in fields.items():
                setattr(row, key, value)
            db.flush()
            return _contact_record(row)

        record = await self._run(_update)
        await self._notify(CONTACTS)
        return record

    async def delete_contact(self, contact_id: int, owner_id: int) -> None:
        def _delete(db: Session) -> None:
            row = db.get(EmergencyContact, contact_id)
            if not row or row.owner_id != owner_id:
                raise NotFoundError("Contact not found")
            db.delete(row)

        await self._run(_delete)
        await self._notify(CONTACTS)

    # -- helper alerts --------------------------------------------------------

    async def create_alerts(self, alerts: list[dict[str, Any]]) -> list[HelperAlertRecord]:
        """Insert alerts, skipping any (helper, emergency, type) that exists."""
        now = self._clock()

        def _create(db: Session) -> list[HelperAlertRecord]:
            created: list[HelperAlert] = []
            for fields in alerts:
                exists = db.execute(
                    select(HelperAlert.id).where(
                        HelperAlert.helper_id == fields["helper_id"],
                        HelperAlert.emergency_id == fields["emergency_id"],
                        HelperAlert.alert_type == fields["alert_type"],
                    )
                ).first()
                if exists:
                    continue
                row = HelperAlert(created_at=now, delivery_status=DeliveryStatus.PENDING.value, **fields)
                db.add(row)
                created.append(row)
            db.flush()
            return [_alert_record(r) for r in created]

        records = await self._run(_create)
        if records:
            await self._notify(ALERTS)
        return records

    async def list_alerts(self, helper_id: int, delivery_status: str | None = None) -> list[HelperAlertRecord]:
        def _list(db: Session) -> list[HelperAlertRecord]:
            stmt = select(HelperAlert).where(HelperAlert.helper_id == helper_id)
            if delivery_status is not None:
                stmt = stmt.where(HelperAlert.delivery_status == delivery_status)
            stmt = stmt.order_by(HelperAlert.created_at.desc(), HelperAlert.id.desc())
            return [_alert_record(r) for r in db.execute(stmt).scalars().all()]

        return await self._run(_list)

    async def mark_alert_delivered(self, alert_id: int, helper_id: int) -> HelperAlertRecord:
        now = self._clock()

        def _mark(db: Session) -> tuple[HelperAlertRecord, bool]:
            row = db.get(HelperAlert, alert_id)
            if not row or row.helper_id != helper_id:
                raise NotFoundError("Alert not found")
            changed = row.delivery_status != DeliveryStatus.DELIVERED.value
            if changed:
                row.delivery_status = DeliveryStatus.DELIVERED.value
                row.delivered_at = now
                db.flush()
            return _alert_record(row), changed

        record, changed = await self._run(_mark)
        if changed:
            await self._notify(ALERTS)
        return record


def _clear_primary(db: Session, owner_id: int) -> None:
    db.execute(
        update(EmergencyContact)
        .where(EmergencyContact.owner_id == owner_id, EmergencyContact.is_primary.is_(True))
        .values(is_primary=False)
    )


def open_emergencies_query(victim_id: int) -> LiveQuery:
    """Live query for a victim's waiting/active emergencies, newest first."""
    return (
        LiveQuery(EMERGENCIES)
        .where("victim_id", "==", victim_id)
        .where("status", "in", OPEN_STATUSES)
        .ordered("created_at", descending=True)
    )
