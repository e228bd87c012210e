"""Chat coordination: admission, posting and session status."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from nearhelp.core import emergency_policies as policies
from nearhelp.core.exceptions import ChatEndedError, NotAuthenticatedError, NotFoundError
from nearhelp.core.identity import Identity
from nearhelp.core.live_query import LiveQuery, SnapshotCallback, Subscription
from nearhelp.db.store import MESSAGES, DocumentStore
from nearhelp.schemas.records import ChatRecord, ClosedReason, Location, MessageKind, MessageRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatStatus:
    is_active: bool
    is_expired: bool
    is_resolved: bool
    is_read_only: bool
    status_message: str | None


class ChatCoordinator:
    def __init__(self, store: DocumentStore, clock) -> None:
        self._store = store
        self._clock = clock

    async def _require_chat(self, chat_id: int) -> ChatRecord:
        chat = await self._store.get_chat(chat_id)
        if chat is None:
            raise NotFoundError("Chat not found")
        return chat

    async def join(self, caller: Identity | None, chat_id: int) -> ChatRecord:
        """Add the caller to the chat. Joining twice changes nothing."""
        if caller is None:
            raise NotAuthenticatedError("Sign in to join an emergency chat")
        chat = await self._require_chat(chat_id)
        if caller.uid in chat.participant_ids:
            return chat
        if not chat.is_active:
            raise ChatEndedError("This emergency chat has ended")

        chat, added = await self._store.add_participants(chat_id, [caller.uid])
        if caller.uid in added:
            logger.info("User %s joined chat %s", caller.uid, chat_id)
            try:
                await self._store.append_message(
                    chat_id,
                    sender_id=None,
                    sender_name=policies.SYSTEM_SENDER_NAME,
                    text=policies.MSG_HELPER_JOINED.format(name=caller.display_name),
                    kind=MessageKind.SYSTEM.value,
                )
            except ChatEndedError:
                logger.info("Chat %s closed while user %s was joining", chat_id, caller.uid)
        return chat

    async def send_message(
        self,
        caller: Identity | None,
        chat_id: int,
        text: str,
        kind: MessageKind = MessageKind.TEXT,
        location: Location | None = None,
    ) -> MessageRecord:
        if caller is None:
            raise NotAuthenticatedError("Sign in to send messages")
        text = text.strip()
        if not text:
            raise ValueError("Message text is required")
        chat = await self._require_chat(chat_id)
        if not chat.is_active:
            raise ChatEndedError("This emergency chat has ended")
        if caller.uid not in chat.participant_ids:
            await self._store.add_participants(chat_id, [caller.uid])
        return await self._store.append_message(
            chat_id,
            sender_id=caller.uid,
            sender_name=caller.display_name,
            text=text,
            kind=kind.value,
            latitude=location.latitude if location else None,
            longitude=location.longitude if location else None,
        )

    async def send_location(self, caller: Identity | None, chat_id: int, location: Location) -> MessageRecord:
        text = policies.MSG_SHARED_LOCATION.format(lat=location.latitude, lng=location.longitude)
        return await self.send_message(caller, chat_id, text, MessageKind.LOCATION, location)

    async def list_messages(self, caller: Identity | None, chat_id: int) -> list[MessageRecord]:
        if caller is None:
            raise NotAuthenticatedError("Sign in to read messages")
        chat = await self._require_chat(chat_id)
        if caller.uid not in chat.participant_ids:
            raise NotFoundError("Chat not found")
        return await self._store.list_messages(chat_id)

    async def get_chat(self, caller: Identity | None, chat_id: int) -> ChatRecord:
        if caller is None:
            raise NotAuthenticatedError("Sign in to view chats")
        return await self._require_chat(chat_id)

    def chat_status(self, chat: ChatRecord) -> ChatStatus:
        now = self._clock()
        timed_out = chat.expires_at is not None and now >= chat.expires_at
        is_expired = chat.closed_reason == ClosedReason.EXPIRED or (chat.is_active and timed_out)
        is_resolved = chat.closed_reason == ClosedReason.RESOLVED
        if is_expired:
            message = policies.STATUS_MESSAGE_EXPIRED
        elif is_resolved:
            message = policies.STATUS_MESSAGE_RESOLVED
        else:
            message = None
        return ChatStatus(
            is_active=chat.is_active and not timed_out,
            is_expired=is_expired,
            is_resolved=is_resolved,
            is_read_only=not chat.is_active or is_expired,
            status_message=message,
        )

    async def watch_messages(self, chat_id: int, callback: SnapshotCallback | None = None) -> Subscription:
        query = LiveQuery(MESSAGES).where("chat_id", "==", chat_id).ordered("sent_at")
        return await self._store.subscribe(query, callback)
