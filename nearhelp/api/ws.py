"""WebSocket endpoint: live query pushes and SOS gestures."""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from nearhelp.api.emergencies import session_out
from nearhelp.core.deps import get_engine
from nearhelp.core.exceptions import EngineError
from nearhelp.core.identity import Identity
from nearhelp.core.live_query import Subscription
from nearhelp.core.security import decode_user_id
from nearhelp.core.ws_manager import ws_manager
from nearhelp.schemas.ws import ClientEvent
from nearhelp.services.emergency_service import EmergencySession, most_recent
from nearhelp.services.engine import EmergencyEngine
from nearhelp.services.sos_activation import ActivationSnapshot

logger = logging.getLogger(__name__)

router = APIRouter()


async def _authenticate_ws(engine: EmergencyEngine, token: str) -> Identity | None:
    """Validate JWT and return the caller, or None."""
    user_id = decode_user_id(token)
    if user_id is None:
        return None
    user = await engine.store.get_user(user_id)
    if user is None:
        return None
    return Identity(
        uid=user.user_id,
        display_name=user.display_name,
        email=user.email,
        phone=user.phone,
        language=user.language,
    )


def _dump(records: list[Any]) -> list[dict[str, Any]]:
    return [r.model_dump(mode="json") for r in records]


class _Connection:
    """Per-socket state: subscriptions by topic and the SOS button."""

    def __init__(self, websocket: WebSocket, engine: EmergencyEngine, identity: Identity) -> None:
        self.websocket = websocket
        self.engine = engine
        self.identity = identity
        self.subscriptions: dict[str, Subscription] = {}
        self.button = engine.activation_for(
            identity,
            on_change=self._on_button_change,
            on_session=self._on_session,
            on_error=self._on_trigger_error,
        )

    async def send(self, event: str, data: Any) -> None:
        await self.websocket.send_text(json.dumps({"event": event, "data": data}, default=str))

    async def _on_button_change(self, snap: ActivationSnapshot) -> None:
        await self.send(
            "sos.state",
            {
                "state": snap.state.value,
                "hold_progress": snap.hold_progress,
                "tap_count": snap.tap_count,
                "countdown": snap.countdown,
            },
        )

    async def _on_session(self, session: EmergencySession) -> None:
        await self.send("sos.triggered", session_out(session).model_dump(mode="json"))

    async def _on_trigger_error(self, exc: EngineError) -> None:
        await self.send("error", {"detail": str(exc), "type": type(exc).__name__})

    async def _watch(self, topic: str, subscribe) -> None:
        old = self.subscriptions.pop(topic, None)
        if old is not None:
            old.unsubscribe()
        self.subscriptions[topic] = await subscribe()

    async def handle(self, event: ClientEvent) -> None:
        uid = self.identity.uid
        engine = self.engine
        if event.action == "sos.press":
            if event.latitude is not None and event.longitude is not None:
                await engine.presence.report_location(uid, event.latitude, event.longitude, event.accuracy_m)
            self.button.press()
        elif event.action == "sos.release":
            self.button.release()
        elif event.action == "sos.confirm":
            self.button.confirm()
        elif event.action == "sos.cancel":
            self.button.cancel()
        elif event.action == "watch.active":

            async def _active(snapshot):
                current = most_recent(snapshot)
                await self.send("emergency.active", current.model_dump(mode="json") if current else None)

            await self._watch("active", lambda: engine.emergencies.watch_active(uid, _active))
        elif event.action == "watch.chat":
            if event.chat_id is None:
                raise ValueError("chat_id is required")
            # membership check; raises NotFoundError for outsiders
            await engine.chats.list_messages(self.identity, event.chat_id)
            chat_id = event.chat_id

            async def _messages(snapshot):
                await self.send("chat.messages", {"chat_id": chat_id, "messages": _dump(snapshot)})

            await self._watch(f"chat:{chat_id}", lambda: engine.chats.watch_messages(chat_id, _messages))
        elif event.action == "watch.contacts":

            async def _contacts(snapshot):
                await self.send("contacts", _dump(snapshot))

            await self._watch("contacts", lambda: engine.contacts.watch(uid, _contacts))
        elif event.action == "watch.alerts":

            async def _alerts(snapshot):
                await self.send("alerts.pending", _dump(snapshot))

            await self._watch("alerts", lambda: engine.alerts.watch_pending(uid, _alerts))
        elif event.action == "unwatch":
            self.close_subscriptions()

    def close_subscriptions(self) -> None:
        for sub in self.subscriptions.values():
            sub.unsubscribe()
        self.subscriptions.clear()

    def close(self) -> None:
        self.close_subscriptions()
        self.button.dispose()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, engine: EmergencyEngine = Depends(get_engine)):
    """
    WebSocket endpoint. Client connects with ?token=<jwt>.

    Client sends {"action": ...} frames (see ``ClientEvent``); the server
    pushes alert, sos.state, sos.triggered, emergency.active, chat.messages,
    contacts and alerts.pending events.
    """
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4001, reason="Missing token")
        return

    identity = await _authenticate_ws(engine, token)
    if identity is None:
        await websocket.close(code=4003, reason="Invalid or expired token")
        return

    await ws_manager.connect(websocket, identity.uid)
    conn = _Connection(websocket, engine, identity)
    try:
        while True:
            raw = await websocket.receive_text()
            if raw == "ping":
                await websocket.send_text('{"event":"pong"}')
                continue
            try:
                await conn.handle(ClientEvent.model_validate_json(raw))
            except ValidationError as e:
                await conn.send("error", {"detail": "Invalid event", "errors": e.errors(include_url=False)})
            except (EngineError, ValueError) as e:
                await conn.send("error", {"detail": str(e), "type": type(e).__name__})
    except WebSocketDisconnect:
        pass
    finally:
        conn.close()
        ws_manager.disconnect(websocket, identity.uid)
