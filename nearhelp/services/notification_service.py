"""Best-effort alert delivery: in-app websocket plus out-of-app push."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from nearhelp.core.exceptions import StoreUnavailableError
from nearhelp.core.ws_manager import ConnectionManager
from nearhelp.db.store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass
class AlertPayload:
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"title": self.title, "body": self.body, "data": self.data}


class PushError(Exception):
    """Raised when the push gateway rejects or cannot take a message."""


class PushClient:
    """Minimal client for the FCM legacy HTTP endpoint."""

    def __init__(
        self,
        endpoint: str,
        server_key: str,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint
        self._server_key = server_key
        self._timeout_s = timeout_s
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self._server_key)

    async def send(self, token: str, payload: AlertPayload) -> None:
        body = {
            "to": token,
            "priority": "high",
            "notification": {"title": payload.title, "body": payload.body},
            # FCM data values must be strings
            "data": {k: str(v) for k, v in payload.data.items()},
        }
        headers = {"Authorization": f"key={self._server_key}"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                response = await client.post(self.endpoint, json=body, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PushError(f"Push request failed: {exc}") from exc

        data = response.json()
        if data.get("failure"):
            raise PushError(f"Push gateway reported failure: {data.get('results')}")


class NotificationChannel:
    """Delivers an alert to one user over every channel that is available.

    Never raises for delivery problems; returns whether any channel took it.
    """

    def __init__(self, store: DocumentStore, connections: ConnectionManager, push: PushClient | None = None) -> None:
        self._store = store
        self._connections = connections
        self._push = push

    async def deliver(self, user_id: int, payload: AlertPayload, event: str = "alert") -> bool:
        delivered = False
        try:
            delivered = await self._connections.send_to_user(user_id, event, payload.as_dict()) > 0
        except Exception:
            logger.exception("In-app delivery failed for user=%s", user_id)

        if self._push is None or not self._push.enabled:
            return delivered

        try:
            user = await self._store.get_user(user_id)
        except StoreUnavailableError:
            logger.warning("Could not look up push token for user=%s", user_id)
            return delivered
        if user is None or not user.push_token:
            logger.debug("No push token for user=%s", user_id)
            return delivered
        try:
            await self._push.send(user.push_token, payload)
            delivered = True
        except PushError as e:
            logger.warning("Push delivery failed for user=%s: %s", user_id, e)
        return delivered
