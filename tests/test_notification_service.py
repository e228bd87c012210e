"""Alert delivery tests: websocket fan-out and the push gateway client."""

import json

import httpx
import pytest

from nearhelp.core.ws_manager import ConnectionManager
from nearhelp.services.notification_service import AlertPayload, NotificationChannel, PushClient, PushError

ENDPOINT = "https://push.test/send"


class FakeSocket:
    def __init__(self, broken: bool = False) -> None:
        self.frames: list[dict] = []
        self.broken = broken

    async def accept(self) -> None:
        pass

    async def send_text(self, text: str) -> None:
        if self.broken:
            raise RuntimeError("socket closed")
        self.frames.append(json.loads(text))


def _payload() -> AlertPayload:
    return AlertPayload(title="Emergency nearby", body="Ana needs help", data={"type": "emergency", "emergency_id": 4})


def _gateway(requests: list, response: dict | None = None, status: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status, json=response or {"success": 1, "failure": 0})

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_push_client_posts_fcm_message():
    requests = []
    client = PushClient(ENDPOINT, "server-key", transport=_gateway(requests))

    await client.send("device-token", _payload())

    assert len(requests) == 1
    sent = requests[0]
    assert sent.headers["Authorization"] == "key=server-key"
    body = json.loads(sent.content)
    assert body["to"] == "device-token"
    assert body["priority"] == "high"
    assert body["notification"]["title"] == "Emergency nearby"
    assert body["data"] == {"type": "emergency", "emergency_id": "4"}


@pytest.mark.asyncio
async def test_push_client_raises_on_gateway_failure():
    rejected = {"success": 0, "failure": 1, "results": [{"error": "NotRegistered"}]}
    client = PushClient(ENDPOINT, "k", transport=_gateway([], rejected))
    with pytest.raises(PushError):
        await client.send("stale-token", _payload())


@pytest.mark.asyncio
async def test_push_client_raises_on_http_error():
    client = PushClient(ENDPOINT, "k", transport=_gateway([], status=500))
    with pytest.raises(PushError):
        await client.send("token", _payload())


def test_push_client_disabled_without_key():
    assert not PushClient(ENDPOINT, "").enabled


@pytest.mark.asyncio
async def test_channel_sends_to_open_sockets(nh, make_user):
    user = make_user("Helper")
    connections = ConnectionManager()
    socket = FakeSocket()
    await connections.connect(socket, user.uid)
    channel = NotificationChannel(nh.store, connections, PushClient(ENDPOINT, ""))

    assert await channel.deliver(user.uid, _payload()) is True
    assert socket.frames == [{"event": "alert", "data": _payload().as_dict()}]


@pytest.mark.asyncio
async def test_channel_pushes_to_registered_token(nh, make_user):
    user = make_user("Helper")
    await nh.presence.register_push_token(user.uid, "tok-1")
    requests = []
    channel = NotificationChannel(nh.store, ConnectionManager(), PushClient(ENDPOINT, "k", transport=_gateway(requests)))

    assert await channel.deliver(user.uid, _payload()) is True
    assert json.loads(requests[0].content)["to"] == "tok-1"


@pytest.mark.asyncio
async def test_channel_reports_undelivered_without_raising(nh, make_user):
    user = make_user("Helper")
    await nh.presence.register_push_token(user.uid, "tok-1")
    connections = ConnectionManager()
    await connections.connect(FakeSocket(broken=True), user.uid)
    failing = PushClient(ENDPOINT, "k", transport=_gateway([], status=503))
    channel = NotificationChannel(nh.store, connections, failing)

    assert await channel.deliver(user.uid, _payload()) is False
    assert not connections.is_connected(user.uid)


@pytest.mark.asyncio
async def test_channel_without_token_or_socket(nh, make_user):
    user = make_user("Offline")
    requests = []
    channel = NotificationChannel(nh.store, ConnectionManager(), PushClient(ENDPOINT, "k", transport=_gateway(requests)))

    assert await channel.deliver(user.uid, _payload()) is False
    assert requests == []
