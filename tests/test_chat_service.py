"""Chat coordination tests."""

import asyncio

import pytest

from nearhelp.core import emergency_policies as policies
from nearhelp.core.exceptions import ChatEndedError, NotAuthenticatedError, NotFoundError
from nearhelp.schemas.records import MessageKind, TriggerReason
from nearhelp.services.location_service import ReportedPositionSource
from tests.fakes import fix

HERE = (51.5, -0.12)


@pytest.fixture
def victim(make_user):
    return make_user("Victim")


@pytest.fixture
def helper(make_user):
    # outside every search radius, so only joins through the chat
    return make_user("Helper", -33.9, 151.2)


async def _open(nh, victim):
    session = await nh.emergencies.trigger_emergency(victim, TriggerReason.MANUAL, ReportedPositionSource(fix(*HERE)))
    return session.chat


@pytest.mark.asyncio
async def test_join_adds_member_and_posts_once(nh, victim, helper):
    chat = await _open(nh, victim)

    joined = await nh.chats.join(helper, chat.id)
    again = await nh.chats.join(helper, chat.id)

    assert joined.participant_ids == {victim.uid, helper.uid}
    assert again.participant_ids == joined.participant_ids
    texts = [m.text for m in await nh.store.list_messages(chat.id)]
    assert texts.count(policies.MSG_HELPER_JOINED.format(name="Helper")) == 1


@pytest.mark.asyncio
async def test_concurrent_duplicate_joins_give_the_union(nh, victim, make_user):
    chat = await _open(nh, victim)
    # far from the emergency so nobody is added by discovery
    joiners = [make_user(f"Joiner {i}", -33.9, 151.2) for i in range(8)]

    results = await asyncio.gather(*(nh.chats.join(j, chat.id) for j in joiners + joiners))

    expected = {victim.uid} | {j.uid for j in joiners}
    assert (await nh.store.get_chat(chat.id)).participant_ids == expected
    assert all(r.participant_ids <= expected for r in results)
    texts = [m.text for m in await nh.store.list_messages(chat.id)]
    for j in joiners:
        assert texts.count(policies.MSG_HELPER_JOINED.format(name=j.display_name)) == 1


@pytest.mark.asyncio
async def test_join_requires_identity(nh, victim):
    chat = await _open(nh, victim)
    with pytest.raises(NotAuthenticatedError):
        await nh.chats.join(None, chat.id)


@pytest.mark.asyncio
async def test_join_unknown_chat(nh, helper):
    with pytest.raises(NotFoundError):
        await nh.chats.join(helper, 424242)


@pytest.mark.asyncio
async def test_outsider_cannot_join_closed_chat(nh, victim, helper, make_user):
    chat = await _open(nh, victim)
    await nh.chats.join(helper, chat.id)
    emergency_id = chat.emergency_id
    await nh.emergencies.resolve_emergency(victim, emergency_id)

    # existing members get the chat back unchanged
    assert (await nh.chats.join(helper, chat.id)).is_active is False
    with pytest.raises(ChatEndedError):
        await nh.chats.join(make_user("Late"), chat.id)


@pytest.mark.asyncio
async def test_send_message_records_sender(nh, victim, helper):
    chat = await _open(nh, victim)
    await nh.chats.join(helper, chat.id)

    msg = await nh.chats.send_message(helper, chat.id, "  On my way  ")

    assert msg.text == "On my way"
    assert msg.sender_id == helper.uid
    assert msg.sender_name == "Helper"
    assert msg.kind == MessageKind.TEXT
    assert (await nh.chats.list_messages(victim, chat.id))[-1] == msg


@pytest.mark.asyncio
async def test_send_from_non_member_adds_them(nh, victim, helper):
    chat = await _open(nh, victim)

    await nh.chats.send_message(helper, chat.id, "I can see you")

    assert helper.uid in (await nh.store.get_chat(chat.id)).participant_ids


@pytest.mark.asyncio
async def test_empty_message_rejected(nh, victim):
    chat = await _open(nh, victim)
    with pytest.raises(ValueError):
        await nh.chats.send_message(victim, chat.id, "   ")


@pytest.mark.asyncio
async def test_send_after_close_writes_nothing(nh, victim, helper):
    chat = await _open(nh, victim)
    await nh.chats.join(helper, chat.id)
    await nh.emergencies.resolve_emergency(victim, chat.emergency_id)
    before = await nh.store.list_messages(chat.id)

    with pytest.raises(ChatEndedError):
        await nh.chats.send_message(helper, chat.id, "hello?")
    with pytest.raises(ChatEndedError):
        await nh.store.append_message(chat.id, sender_id=helper.uid, sender_name="Helper", text="x", kind="text")

    assert await nh.store.list_messages(chat.id) == before


@pytest.mark.asyncio
async def test_send_location_message(nh, victim):
    chat = await _open(nh, victim)

    msg = await nh.chats.send_location(victim, chat.id, fix(51.51, -0.13))

    assert msg.kind == MessageKind.LOCATION
    assert (msg.latitude, msg.longitude) == (51.51, -0.13)
    assert "51.51,-0.13" in msg.text


@pytest.mark.asyncio
async def test_non_member_cannot_read_messages(nh, victim, helper):
    chat = await _open(nh, victim)
    with pytest.raises(NotFoundError):
        await nh.chats.list_messages(helper, chat.id)


@pytest.mark.asyncio
async def test_status_of_open_chat(nh, victim):
    chat = await _open(nh, victim)
    status = nh.chats.chat_status(chat)
    assert status.is_active
    assert not status.is_read_only
    assert status.status_message is None


@pytest.mark.asyncio
async def test_status_after_resolve(nh, victim):
    chat = await _open(nh, victim)
    await nh.emergencies.resolve_emergency(victim, chat.emergency_id)

    status = nh.chats.chat_status(await nh.store.get_chat(chat.id))

    assert status.is_resolved
    assert not status.is_expired
    assert status.is_read_only
    assert status.status_message == policies.STATUS_MESSAGE_RESOLVED


@pytest.mark.asyncio
async def test_status_is_expired_once_past_deadline(nh, victim, scheduler):
    chat = await _open(nh, victim)
    nh.emergencies.close()
    scheduler.advance(3600)

    # past the deadline but not yet closed by the timer
    status = nh.chats.chat_status(await nh.store.get_chat(chat.id))
    assert status.is_expired
    assert not status.is_active
    assert status.status_message == policies.STATUS_MESSAGE_EXPIRED

    await nh.emergencies.sweep_expired()
    closed = nh.chats.chat_status(await nh.store.get_chat(chat.id))
    assert closed.is_expired and closed.is_read_only


@pytest.mark.asyncio
async def test_watch_messages_streams_snapshots(nh, victim):
    chat = await _open(nh, victim)
    seen = []
    sub = await nh.chats.watch_messages(chat.id, seen.append)

    await nh.chats.send_message(victim, chat.id, "help")

    assert len(seen) == 2
    assert seen[-1][-1].text == "help"
    sub.unsubscribe()
    await nh.chats.send_message(victim, chat.id, "still here")
    assert len(seen) == 2
