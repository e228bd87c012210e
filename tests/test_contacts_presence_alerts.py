"""Contacts, presence and helper alert inbox."""

import pytest

from nearhelp.core.exceptions import NotAuthenticatedError, NotFoundError
from nearhelp.schemas.records import DeliveryStatus, TriggerReason
from nearhelp.services.location_service import ReportedPositionSource
from tests.fakes import START, fix


@pytest.mark.asyncio
async def test_primary_contact_is_listed_first_and_unique(nh, make_user):
    owner = make_user("Owner")
    await nh.contacts.add(owner.uid, "Sam", "+15550001", "friend")
    mum = await nh.contacts.add(owner.uid, " Mum ", "+15550002", "mother", is_primary=True)
    dad = await nh.contacts.add(owner.uid, "Dad", "+15550003", "father", is_primary=True)

    contacts = await nh.contacts.list_contacts(owner.uid)

    assert mum.name == "Mum"
    assert [c.name for c in contacts] == ["Dad", "Sam", "Mum"]
    assert [c.is_primary for c in contacts] == [True, False, False]
    assert contacts[0].id == dad.id


@pytest.mark.asyncio
async def test_update_and_remove_contact(nh, make_user):
    owner = make_user("Owner")
    c = await nh.contacts.add(owner.uid, "Sam", "+15550001")

    updated = await nh.contacts.update(owner.uid, c.id, phone="+15559999", relationship=None)
    assert updated.phone == "+15559999"
    assert updated.name == "Sam"

    await nh.contacts.remove(owner.uid, c.id)
    assert await nh.contacts.list_contacts(owner.uid) == []


@pytest.mark.asyncio
async def test_contacts_are_private(nh, make_user):
    owner = make_user("Owner")
    other = make_user("Other")
    c = await nh.contacts.add(owner.uid, "Sam", "+15550001")

    with pytest.raises(NotFoundError):
        await nh.contacts.update(other.uid, c.id, name="Hacked")
    with pytest.raises(NotFoundError):
        await nh.contacts.remove(other.uid, c.id)


@pytest.mark.asyncio
async def test_report_location_updates_presence_and_cache(nh, make_user):
    user = make_user("Walker")

    record = await nh.presence.report_location(user.uid, 48.85, 2.35, accuracy_m=12)

    assert (record.latitude, record.longitude) == (48.85, 2.35)
    assert record.location_updated_at == START
    assert record.last_active == START
    assert nh.locations.last_known(user.uid).accuracy_m == 12


@pytest.mark.asyncio
async def test_heartbeat_and_online_flag(nh, make_user, scheduler):
    user = make_user("Walker")
    await nh.presence.set_online(user.uid, True)
    scheduler.advance(30)

    record = await nh.presence.heartbeat(user.uid)

    assert record.is_online
    assert record.latitude is None
    assert (record.last_active - START).total_seconds() == 30


@pytest.mark.asyncio
async def test_presence_for_unknown_user(nh):
    with pytest.raises(NotFoundError):
        await nh.presence.set_online(9999, True)
    assert await nh.presence.get(9999) is None


@pytest.mark.asyncio
async def test_push_token_registration(nh, make_user):
    user = make_user("Walker")
    assert (await nh.presence.register_push_token(user.uid, "tok")).push_token == "tok"
    assert (await nh.presence.register_push_token(user.uid, None)).push_token is None


@pytest.mark.asyncio
async def test_alert_inbox_and_acknowledge(nh, make_user):
    victim = make_user("Victim")
    helper = make_user("Helper", 10.01, 10.0, online=True)
    session = await nh.emergencies.trigger_emergency(victim, TriggerReason.MANUAL, ReportedPositionSource(fix(10.0, 10.0)))
    pending = []
    await nh.alerts.watch_pending(helper.uid, pending.append)

    [alert] = await nh.alerts.list_alerts(helper, pending_only=True)
    assert alert.chat_id == session.chat.id
    assert alert.victim_name == "Victim"
    assert alert.distance_km == pytest.approx(1.11, abs=0.01)

    acked = await nh.alerts.acknowledge_alert(helper, alert.id)
    again = await nh.alerts.acknowledge_alert(helper, alert.id)

    assert acked.delivery_status == DeliveryStatus.DELIVERED
    assert again.delivered_at == acked.delivered_at
    assert await nh.alerts.list_alerts(helper, pending_only=True) == []
    assert len(await nh.alerts.list_alerts(helper)) == 1
    assert [len(s) for s in pending] == [1, 0]


@pytest.mark.asyncio
async def test_alerts_belong_to_their_helper(nh, make_user):
    victim = make_user("Victim")
    helper = make_user("Helper", 10.01, 10.0)
    other = make_user("Other")
    await nh.emergencies.trigger_emergency(victim, TriggerReason.MANUAL, ReportedPositionSource(fix(10.0, 10.0)))
    [alert] = await nh.alerts.list_alerts(helper)

    with pytest.raises(NotFoundError):
        await nh.alerts.acknowledge_alert(other, alert.id)
    with pytest.raises(NotAuthenticatedError):
        await nh.alerts.list_alerts(None)
