"""Emergency session lifecycle: trigger, fan-out, resolve, expire."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from nearhelp.core import emergency_policies as policies
from nearhelp.core.exceptions import (
    DiscoveryError,
    EmergencyNotCreatedError,
    EngineError,
    NotAuthenticatedError,
    NotFoundError,
    NotVictimError,
    StoreUnavailableError,
)
from nearhelp.core.identity import Identity
from nearhelp.core.live_query import SnapshotCallback, Subscription
from nearhelp.core.scheduler import Scheduler, TimerHandle
from nearhelp.db.store import DocumentStore, open_emergencies_query
from nearhelp.schemas.records import (
    AlertType,
    ChatRecord,
    ClosedReason,
    EmergencyRecord,
    EmergencyStatus,
    Location,
    MessageKind,
    TriggerReason,
)
from nearhelp.services.geo_service import HelperCandidate, HelperDiscovery
from nearhelp.services.location_service import (
    LocationService,
    PositionSource,
    ReportedPositionSource,
    StoredPositionSource,
)
from nearhelp.services.notification_service import AlertPayload, NotificationChannel

logger = logging.getLogger(__name__)


@dataclass
class EmergencySession:
    """Everything the caller needs after a trigger."""

    emergency: EmergencyRecord
    chat: ChatRecord
    helpers: list[HelperCandidate] = field(default_factory=list)
    search_radius_km: float | None = None
    notified_count: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def location_warning(self) -> str | None:
        for w in self.warnings:
            if "location" in w.lower():
                return w
        return None


def most_recent(snapshot: list[EmergencyRecord]) -> EmergencyRecord | None:
    """Pick the authoritative open emergency from a snapshot."""
    if not snapshot:
        return None
    return max(snapshot, key=lambda e: (e.created_at, e.id))


class EmergencySessionManager:
    def __init__(
        self,
        store: DocumentStore,
        discovery: HelperDiscovery,
        notifier: NotificationChannel,
        locations: LocationService,
        scheduler: Scheduler,
        chat_expiry_minutes: int = policies.CHAT_EXPIRY_MINUTES,
    ) -> None:
        self._store = store
        self._discovery = discovery
        self._notifier = notifier
        self._locations = locations
        self._scheduler = scheduler
        self.chat_expiry = timedelta(minutes=chat_expiry_minutes)
        self._expiry_timers: dict[int, TimerHandle] = {}

    # -- trigger --------------------------------------------------------------

    async def trigger_emergency(
        self,
        caller: Identity | None,
        reason: TriggerReason,
        source: PositionSource | None = None,
    ) -> EmergencySession:
        """Create an emergency and alert the people around the caller.

        Only a failure to write the emergency record or its chat is fatal;
        everything after that degrades into warnings on the returned session.
        """
        if caller is None:
            raise NotAuthenticatedError("Sign in to send an emergency alert")

        warnings: list[str] = []
        location, location_warning = await self._locations.best_effort(
            caller.uid,
            source or ReportedPositionSource(),
            StoredPositionSource(self._store, caller.uid),
        )
        if location_warning:
            logger.warning("Emergency for user=%s: %s", caller.uid, location_warning)
            warnings.append(location_warning)

        try:
            emergency = await self._store.create_emergency(
                victim_id=caller.uid,
                victim_name=caller.display_name,
                victim_email=caller.email,
                victim_phone=caller.phone,
                location=location,
                trigger_reason=reason.value,
                language_preference=caller.language,
            )
        except StoreUnavailableError as e:
            logger.error("Emergency for user=%s was not created: %s", caller.uid, e)
            raise EmergencyNotCreatedError("Emergency could not be created; the alert did NOT go out") from e

        logger.info("Emergency %s created for user=%s (reason=%s)", emergency.id, caller.uid, reason.value)

        expires_at = emergency.created_at + self.chat_expiry
        try:
            chat = await self._store.create_chat(emergency.id, [caller.uid], expires_at)
        except StoreUnavailableError as e:
            logger.error("Chat for emergency %s was not created: %s", emergency.id, e)
            await self._abort(emergency.id, expires_at)
            raise EmergencyNotCreatedError("Emergency chat could not be created; the alert did NOT go out") from e
        emergency = emergency.model_copy(update={"chat_id": chat.id})

        try:
            await self._post_system(chat.id, policies.MSG_EMERGENCY_ACTIVATED)
        except StoreUnavailableError:
            logger.exception("Could not post activation message to chat %s", chat.id)
            warnings.append("Activation message could not be posted")
        if location is not None:
            await self._post_victim_location(chat.id, caller, location)

        helpers: list[HelperCandidate] = []
        radius: float | None = None
        if location is None:
            warnings.append("Nearby helpers were not searched: location unknown")
        else:
            try:
                result = await self._discovery.discover(caller.uid, location.latitude, location.longitude)
                helpers, radius = result.helpers, result.radius_km
            except DiscoveryError as e:
                logger.error("Helper discovery failed for emergency %s: %s", emergency.id, e)
                warnings.append("Helper search failed")

        notified = 0
        if helpers:
            try:
                chat, _ = await self._store.add_participants(chat.id, [h.user_id for h in helpers])
            except StoreUnavailableError:
                logger.exception("Could not add helpers to chat %s", chat.id)
                warnings.append("Helpers could not be added to the chat")
            notified = await self._fan_out(emergency, chat, helpers)
            if notified < len(helpers):
                warnings.append(f"{len(helpers) - notified} helper(s) could not be notified")

        self._schedule_expiry(emergency.id, expires_at)
        try:
            emergency = await self._store.update_emergency(emergency.id, status=EmergencyStatus.ACTIVE.value)
        except StoreUnavailableError:
            # still open while waiting, so the expiry timer closes it
            logger.exception("Could not mark emergency %s active", emergency.id)
            warnings.append("Emergency status could not be updated")
        else:
            if not emergency.is_open:
                # resolved while alerts were going out
                self._cancel_expiry(emergency.id)
        return EmergencySession(
            emergency=emergency,
            chat=chat,
            helpers=helpers,
            search_radius_km=radius,
            notified_count=notified,
            warnings=warnings,
        )

    async def _abort(self, emergency_id: int, expires_at: datetime) -> None:
        """Close an emergency whose chat never came up.

        When even the close fails, the expiry timer is left to retry it.
        """
        try:
            await self._store.close_emergency(emergency_id, ClosedReason.ABORTED.value, policies.MSG_EMERGENCY_ABORTED)
        except StoreUnavailableError:
            logger.exception("Could not close aborted emergency %s", emergency_id)
            self._schedule_expiry(emergency_id, expires_at)

    async def _fan_out(self, emergency: EmergencyRecord, chat: ChatRecord, helpers: list[HelperCandidate]) -> int:
        try:
            await self._store.create_alerts(
                [
                    {
                        "helper_id": h.user_id,
                        "emergency_id": emergency.id,
                        "chat_id": chat.id,
                        "victim_id": emergency.victim_id,
                        "victim_name": emergency.victim_name,
                        "distance_km": h.distance_km,
                        "alert_type": AlertType.EMERGENCY.value,
                    }
                    for h in helpers
                ]
            )
        except StoreUnavailableError:
            logger.exception("Could not record helper alerts for emergency %s", emergency.id)

        async def _one(helper: HelperCandidate) -> bool:
            payload = AlertPayload(
                title="Emergency nearby",
                body=f"{emergency.victim_name} needs help {helper.distance_km:.1f} km from you",
                data={
                    "type": AlertType.EMERGENCY.value,
                    "emergency_id": emergency.id,
                    "chat_id": chat.id,
                    "victim_id": emergency.victim_id,
                    "distance_km": helper.distance_km,
                },
            )
            return await self._notifier.deliver(helper.user_id, payload)

        results = await asyncio.gather(*(_one(h) for h in helpers), return_exceptions=True)
        notified = 0
        for helper, result in zip(helpers, results):
            if isinstance(result, Exception):
                logger.error("Alert to helper=%s failed", helper.user_id, exc_info=result)
            elif result:
                notified += 1
        logger.info("Emergency %s: notified %s of %s helper(s)", emergency.id, notified, len(helpers))
        return notified

    async def _post_system(self, chat_id: int, text: str) -> None:
        await self._store.append_message(
            chat_id,
            sender_id=None,
            sender_name=policies.SYSTEM_SENDER_NAME,
            text=text,
            kind=MessageKind.SYSTEM.value,
        )

    async def _post_victim_location(self, chat_id: int, caller: Identity, location: Location) -> None:
        try:
            await self._store.append_message(
                chat_id,
                sender_id=caller.uid,
                sender_name=caller.display_name,
                text=policies.MSG_VICTIM_LOCATION.format(lat=location.latitude, lng=location.longitude),
                kind=MessageKind.LOCATION.value,
                latitude=location.latitude,
                longitude=location.longitude,
            )
        except EngineError:
            logger.exception("Could not post victim location to chat %s", chat_id)

    # -- closing --------------------------------------------------------------

    async def resolve_emergency(self, caller: Identity | None, emergency_id: int) -> EmergencyRecord:
        """Victim marks the emergency as handled. Repeat calls are no-ops."""
        if caller is None:
            raise NotAuthenticatedError("Sign in to resolve an emergency")
        emergency = await self._store.get_emergency(emergency_id)
        if emergency is None:
            raise NotFoundError("Emergency not found")
        if emergency.victim_id != caller.uid:
            raise NotVictimError("Only the person who raised the emergency can resolve it")
        if emergency.is_open:
            await self._close(emergency, ClosedReason.RESOLVED, policies.MSG_EMERGENCY_RESOLVED)
        return await self._store.get_emergency(emergency_id)

    async def expire(self, emergency_id: int) -> bool:
        """Close an emergency whose chat ran out of time.

        Returns False when it was already closed, for example by a resolve
        that got there first.
        """
        emergency = await self._store.get_emergency(emergency_id)
        if emergency is None or not emergency.is_open:
            self._cancel_expiry(emergency_id)
            return False
        return await self._close(emergency, ClosedReason.EXPIRED, policies.MSG_EMERGENCY_EXPIRED)

    async def _close(self, emergency: EmergencyRecord, reason: ClosedReason, text: str) -> bool:
        won = await self._store.close_emergency(emergency.id, reason.value, text)
        self._cancel_expiry(emergency.id)
        if won:
            logger.info("Emergency %s closed (%s)", emergency.id, reason.value)
            await self._notify_closed(emergency, reason)
        return won

    async def _notify_closed(self, emergency: EmergencyRecord, reason: ClosedReason) -> None:
        if emergency.chat_id is None:
            return
        try:
            chat = await self._store.get_chat(emergency.chat_id)
            if chat is None:
                return
            recipients = sorted(chat.participant_ids - {emergency.victim_id})
            if not recipients:
                return
            await self._store.create_alerts(
                [
                    {
                        "helper_id": uid,
                        "emergency_id": emergency.id,
                        "chat_id": chat.id,
                        "victim_id": emergency.victim_id,
                        "victim_name": emergency.victim_name,
                        "distance_km": None,
                        "alert_type": AlertType.RESOLUTION.value,
                    }
                    for uid in recipients
                ]
            )
        except StoreUnavailableError:
            logger.exception("Could not record closing alerts for emergency %s", emergency.id)
            return

        if reason == ClosedReason.RESOLVED:
            body = f"{emergency.victim_name} has received help. Thank you!"
        else:
            body = f"The emergency chat for {emergency.victim_name} has ended."
        payload = AlertPayload(
            title="Emergency resolved" if reason == ClosedReason.RESOLVED else "Emergency ended",
            body=body,
            data={"type": AlertType.RESOLUTION.value, "emergency_id": emergency.id, "reason": reason.value},
        )
        for uid in recipients:
            try:
                await self._notifier.deliver(uid, payload)
            except Exception:
                logger.exception("Closing notice to user=%s failed", uid)

    # -- expiry timers --------------------------------------------------------

    def _schedule_expiry(self, emergency_id: int, expires_at: datetime) -> None:
        delay = (expires_at - self._scheduler.now()).total_seconds()
        self._cancel_expiry(emergency_id)
        self._expiry_timers[emergency_id] = self._scheduler.call_later(delay, lambda: self._expiry_due(emergency_id))

    def _expiry_due(self, emergency_id: int) -> None:
        self._expiry_timers.pop(emergency_id, None)
        self._scheduler.spawn(self.expire(emergency_id))

    def _cancel_expiry(self, emergency_id: int) -> None:
        handle = self._expiry_timers.pop(emergency_id, None)
        if handle is not None:
            handle.cancel()

    def pending_expiries(self) -> list[int]:
        return sorted(self._expiry_timers)

    def close(self) -> None:
        """Cancel every expiry timer owned by this process."""
        for handle in self._expiry_timers.values():
            handle.cancel()
        self._expiry_timers.clear()

    async def sweep_expired(self) -> int:
        """Close every open emergency whose chat is past ``expires_at``.

        Covers emergencies whose owning process went away before its timer
        fired. Returns how many were closed by this sweep.
        """
        closed = 0
        for chat in await self._store.list_expired_chats(self._scheduler.now()):
            if await self.expire(chat.emergency_id):
                closed += 1
        if closed:
            logger.info("Expiry sweep closed %s emergency(ies)", closed)
        return closed

    async def run_expiry_sweep(self, interval_s: float) -> None:
        while True:
            try:
                await self.sweep_expired()
            except EngineError:
                logger.exception("Expiry sweep failed")
            await asyncio.sleep(interval_s)

    # -- queries --------------------------------------------------------------

    async def get_emergency(self, emergency_id: int) -> EmergencyRecord:
        emergency = await self._store.get_emergency(emergency_id)
        if emergency is None:
            raise NotFoundError("Emergency not found")
        return emergency

    async def active_emergency(self, victim_id: int) -> EmergencyRecord | None:
        return most_recent(await self._store.query(open_emergencies_query(victim_id)))

    async def watch_active(self, victim_id: int, callback: SnapshotCallback | None = None) -> Subscription:
        """Live snapshots of the victim's open emergencies (use ``most_recent``)."""
        return await self._store.subscribe(open_emergencies_query(victim_id), callback)

    async def list_history(self, victim_id: int, limit: int = 50) -> list[EmergencyRecord]:
        return await self._store.list_emergencies(victim_id=victim_id, limit=limit)
