"""Wires the coordination services around one store and one scheduler."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable

from sqlalchemy.orm import sessionmaker

from nearhelp.core.config import Settings, settings
from nearhelp.core.exceptions import EngineError
from nearhelp.core.identity import Identity
from nearhelp.core.live_query import LiveQueryHub
from nearhelp.core.scheduler import AsyncioScheduler
from nearhelp.core.ws_manager import ConnectionManager, ws_manager
from nearhelp.db.store import DocumentStore
from nearhelp.schemas.records import TriggerReason
from nearhelp.services.alert_service import AlertService
from nearhelp.services.chat_service import ChatCoordinator
from nearhelp.services.contact_service import ContactService
from nearhelp.services.emergency_service import EmergencySession, EmergencySessionManager
from nearhelp.services.geo_service import HelperDiscovery
from nearhelp.services.location_service import LocationService, ReportedPositionSource, StoredPositionSource
from nearhelp.services.notification_service import NotificationChannel, PushClient
from nearhelp.services.presence_service import PresenceService
from nearhelp.services.sos_activation import ActivationSnapshot, SosActivation

logger = logging.getLogger(__name__)


async def _call(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class EmergencyEngine:
    """Container for the services one process runs."""

    def __init__(
        self,
        session_factory: sessionmaker,
        scheduler: AsyncioScheduler | None = None,
        connections: ConnectionManager | None = None,
        notifier: NotificationChannel | None = None,
        config: Settings = settings,
    ) -> None:
        self.config = config
        self.scheduler = scheduler or AsyncioScheduler()
        self.store = DocumentStore(
            session_factory,
            clock=self.scheduler.now,
            hub=LiveQueryHub(delivery_timeout_s=config.live_query_delivery_timeout_s),
        )
        self.locations = LocationService(
            self.scheduler.now,
            timeout_ms=config.location_timeout_ms,
            retry_timeout_ms=config.location_retry_timeout_ms,
            cache_max_age_s=config.location_cache_max_age_s,
        )
        self.discovery = HelperDiscovery(
            self.store,
            self.scheduler.now,
            min_radius_km=config.search_min_radius_km,
            increment_km=config.search_radius_increment_km,
            max_radius_km=config.search_max_radius_km,
            online_window_minutes=config.online_window_minutes,
        )
        self.notifier = notifier or NotificationChannel(
            self.store,
            connections or ws_manager,
            PushClient(config.push_endpoint, config.push_server_key, config.push_timeout_s),
        )
        self.emergencies = EmergencySessionManager(
            self.store,
            self.discovery,
            self.notifier,
            self.locations,
            self.scheduler,
            chat_expiry_minutes=config.chat_expiry_minutes,
        )
        self.chats = ChatCoordinator(self.store, self.scheduler.now)
        self.contacts = ContactService(self.store)
        self.presence = PresenceService(self.store, self.locations, self.scheduler.now)
        self.alerts = AlertService(self.store)

    def activation_for(
        self,
        caller: Identity,
        on_change: Callable[[ActivationSnapshot], Any] | None = None,
        on_session: Callable[[EmergencySession], Any] | None = None,
        on_error: Callable[[EngineError], Any] | None = None,
    ) -> SosActivation:
        """Build a gesture state machine whose trigger raises an emergency.

        Presses are ignored while a previous trigger is still being processed.
        The hold gesture warms the location cache from the stored position so
        the trigger rarely has to wait for it.
        """
        in_flight: set[int] = set()

        async def _run(reason: TriggerReason) -> None:
            try:
                session = await self.emergencies.trigger_emergency(caller, reason, ReportedPositionSource())
            except EngineError as e:
                if on_error is None:
                    raise
                await _call(on_error, e)
                return
            finally:
                in_flight.discard(caller.uid)
            if on_session is not None:
                await _call(on_session, session)

        def _trigger(reason: TriggerReason) -> Any:
            in_flight.add(caller.uid)
            return _run(reason)

        def _warm() -> Any:
            return self.locations.warm(caller.uid, StoredPositionSource(self.store, caller.uid))

        return SosActivation(
            self.scheduler,
            _trigger,
            on_change=on_change,
            on_hold_start=_warm,
            is_busy=lambda: caller.uid in in_flight,
            hold_duration_ms=self.config.hold_duration_ms,
            hold_sample_ms=self.config.hold_sample_ms,
            rapid_tap_count=self.config.rapid_tap_count,
            rapid_tap_window_ms=self.config.rapid_tap_window_ms,
            confirmation_seconds=self.config.confirmation_seconds,
        )

    async def shutdown(self) -> None:
        self.emergencies.close()
        await self.scheduler.drain()
