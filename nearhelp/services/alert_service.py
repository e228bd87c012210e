"""Helper-side alert inbox."""

from __future__ import annotations

import logging

from nearhelp.core.exceptions import NotAuthenticatedError
from nearhelp.core.identity import Identity
from nearhelp.core.live_query import LiveQuery, SnapshotCallback, Subscription
from nearhelp.db.store import ALERTS, DocumentStore
from nearhelp.schemas.records import DeliveryStatus, HelperAlertRecord

logger = logging.getLogger(__name__)


class AlertService:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def list_alerts(self, caller: Identity | None, pending_only: bool = False) -> list[HelperAlertRecord]:
        if caller is None:
            raise NotAuthenticatedError("Sign in to see alerts")
        status = DeliveryStatus.PENDING.value if pending_only else None
        return await self._store.list_alerts(caller.uid, status)

    async def acknowledge_alert(self, caller: Identity | None, alert_id: int) -> HelperAlertRecord:
        """Mark an alert delivered. Acknowledging twice is harmless."""
        if caller is None:
            raise NotAuthenticatedError("Sign in to acknowledge alerts")
        record = await self._store.mark_alert_delivered(alert_id, caller.uid)
        logger.info("Alert %s acknowledged by user=%s", alert_id, caller.uid)
        return record

    async def watch_pending(self, helper_id: int, callback: SnapshotCallback | None = None) -> Subscription:
        query = (
            LiveQuery(ALERTS)
            .where("helper_id", "==", helper_id)
            .where("delivery_status", "==", DeliveryStatus.PENDING.value)
            .ordered("created_at", descending=True)
        )
        return await self._store.subscribe(query, callback)
