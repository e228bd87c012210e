"""Emergency contacts."""

from __future__ import annotations

from nearhelp.core.live_query import LiveQuery, SnapshotCallback, Subscription
from nearhelp.db.store import CONTACTS, DocumentStore
from nearhelp.schemas.records import EmergencyContactRecord


class ContactService:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def add(
        self,
        owner_id: int,
        name: str,
        phone: str,
        relationship: str | None = None,
        is_primary: bool = False,
    ) -> EmergencyContactRecord:
        return await self._store.create_contact(
            owner_id,
            name=name.strip(),
            phone=phone.strip(),
            relationship=relationship,
            is_primary=is_primary,
        )

    async def list_contacts(self, owner_id: int) -> list[EmergencyContactRecord]:
        return await self._store.list_contacts(owner_id)

    async def update(self, owner_id: int, contact_id: int, **fields) -> EmergencyContactRecord:
        changes = {k: v for k, v in fields.items() if v is not None}
        return await self._store.update_contact(contact_id, owner_id, **changes)

    async def remove(self, owner_id: int, contact_id: int) -> None:
        await self._store.delete_contact(contact_id, owner_id)

    async def watch(self, owner_id: int, callback: SnapshotCallback | None = None) -> Subscription:
        query = LiveQuery(CONTACTS).where("owner_id", "==", owner_id).ordered("id")
        return await self._store.subscribe(query, callback)
