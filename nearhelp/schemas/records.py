"""Persisted record types.

Every document the engine stores or reads is one of these tagged records.
``parse_record`` is the single entry point for raw documents: it upgrades
older shapes to ``SCHEMA_VERSION`` and rejects anything it does not know.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Annotated, Any, Callable, Literal, Union

from pydantic import AfterValidator, BaseModel, Field, ValidationError

from nearhelp.core.exceptions import RecordSchemaError

SCHEMA_VERSION = 1


def _as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes; everything we write is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class EmergencyStatus(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    CLOSED = "closed"


class ClosedReason(str, enum.Enum):
    RESOLVED = "resolved"
    EXPIRED = "expired"
    # record written but the chat could not be
    ABORTED = "aborted"


class TriggerReason(str, enum.Enum):
    CONFIRMED = "confirmed"
    AUTO = "auto"
    RAPID_TAP = "rapid_tap"
    MANUAL = "manual"


class MessageKind(str, enum.Enum):
    TEXT = "text"
    LOCATION = "location"
    SYSTEM = "system"


class AlertType(str, enum.Enum):
    EMERGENCY = "emergency"
    RESOLUTION = "resolution"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    DELIVERED = "delivered"


OPEN_STATUSES = (EmergencyStatus.WAITING.value, EmergencyStatus.ACTIVE.value)


class Location(BaseModel):
    """A single position fix."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy_m: float | None = Field(default=None, ge=0)
    captured_at: UtcDatetime

    model_config = {"extra": "forbid", "frozen": True}


class ContactInfo(BaseModel):
    email: str | None = None
    phone: str | None = None

    model_config = {"extra": "forbid", "frozen": True}


class Record(BaseModel):
    schema_version: int = SCHEMA_VERSION

    model_config = {"extra": "forbid", "frozen": True}


class EmergencyRecord(Record):
    record_type: Literal["emergency"] = "emergency"
    id: int
    victim_id: int
    victim_name: str
    victim_contact: ContactInfo = ContactInfo()
    location: Location | None = None
    status: EmergencyStatus
    trigger_reason: TriggerReason | None = None
    language_preference: str | None = None
    chat_id: int | None = None
    created_at: UtcDatetime
    closed_at: UtcDatetime | None = None
    closed_reason: ClosedReason | None = None

    @property
    def is_open(self) -> bool:
        return self.status != EmergencyStatus.CLOSED


class ChatRecord(Record):
    record_type: Literal["chat"] = "chat"
    id: int
    emergency_id: int
    participant_ids: frozenset[int] = frozenset()
    is_active: bool
    created_at: UtcDatetime
    expires_at: UtcDatetime | None = None
    closed_at: UtcDatetime | None = None
    closed_reason: ClosedReason | None = None


class MessageRecord(Record):
    record_type: Literal["message"] = "message"
    id: int
    chat_id: int
    sender_id: int | None = None
    sender_name: str
    text: str
    kind: MessageKind = MessageKind.TEXT
    latitude: float | None = None
    longitude: float | None = None
    sent_at: UtcDatetime


class EmergencyContactRecord(Record):
    record_type: Literal["contact"] = "contact"
    id: int
    owner_id: int
    name: str
    phone: str
    relationship: str | None = None
    is_primary: bool = False


class HelperAlertRecord(Record):
    record_type: Literal["helper_alert"] = "helper_alert"
    id: int
    helper_id: int
    emergency_id: int
    chat_id: int | None = None
    victim_id: int
    victim_name: str
    distance_km: float | None = None
    alert_type: AlertType = AlertType.EMERGENCY
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    created_at: UtcDatetime
    delivered_at: UtcDatetime | None = None


class UserPresenceRecord(Record):
    """What discovery needs to know about a potential helper."""

    record_type: Literal["presence"] = "presence"
    user_id: int
    display_name: str
    email: str | None = None
    phone: str | None = None
    language: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    location_updated_at: UtcDatetime | None = None
    is_online: bool = False
    last_active: UtcDatetime | None = None
    push_token: str | None = None


AnyRecord = Union[
    EmergencyRecord,
    ChatRecord,
    MessageRecord,
    EmergencyContactRecord,
    HelperAlertRecord,
    UserPresenceRecord,
]

_RECORD_TYPES: dict[str, type[Record]] = {
    "emergency": EmergencyRecord,
    "chat": ChatRecord,
    "message": MessageRecord,
    "contact": EmergencyContactRecord,
    "helper_alert": HelperAlertRecord,
    "presence": UserPresenceRecord,
}


# -- upgrades from version 0 ------------------------------------------------
#
# Version 0 documents come from the first mobile release: status names were
# upper case, an unknown location was written as (0, 0), and messages had no
# kind (system messages used the literal sender id "system").

_LEGACY_STATUS = {
    "WAITING": "waiting",
    "ACTIVE": "active",
    "RESOLVED": "closed",
    "CANCELLED": "closed",
    "CLOSED": "closed",
}


def _upgrade_emergency_v0(doc: dict[str, Any]) -> dict[str, Any]:
    status = doc.get("status")
    if isinstance(status, str) and status in _LEGACY_STATUS:
        if status == "RESOLVED" and not doc.get("closed_reason"):
            doc["closed_reason"] = ClosedReason.RESOLVED.value
        doc["status"] = _LEGACY_STATUS[status]
    loc = doc.get("location")
    if isinstance(loc, dict) and loc.get("latitude") == 0 and loc.get("longitude") == 0:
        doc["location"] = None
    return doc


def _upgrade_message_v0(doc: dict[str, Any]) -> dict[str, Any]:
    if doc.get("sender_id") == "system":
        doc["sender_id"] = None
    if not doc.get("kind"):
        if doc.get("sender_id") is None:
            doc["kind"] = MessageKind.SYSTEM.value
        elif doc.get("latitude") is not None:
            doc["kind"] = MessageKind.LOCATION.value
        else:
            doc["kind"] = MessageKind.TEXT.value
    return doc


_UPGRADES: dict[tuple[str, int], Callable[[dict[str, Any]], dict[str, Any]]] = {
    ("emergency", 0): _upgrade_emergency_v0,
    ("message", 0): _upgrade_message_v0,
}


def parse_record(doc: dict[str, Any]) -> AnyRecord:
    """Validate a raw document, upgrading older versions first.

    Raises RecordSchemaError for an unknown ``record_type``, a version newer
    than this build understands, or a document that fails validation.
    """
    record_type = doc.get("record_type")
    model = _RECORD_TYPES.get(record_type) if isinstance(record_type, str) else None
    if model is None:
        raise RecordSchemaError(f"Unknown record type: {record_type!r}")

    version = doc.get("schema_version", 0)
    if not isinstance(version, int) or version < 0 or version > SCHEMA_VERSION:
        raise RecordSchemaError(f"Unsupported {record_type} schema version: {version!r}")

    data = dict(doc)
    while version < SCHEMA_VERSION:
        upgrade = _UPGRADES.get((record_type, version))
        if upgrade is not None:
            data = upgrade(data)
        version += 1
    data["schema_version"] = SCHEMA_VERSION

    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise RecordSchemaError(f"Invalid {record_type} document: {e}") from e
