"""Engine error taxonomy.

Routers translate these into HTTP responses; services raise them and never
return error sentinels.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for emergency coordination errors."""


class NotAuthenticatedError(EngineError):
    """Raised when an operation needs a caller identity and none is present."""


class NotFoundError(EngineError):
    """Raised when a referenced emergency, chat or alert does not exist."""


class NotVictimError(EngineError):
    """Raised when someone other than the victim tries to resolve an emergency."""


class ChatEndedError(EngineError):
    """Raised when posting into a session that is no longer active."""


class LocationError(EngineError):
    """Typed location failure: permission_denied, unavailable or timeout."""

    PERMISSION_DENIED = "permission_denied"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"

    def __init__(self, kind: str, message: str | None = None) -> None:
        self.kind = kind
        super().__init__(message or f"Location error: {kind}")

    @property
    def retryable(self) -> bool:
        return self.kind == self.TIMEOUT


class StoreUnavailableError(EngineError):
    """Raised when the persistent store cannot be reached."""


class DiscoveryError(EngineError):
    """Raised when the helper scan itself fails."""


class EmergencyNotCreatedError(EngineError):
    """The emergency record could not be written; the alert did NOT go out."""


class RecordSchemaError(EngineError):
    """Raised when a document has an unknown kind or schema version."""
