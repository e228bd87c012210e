"""Mapping from engine errors to HTTP errors."""

from fastapi import HTTPException, status

from nearhelp.core.exceptions import (
    ChatEndedError,
    DiscoveryError,
    EmergencyNotCreatedError,
    EngineError,
    LocationError,
    NotAuthenticatedError,
    NotFoundError,
    NotVictimError,
    RecordSchemaError,
    StoreUnavailableError,
)

_STATUS: list[tuple[type[EngineError], int]] = [
    (NotAuthenticatedError, status.HTTP_401_UNAUTHORIZED),
    (NotVictimError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ChatEndedError, status.HTTP_409_CONFLICT),
    (LocationError, status.HTTP_400_BAD_REQUEST),
    (RecordSchemaError, status.HTTP_400_BAD_REQUEST),
    (EmergencyNotCreatedError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (DiscoveryError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def http_error(exc: EngineError) -> HTTPException:
    for exc_type, code in _STATUS:
        if isinstance(exc, exc_type):
            return HTTPException(status_code=code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
