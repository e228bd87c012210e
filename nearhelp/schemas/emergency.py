"""Emergency API schemas."""

from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from nearhelp.core.exceptions import LocationError


class DeviceLocation(BaseModel):
    """What the device reported: a fix, or the error it got instead."""

    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    accuracy_m: float | None = Field(default=None, ge=0)
    error: str | None = Field(
        default=None,
        pattern=f"^({LocationError.PERMISSION_DENIED}|{LocationError.UNAVAILABLE}|{LocationError.TIMEOUT})$",
    )

    @model_validator(mode="after")
    def _fix_or_error(self):
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude go together")
        return self


class TriggerRequest(BaseModel):
    reason: str = Field(default="manual", pattern="^(confirmed|auto|rapid_tap|manual)$")
    location: DeviceLocation | None = None


class LocationOut(BaseModel):
    latitude: float
    longitude: float
    accuracy_m: float | None = None
    captured_at: datetime


class EmergencyResponse(BaseModel):
    id: int
    victim_id: int
    victim_name: str
    status: str
    trigger_reason: str | None
    location: LocationOut | None
    chat_id: int | None
    created_at: datetime
    closed_at: datetime | None
    closed_reason: str | None


class HelperResponse(BaseModel):
    user_id: int
    display_name: str
    distance_km: float
    is_online: bool


class TriggerResponse(BaseModel):
    emergency: EmergencyResponse
    chat_id: int
    expires_at: datetime | None
    helpers: list[HelperResponse]
    search_radius_km: float | None
    notified_count: int
    warnings: list[str]
    location_warning: str | None


class NearbyEmergencyResponse(BaseModel):
    emergency: EmergencyResponse
    distance_km: float
