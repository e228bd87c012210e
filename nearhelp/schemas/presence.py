"""Presence and location schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class LocationUpdate(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy_m: float | None = Field(default=None, ge=0)


class OnlineUpdate(BaseModel):
    is_online: bool


class PushTokenUpdate(BaseModel):
    push_token: str | None = Field(default=None, max_length=512)


class PresenceResponse(BaseModel):
    user_id: int
    latitude: float | None
    longitude: float | None
    location_updated_at: datetime | None
    is_online: bool
    last_active: datetime | None
