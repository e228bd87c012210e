"""Helper alert schemas."""

from datetime import datetime

from pydantic import BaseModel


class HelperAlertResponse(BaseModel):
    id: int
    emergency_id: int
    chat_id: int | None
    victim_id: int
    victim_name: str
    distance_km: float | None
    alert_type: str
    delivery_status: str
    created_at: datetime
    delivered_at: datetime | None
