"""WebSocket client event schema."""

from typing import Literal

from pydantic import BaseModel, Field

ClientAction = Literal[
    "sos.press",
    "sos.release",
    "sos.confirm",
    "sos.cancel",
    "watch.active",
    "watch.chat",
    "watch.contacts",
    "watch.alerts",
    "unwatch",
]


class ClientEvent(BaseModel):
    action: ClientAction
    chat_id: int | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    accuracy_m: float | None = Field(default=None, ge=0)

    model_config = {"extra": "forbid"}
