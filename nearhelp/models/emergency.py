"""Emergency model."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from nearhelp.db.base import Base


class Emergency(Base):
    """One SOS episode. Never deleted."""

    __tablename__ = "emergencies"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    victim_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    victim_name: Mapped[str] = mapped_column(String(255), nullable=False)
    victim_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    victim_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    location_accuracy_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    location_captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(20), index=True, nullable=False, default="waiting")  # waiting | active | closed
    trigger_reason: Mapped[str | None] = mapped_column(String(20), nullable=True)  # confirmed | auto | rapid_tap | manual
    language_preference: Mapped[str | None] = mapped_column(String(10), nullable=True)
    # Not a foreign key: the chat row is created after the emergency row
    chat_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_reason: Mapped[str | None] = mapped_column(String(20), nullable=True)  # resolved | expired | aborted
