"""Helper alert model."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from nearhelp.db.base import Base


class HelperAlert(Base):
    """Alert written for one helper about one emergency."""

    __tablename__ = "helper_alerts"
    __table_args__ = (
        UniqueConstraint("helper_id", "emergency_id", "alert_type", name="uq_helper_alert"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    helper_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    emergency_id: Mapped[int] = mapped_column(ForeignKey("emergencies.id", ondelete="CASCADE"), nullable=False)
    chat_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    victim_id: Mapped[int] = mapped_column(Integer, nullable=False)
    victim_name: Mapped[str] = mapped_column(String(255), nullable=False)
    distance_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    alert_type: Mapped[str] = mapped_column(String(20), nullable=False, default="emergency")  # emergency | resolution
    delivery_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")  # pending | delivered
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
