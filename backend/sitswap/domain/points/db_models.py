from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from sitswap.infra.db import Base


class PointsLedgerEntry(Base):
    """Append-only point movement. Rows are never updated or deleted."""

    __tablename__ = "points_ledger"

    entry_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.user_id"), nullable=False)
    booking_id: Mapped[str | None] = mapped_column(ForeignKey("bookings.booking_id"), nullable=True)
    points_delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_points_ledger_user", "user_id"),
        Index("ix_points_ledger_booking_reason", "booking_id", "reason"),
    )
