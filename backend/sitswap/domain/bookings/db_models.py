from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sitswap.domain.bookings.statuses import PAYMENT_UNPAID, STATUS_PENDING
from sitswap.infra.db import Base


def _money() -> Numeric:
    return Numeric(10, 2, asdecimal=False)


class UserProfile(Base):
    __tablename__ = "profiles"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email: Mapped[str | None] = mapped_column(String(255))
    full_name: Mapped[str | None] = mapped_column(String(255))
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class Listing(Base):
    __tablename__ = "listings"

    listing_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id: Mapped[str] = mapped_column(ForeignKey("profiles.user_id"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    owner: Mapped[UserProfile] = relationship("UserProfile", lazy="raise")


class Booking(Base):
    """A sit: the sitter pays the service fees for staying at the listing."""

    __tablename__ = "bookings"

    booking_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    listing_id: Mapped[str] = mapped_column(ForeignKey("listings.listing_id"), nullable=False, index=True)
    sitter_id: Mapped[str] = mapped_column(ForeignKey("profiles.user_id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=STATUS_PENDING)
    payment_status: Mapped[str] = mapped_column(String(16), nullable=False, default=PAYMENT_UNPAID)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    service_fee_per_night: Mapped[float | None] = mapped_column(_money())
    cleaning_fee: Mapped[float | None] = mapped_column(_money())
    insurance_cost: Mapped[float | None] = mapped_column(_money())
    service_fee_total: Mapped[float | None] = mapped_column(_money())
    total_fee: Mapped[float | None] = mapped_column(_money())
    points_applied: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cash_due: Mapped[float | None] = mapped_column(_money())
    payment_method: Mapped[str | None] = mapped_column(String(16))
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    points_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    listing: Mapped[Listing] = relationship("Listing", lazy="raise")

    __table_args__ = (
        Index("ix_bookings_intent", "stripe_payment_intent_id"),
        Index("ix_bookings_completion_sweep", "status", "payment_status", "end_date"),
    )
