"""Seed helpers shared by the test modules."""

from dataclasses import dataclass
from datetime import date, timedelta

from sitswap.domain.bookings.db_models import Booking, Listing, UserProfile
from sitswap.domain.bookings.statuses import PAYMENT_UNPAID, STATUS_CONFIRMED
from sitswap.domain.points.db_models import PointsLedgerEntry
from sitswap.infra.auth import create_access_token
from sitswap.settings import settings


@dataclass
class SeededBooking:
    booking_id: str
    listing_id: str
    owner_id: str
    sitter_id: str


async def seed_booking(
    async_session_maker,
    *,
    nights: int = 3,
    status: str = STATUS_CONFIRMED,
    payment_status: str = PAYMENT_UNPAID,
    sitter_points: int = 0,
    service_fee_per_night: float | None = 50.0,
    cleaning_fee: float | None = 200.0,
    start_date: date | None = None,
    owner_email: str | None = "owner@example.com",
    sitter_email: str | None = "sitter@example.com",
    stripe_customer_id: str | None = None,
    stripe_payment_intent_id: str | None = None,
) -> SeededBooking:
    start = start_date or date.today() + timedelta(days=7)
    async with async_session_maker() as session:
        owner = UserProfile(email=owner_email, full_name="Olive Owner")
        sitter = UserProfile(email=sitter_email, full_name="Sam Sitter", stripe_customer_id=stripe_customer_id)
        session.add_all([owner, sitter])
        await session.flush()
        listing = Listing(owner_id=owner.user_id, title="Lakeside cabin")
        session.add(listing)
        await session.flush()
        booking = Booking(
            listing_id=listing.listing_id,
            sitter_id=sitter.user_id,
            status=status,
            payment_status=payment_status,
            start_date=start,
            end_date=start + timedelta(days=nights),
            service_fee_per_night=service_fee_per_night,
            cleaning_fee=cleaning_fee,
            stripe_payment_intent_id=stripe_payment_intent_id,
        )
        session.add(booking)
        if sitter_points:
            session.add(
                PointsLedgerEntry(
                    user_id=sitter.user_id,
                    booking_id=None,
                    points_delta=sitter_points,
                    reason="signup_bonus",
                )
            )
        await session.commit()
        return SeededBooking(
            booking_id=booking.booking_id,
            listing_id=listing.listing_id,
            owner_id=owner.user_id,
            sitter_id=sitter.user_id,
        )


def auth_headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id, settings.auth_secret_key)}"}
