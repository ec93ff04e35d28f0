from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.domain.bookings.db_models import Booking, Listing, UserProfile
from sitswap.domain.jobs.service import enqueue_email_notification
from sitswap.domain.notifications import templates
from sitswap.domain.notifications.db_models import Notification

logger = logging.getLogger(__name__)

NOTIFICATION_BOOKING_PAID = "booking_paid"
NOTIFICATION_BOOKING_COMPLETED = "booking_completed"


@dataclass
class BookingParties:
    booking: Booking
    listing: Listing | None
    homeowner: UserProfile | None
    sitter: UserProfile | None

    @property
    def homeowner_id(self) -> str | None:
        return self.listing.owner_id if self.listing else None

    @property
    def listing_title(self) -> str | None:
        return self.listing.title if self.listing else None


async def load_parties(session: AsyncSession, booking: Booking) -> BookingParties:
    listing = await session.get(Listing, booking.listing_id)
    homeowner = await session.get(UserProfile, listing.owner_id) if listing else None
    sitter = await session.get(UserProfile, booking.sitter_id)
    return BookingParties(booking=booking, listing=listing, homeowner=homeowner, sitter=sitter)


def _add_notification(
    session: AsyncSession, *, user_id: str, type_: str, title: str, body: str, data: dict
) -> None:
    session.add(Notification(user_id=user_id, type=type_, title=title, body=body, data=data))


def _email_recipients(parties: BookingParties):
    recipients = (
        ("homeowner", parties.homeowner, parties.sitter),
        ("sitter", parties.sitter, parties.homeowner),
    )
    for role, recipient, counterpart in recipients:
        if recipient is None or not recipient.email:
            continue
        yield role, recipient, counterpart


def add_booking_paid_notifications(session: AsyncSession, parties: BookingParties) -> None:
    """Stage in-app paid notifications for both parties. The caller commits."""
    booking = parties.booking
    data = {"booking_id": booking.booking_id, "url": f"/sits/{booking.booking_id}"}
    if parties.homeowner_id:
        _add_notification(
            session,
            user_id=parties.homeowner_id,
            type_=NOTIFICATION_BOOKING_PAID,
            title="Payment received",
            body="The sitter has paid the service and cleaning fees.",
            data=data,
        )
    _add_notification(
        session,
        user_id=booking.sitter_id,
        type_=NOTIFICATION_BOOKING_PAID,
        title="Payment completed",
        body="Your payment is complete. The address is now available.",
        data=data,
    )


async def enqueue_booking_paid_emails(session: AsyncSession, parties: BookingParties) -> int:
    """Queue one paid email per party with an address. Returns the number queued."""
    booking = parties.booking
    paid_at = booking.paid_at or datetime.now(tz=timezone.utc)
    queued = 0
    for role, recipient, counterpart in _email_recipients(parties):
        rendered = templates.render_booking_paid(
            role=role,
            booking_id=booking.booking_id,
            listing_title=parties.listing_title,
            counterpart_name=counterpart.full_name if counterpart else None,
            start_date=booking.start_date,
            end_date=booking.end_date,
            paid_at=paid_at,
        )
        await enqueue_email_notification(
            session,
            to=recipient.email,
            email_type=templates.TEMPLATE_BOOKING_PAID,
            subject=rendered.subject,
            html=rendered.html,
            preview_text=rendered.preview_text,
        )
        queued += 1
    return queued


def add_booking_completed_notifications(session: AsyncSession, parties: BookingParties) -> None:
    booking = parties.booking
    listing_title = parties.listing_title or "your sit"
    data = {
        "booking_id": booking.booking_id,
        "listing_id": booking.listing_id,
        "url": f"/sits/{booking.booking_id}",
    }
    body = f"Your sit for {listing_title} is complete."
    for user_id in (parties.homeowner_id, booking.sitter_id):
        if not user_id:
            continue
        _add_notification(
            session,
            user_id=user_id,
            type_=NOTIFICATION_BOOKING_COMPLETED,
            title="Sit completed",
            body=body,
            data=data,
        )


async def enqueue_booking_completed_emails(
    session: AsyncSession, parties: BookingParties, *, completed_at: datetime
) -> int:
    booking = parties.booking
    queued = 0
    for role, recipient, counterpart in _email_recipients(parties):
        rendered = templates.render_booking_completed(
            role=role,
            booking_id=booking.booking_id,
            listing_title=parties.listing_title,
            counterpart_name=counterpart.full_name if counterpart else None,
            start_date=booking.start_date,
            end_date=booking.end_date,
            completed_at=completed_at,
        )
        await enqueue_email_notification(
            session,
            to=recipient.email,
            email_type=templates.TEMPLATE_BOOKING_COMPLETED,
            subject=rendered.subject,
            html=rendered.html,
            preview_text=rendered.preview_text,
        )
        queued += 1
    return queued
