"""Sweep paid bookings whose stay has ended into ``completed``.

Both writes are guarded: the status change only matches a still-payable paid
booking, and the owner's points are credited in the same transaction that
flips ``points_awarded`` away from zero. Running two sweeps at once therefore
completes and awards each booking once.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.domain.bookings.db_models import Booking, Listing
from sitswap.domain.bookings.statuses import PAYABLE_STATUSES, PAYMENT_PAID, STATUS_COMPLETED
from sitswap.domain.notifications import service as notifications_service
from sitswap.domain.points import service as points_service
from sitswap.domain.settlement.service import fee_summary_for
from sitswap.infra.metrics import metrics
from sitswap.infra.schema import datastore_call
from sitswap.settings import Settings, settings

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


async def _award_owner_points(
    session: AsyncSession, booking: Booking, owner_id: str, nights: int
) -> int:
    claim = await session.execute(
        update(Booking)
        .where(Booking.booking_id == booking.booking_id, Booking.points_awarded == 0)
        .values(points_awarded=nights)
        .execution_options(synchronize_session=False)
    )
    if claim.rowcount != 1:
        await session.rollback()
        return 0
    await points_service.credit(
        session, owner_id, booking.booking_id, nights, points_service.REASON_BOOKING_COMPLETED
    )
    await session.commit()
    return nights


async def complete_booking(session: AsyncSession, booking_id: str, app_settings: Settings = settings) -> bool:
    """Complete one booking. Returns False when another sweep already did."""
    completed_at = _now()
    async with datastore_call("bookings"):
        result = await session.execute(
            update(Booking)
            .where(
                Booking.booking_id == booking_id,
                Booking.status.in_(PAYABLE_STATUSES),
                Booking.payment_status == PAYMENT_PAID,
            )
            .values(status=STATUS_COMPLETED, updated_at=completed_at)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    if result.rowcount != 1:
        return False

    booking = await session.get(Booking, booking_id, populate_existing=True)
    listing = await session.get(Listing, booking.listing_id)
    nights = fee_summary_for(booking, app_settings).nights
    awarded = 0
    if not booking.points_awarded and listing is not None and nights > 0:
        async with datastore_call("points_ledger"):
            awarded = await _award_owner_points(session, booking, listing.owner_id, nights)

    await session.refresh(booking)
    parties = None
    try:
        parties = await notifications_service.load_parties(session, booking)
        notifications_service.add_booking_completed_notifications(session, parties)
        await session.commit()
    except Exception as exc:  # noqa: BLE001
        await session.rollback()
        parties = None
        logger.warning(
            "booking_auto_complete_notify_failed",
            extra={"extra": {"booking_id": booking_id, "reason": type(exc).__name__}},
        )
    if parties is not None:
        try:
            await notifications_service.enqueue_booking_completed_emails(
                session, parties, completed_at=completed_at
            )
            await session.commit()
        except Exception as exc:  # noqa: BLE001
            await session.rollback()
            logger.warning(
                "booking_auto_complete_email_enqueue_failed",
                extra={"extra": {"booking_id": booking_id, "reason": type(exc).__name__}},
            )

    logger.info(
        "booking_auto_completed",
        extra={"extra": {"booking_id": booking_id, "points_awarded": awarded}},
    )
    return True


async def autocomplete_bookings(
    session: AsyncSession, *, today: date | None = None, app_settings: Settings = settings
) -> dict[str, int]:
    today = today or _now().date()
    async with datastore_call("bookings"):
        booking_ids = (
            await session.scalars(
                select(Booking.booking_id)
                .where(
                    Booking.status.in_(PAYABLE_STATUSES),
                    Booking.payment_status == PAYMENT_PAID,
                    Booking.end_date < today,
                )
                .order_by(Booking.end_date.asc())
            )
        ).all()
    await session.rollback()

    completed = 0
    failed = 0
    for booking_id in booking_ids:
        try:
            if await complete_booking(session, booking_id, app_settings):
                completed += 1
        except Exception as exc:  # noqa: BLE001
            await session.rollback()
            failed += 1
            logger.warning(
                "booking_auto_complete_failed",
                extra={"extra": {"booking_id": booking_id, "reason": type(exc).__name__}},
            )

    metrics.record_booking_sweep("completed", completed)
    metrics.record_booking_sweep("failed", failed)
    summary = {"candidates": len(booking_ids), "completed": completed, "failed": failed}
    logger.info("booking_autocomplete_sweep", extra={"extra": summary})
    return summary
