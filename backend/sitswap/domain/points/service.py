from __future__ import annotations

import math

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.domain.points.db_models import PointsLedgerEntry
from sitswap.infra.schema import datastore_call

REASON_BOOKING_PAYMENT = "booking_payment_points"
REASON_BOOKING_PAYMENT_ROLLBACK = "booking_payment_points_rollback"
REASON_BOOKING_COMPLETED = "booking_completed_points"


def normalize_requested_points(requested: object) -> int:
    if isinstance(requested, int) and not isinstance(requested, bool):
        return max(0, requested)
    try:
        value = float(requested)  # type: ignore[arg-type]
    except (TypeError, ValueError, OverflowError):
        return 0
    if not math.isfinite(value):
        return 0
    return max(0, math.floor(value))


def clamp_points(requested: object, balance: int, nights: int) -> int:
    """Points a payer may redeem: at most one per night and never above the balance."""
    return max(0, min(normalize_requested_points(requested), balance, nights))


async def get_balance(session: AsyncSession, user_id: str) -> int:
    async with datastore_call("points_ledger"):
        total = await session.scalar(
            select(func.coalesce(func.sum(PointsLedgerEntry.points_delta), 0)).where(
                PointsLedgerEntry.user_id == user_id
            )
        )
    return max(int(total or 0), 0)


async def _append(
    session: AsyncSession,
    *,
    user_id: str,
    booking_id: str | None,
    points_delta: int,
    reason: str,
) -> PointsLedgerEntry:
    entry = PointsLedgerEntry(
        user_id=user_id,
        booking_id=booking_id,
        points_delta=points_delta,
        reason=reason,
    )
    session.add(entry)
    async with datastore_call("points_ledger"):
        await session.flush()
    return entry


async def debit(
    session: AsyncSession, user_id: str, booking_id: str | None, amount: int, reason: str
) -> PointsLedgerEntry:
    return await _append(
        session, user_id=user_id, booking_id=booking_id, points_delta=-abs(int(amount)), reason=reason
    )


async def credit(
    session: AsyncSession, user_id: str, booking_id: str | None, amount: int, reason: str
) -> PointsLedgerEntry:
    return await _append(
        session, user_id=user_id, booking_id=booking_id, points_delta=abs(int(amount)), reason=reason
    )
