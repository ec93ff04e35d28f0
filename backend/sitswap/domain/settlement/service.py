"""Booking settlement: the only code that moves a booking from unpaid to paid.

Every path (manual completion, the Stripe webhook and the legacy bridge) ends
in a conditional write that only matches while ``payment_status`` is not
``paid``, so exactly one caller wins and the others observe ``updated=False``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import text, update
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.domain.bookings.db_models import Booking
from sitswap.domain.bookings.statuses import (
    PAYABLE_STATUSES,
    PAYMENT_METHOD_MANUAL,
    PAYMENT_METHOD_STRIPE,
    PAYMENT_PAID,
    is_payable,
)
from sitswap.domain.errors import (
    BookingValidationError,
    ConfigurationError,
    DomainError,
    SchemaGapError,
    TransientInfraError,
)
from sitswap.domain.notifications import service as notifications_service
from sitswap.domain.points import service as points_service
from sitswap.domain.pricing.fees import FeeSummary, calculate_booking_fees, cash_due_for, to_cents
from sitswap.infra.db import dialect_name
from sitswap.infra.metrics import metrics
from sitswap.infra.schema import datastore_call
from sitswap.settings import Settings, settings

logger = logging.getLogger(__name__)

ERROR_NOT_FOUND = "Sit not found"
ERROR_NOT_SITTER = "Only the sitter can complete payment"
ERROR_NOT_PAYABLE = "This sit isn't ready for payment yet"
ERROR_MANUAL_DISABLED = (
    "Manual booking payments are disabled in production. "
    "Configure Stripe checkout for this booking payment flow."
)
ERROR_NOT_COMPLETED = "Payment could not be completed."
ERROR_POINTS_UNAVAILABLE = "Unable to apply points right now."

_PRIMITIVE_ARGS = (
    "p_booking_id => :p_booking_id, "
    "p_sitter_id => :p_sitter_id, "
    "p_requested_points => :p_requested_points, "
    "p_service_fee_per_night => :p_service_fee_per_night, "
    "p_cleaning_fee => :p_cleaning_fee, "
    "p_service_fee_total => :p_service_fee_total, "
    "p_total_fee => :p_total_fee, "
    "p_paid_at => :p_paid_at"
)
_PRIMITIVE_SQL = text(
    f"SELECT updated, already_paid, points_applied, cash_due FROM pay_booking_with_points({_PRIMITIVE_ARGS})"
)
_PRIMITIVE_SQL_WITH_CASH = text(
    "SELECT updated, already_paid, points_applied, cash_due "
    f"FROM pay_booking_with_points({_PRIMITIVE_ARGS}, p_cash_paid => :p_cash_paid)"
)


@dataclass(frozen=True)
class AtomicPaymentResult:
    updated: bool
    already_paid: bool
    points_applied: int = 0
    cash_due: float = 0.0


@dataclass
class SettlementResult:
    failure: DomainError | None = None
    updated: bool = False
    already_paid: bool = False
    points_applied: int = 0
    cash_due: float = 0.0

    @property
    def error(self) -> str | None:
        return self.failure.detail if self.failure else None

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass(frozen=True)
class FinalizeResult:
    updated: bool = False
    already_paid: bool = False

    @property
    def finalized(self) -> bool:
        return self.updated or self.already_paid


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def fee_summary_for(booking: Booking, app_settings: Settings = settings) -> FeeSummary:
    return calculate_booking_fees(
        booking.start_date,
        booking.end_date,
        service_fee_per_night=(
            booking.service_fee_per_night
            if booking.service_fee_per_night is not None
            else app_settings.service_fee_per_night
        ),
        cleaning_fee=booking.cleaning_fee if booking.cleaning_fee is not None else app_settings.cleaning_fee,
        insurance_cost=booking.insurance_cost,
    )


async def quote_cash_due(
    session: AsyncSession, booking: Booking, requested_points: object, app_settings: Settings = settings
) -> tuple[FeeSummary, int, float]:
    """Fee snapshot, points that would be applied, and the cash still owed."""
    summary = fee_summary_for(booking, app_settings)
    balance = await points_service.get_balance(session, booking.sitter_id)
    points_applied = points_service.clamp_points(requested_points, balance, summary.nights)
    return summary, points_applied, cash_due_for(summary, points_applied)


def _fail(failure: DomainError, outcome: str) -> SettlementResult:
    metrics.record_settlement(outcome)
    return SettlementResult(failure=failure)


async def _call_stored_primitive(session: AsyncSession, params: dict, cash_paid: float | None) -> AtomicPaymentResult:
    row = None
    if cash_paid is not None:
        try:
            async with datastore_call("pay_booking_with_points"):
                async with session.begin_nested():
                    row = (await session.execute(_PRIMITIVE_SQL_WITH_CASH, {**params, "p_cash_paid": cash_paid})).first()
        except SchemaGapError:
            logger.warning(
                "settlement_cash_signature_unavailable",
                extra={"extra": {"booking_id": params["p_booking_id"]}},
            )
            row = None
        else:
            await session.commit()
            return _row_to_result(row)
    async with datastore_call("pay_booking_with_points"):
        async with session.begin_nested():
            row = (await session.execute(_PRIMITIVE_SQL, params)).first()
    await session.commit()
    return _row_to_result(row)


def _row_to_result(row) -> AtomicPaymentResult:  # noqa: ANN001
    if row is None:
        return AtomicPaymentResult(updated=False, already_paid=False)
    return AtomicPaymentResult(
        updated=bool(row.updated),
        already_paid=bool(row.already_paid),
        points_applied=int(row.points_applied or 0),
        cash_due=float(row.cash_due or 0),
    )


async def _orm_primitive(
    session: AsyncSession,
    *,
    booking_id: str,
    payer_id: str,
    requested_points: int,
    summary: FeeSummary,
    paid_at: datetime,
    cash_paid: float | None,
) -> AtomicPaymentResult:
    async with datastore_call("bookings"):
        booking = await session.get(Booking, booking_id, populate_existing=True)
    if booking is None:
        await session.rollback()
        return AtomicPaymentResult(updated=False, already_paid=False)
    if booking.payment_status == PAYMENT_PAID:
        points_applied = booking.points_applied
        await session.rollback()
        return AtomicPaymentResult(updated=False, already_paid=True, points_applied=points_applied)
    if booking.sitter_id != payer_id or not is_payable(booking.status):
        await session.rollback()
        return AtomicPaymentResult(updated=False, already_paid=False)

    balance = await points_service.get_balance(session, payer_id)
    points_applied = points_service.clamp_points(requested_points, balance, summary.nights)
    cash_due = cash_due_for(summary, points_applied)
    if cash_paid is not None and to_cents(cash_paid) < to_cents(cash_due):
        await session.rollback()
        return AtomicPaymentResult(updated=False, already_paid=False, points_applied=points_applied, cash_due=cash_due)

    try:
        async with datastore_call("bookings"):
            result = await session.execute(
                _conditional_paid_update(
                    booking_id=booking_id,
                    payer_id=payer_id,
                    summary=summary,
                    points_applied=points_applied,
                    cash_due=cash_due,
                    paid_at=paid_at,
                )
            )
        if result.rowcount != 1:
            await session.rollback()
            latest = await session.get(Booking, booking_id, populate_existing=True)
            return AtomicPaymentResult(
                updated=False,
                already_paid=latest is not None and latest.payment_status == PAYMENT_PAID,
            )
        if points_applied > 0:
            await points_service.debit(
                session, payer_id, booking_id, points_applied, points_service.REASON_BOOKING_PAYMENT
            )
        await session.commit()
    except BaseException:
        await session.rollback()
        raise
    return AtomicPaymentResult(updated=True, already_paid=False, points_applied=points_applied, cash_due=cash_due)


def _conditional_paid_update(
    *,
    booking_id: str,
    payer_id: str,
    summary: FeeSummary,
    points_applied: int,
    cash_due: float,
    paid_at: datetime,
):
    return (
        update(Booking)
        .where(
            Booking.booking_id == booking_id,
            Booking.sitter_id == payer_id,
            Booking.status.in_(PAYABLE_STATUSES),
            Booking.payment_status != PAYMENT_PAID,
        )
        .values(
            service_fee_per_night=summary.service_fee_per_night,
            cleaning_fee=summary.cleaning_fee,
            service_fee_total=summary.service_fee_total,
            total_fee=summary.total_fee,
            points_applied=points_applied,
            cash_due=cash_due,
            payment_status=PAYMENT_PAID,
            paid_at=paid_at,
            payment_method=PAYMENT_METHOD_MANUAL,
            updated_at=paid_at,
        )
        .execution_options(synchronize_session=False)
    )


async def pay_booking_with_points(
    session: AsyncSession,
    *,
    booking_id: str,
    payer_id: str,
    requested_points: int,
    summary: FeeSummary,
    paid_at: datetime,
    cash_paid: float | None = None,
) -> AtomicPaymentResult:
    """Atomic settlement primitive.

    Verifies the booking is still unpaid, writes the fee snapshot, applied
    points, cash due and ``paid_at``, and debits the points, all in one unit
    of work. When ``cash_paid`` is below the computed cash due nothing is
    written and ``updated`` is False.

    Raises :class:`SchemaGapError` when the primitive is not migrated and
    :class:`TransientInfraError` on other datastore failures. Commits on return.
    """
    requested_points = min(points_service.normalize_requested_points(requested_points), summary.nights)
    if dialect_name(session) == "postgresql":
        params = {
            "p_booking_id": booking_id,
            "p_sitter_id": payer_id,
            "p_requested_points": requested_points,
            "p_service_fee_per_night": summary.service_fee_per_night,
            "p_cleaning_fee": summary.cleaning_fee,
            "p_service_fee_total": summary.service_fee_total,
            "p_total_fee": summary.total_fee,
            "p_paid_at": paid_at,
        }
        return await _call_stored_primitive(session, params, cash_paid)
    return await _orm_primitive(
        session,
        booking_id=booking_id,
        payer_id=payer_id,
        requested_points=requested_points,
        summary=summary,
        paid_at=paid_at,
        cash_paid=cash_paid,
    )


async def _notify_paid(session: AsyncSession, booking: Booking) -> None:
    booking_id = booking.booking_id
    try:
        parties = await notifications_service.load_parties(session, booking)
        notifications_service.add_booking_paid_notifications(session, parties)
        await session.commit()
    except Exception as exc:  # noqa: BLE001
        await session.rollback()
        logger.warning(
            "settlement_notify_failed",
            extra={"extra": {"booking_id": booking_id, "reason": type(exc).__name__}},
        )
        return
    try:
        queued = await notifications_service.enqueue_booking_paid_emails(session, parties)
        await session.commit()
    except Exception as exc:  # noqa: BLE001
        await session.rollback()
        logger.warning(
            "settlement_email_enqueue_failed",
            extra={"extra": {"booking_id": booking_id, "reason": type(exc).__name__}},
        )
        return
    logger.info(
        "settlement_notifications_queued",
        extra={"extra": {"booking_id": booking_id, "email_jobs": queued}},
    )


async def _is_paid_now(session: AsyncSession, booking_id: str) -> bool:
    try:
        async with datastore_call("bookings"):
            latest = await session.get(Booking, booking_id, populate_existing=True)
    except TransientInfraError:
        return False
    return latest is not None and latest.payment_status == PAYMENT_PAID


def _log_finalized(booking_id: str, path: str, points_applied: int, cash_due: float) -> None:
    logger.info(
        "settlement_finalized",
        extra={
            "extra": {
                "booking_id": booking_id,
                "path": path,
                "points_applied": points_applied,
                "cash_due": cash_due,
            }
        },
    )


async def _legacy_settle(
    session: AsyncSession,
    booking: Booking,
    *,
    booking_id: str,
    payer_id: str,
    requested_points: int,
    summary: FeeSummary,
    paid_at: datetime,
) -> SettlementResult:
    """Non-atomic bridge used while the primitive is not migrated.

    Debits points first, then marks the booking paid behind the same
    ``payment_status <> 'paid'`` guard. A lost race is compensated with a
    rollback ledger entry. ``booking`` may be expired, so only ``booking_id``
    is read until the final refresh.
    """
    try:
        balance = await points_service.get_balance(session, payer_id)
    except TransientInfraError as exc:
        await session.rollback()
        logger.warning(
            "settlement_balance_read_failed",
            extra={"extra": {"booking_id": booking_id, "reason": str(exc)}},
        )
        balance = 0
    points_applied = points_service.clamp_points(requested_points, balance, summary.nights)
    cash_due = cash_due_for(summary, points_applied)

    points_debited = False
    if points_applied > 0:
        try:
            await points_service.debit(
                session, payer_id, booking_id, points_applied, points_service.REASON_BOOKING_PAYMENT
            )
            await session.commit()
        except TransientInfraError as exc:
            await session.rollback()
            logger.warning(
                "settlement_points_debit_failed",
                extra={"extra": {"booking_id": booking_id, "reason": str(exc)}},
            )
            return _fail(DomainError(detail=ERROR_POINTS_UNAVAILABLE, status_code=503), "points_unavailable")
        points_debited = True

    updated = False
    try:
        async with datastore_call("bookings"):
            result = await session.execute(
                _conditional_paid_update(
                    booking_id=booking_id,
                    payer_id=payer_id,
                    summary=summary,
                    points_applied=points_applied,
                    cash_due=cash_due,
                    paid_at=paid_at,
                )
            )
        updated = result.rowcount == 1
        await session.commit()
    except TransientInfraError as exc:
        await session.rollback()
        logger.warning(
            "settlement_legacy_update_failed",
            extra={"extra": {"booking_id": booking_id, "reason": str(exc)}},
        )

    if not updated:
        if points_debited:
            try:
                await points_service.credit(
                    session,
                    payer_id,
                    booking_id,
                    points_applied,
                    points_service.REASON_BOOKING_PAYMENT_ROLLBACK,
                )
                await session.commit()
                logger.warning(
                    "settlement_points_rollback",
                    extra={"extra": {"booking_id": booking_id, "points": points_applied}},
                )
            except TransientInfraError as exc:
                await session.rollback()
                logger.error(
                    "settlement_points_rollback_failed",
                    extra={"extra": {"booking_id": booking_id, "points": points_applied, "reason": str(exc)}},
                )
        if await _is_paid_now(session, booking_id):
            logger.info("settlement_lost_race", extra={"extra": {"booking_id": booking_id, "path": "legacy"}})
            metrics.record_settlement("already_paid")
            return SettlementResult(already_paid=True)
        return _fail(BookingValidationError(detail=ERROR_NOT_COMPLETED), "failed")

    _log_finalized(booking_id, "legacy", points_applied, cash_due)
    metrics.record_settlement("finalized")
    await session.refresh(booking)
    await _notify_paid(session, booking)
    return SettlementResult(updated=True, points_applied=points_applied, cash_due=cash_due)


async def complete_booking_payment(
    session: AsyncSession,
    *,
    booking_id: str,
    user_id: str,
    requested_points: object,
    app_settings: Settings = settings,
) -> SettlementResult:
    """Settle a booking from a direct user action (manual / points-only path)."""
    async with datastore_call("bookings"):
        booking = await session.get(Booking, booking_id)
    if booking is None:
        return _fail(BookingValidationError(detail=ERROR_NOT_FOUND, status_code=404), "not_found")
    if booking.sitter_id != user_id:
        return _fail(BookingValidationError(detail=ERROR_NOT_SITTER, status_code=403), "forbidden")
    if not is_payable(booking.status):
        return _fail(BookingValidationError(detail=ERROR_NOT_PAYABLE), "not_payable")
    if booking.payment_status == PAYMENT_PAID:
        metrics.record_settlement("already_paid")
        return SettlementResult(already_paid=True, points_applied=booking.points_applied)

    summary = fee_summary_for(booking, app_settings)
    normalized_points = min(points_service.normalize_requested_points(requested_points), summary.nights)
    paid_at = _now()

    if not app_settings.manual_payments_enabled:
        try:
            balance = await points_service.get_balance(session, user_id)
        except (TransientInfraError, SchemaGapError) as exc:
            logger.warning(
                "settlement_manual_guard_balance_failed",
                extra={"extra": {"booking_id": booking_id, "reason": str(exc)}},
            )
            return _fail(ConfigurationError(detail=ERROR_MANUAL_DISABLED), "manual_disabled")
        estimate = points_service.clamp_points(normalized_points, balance, summary.nights)
        if cash_due_for(summary, estimate) > 0:
            return _fail(ConfigurationError(detail=ERROR_MANUAL_DISABLED), "manual_disabled")

    try:
        result = await pay_booking_with_points(
            session,
            booking_id=booking_id,
            payer_id=user_id,
            requested_points=normalized_points,
            summary=summary,
            paid_at=paid_at,
            cash_paid=summary.total_fee,
        )
    except SchemaGapError as exc:
        await session.rollback()
        logger.warning(
            "settlement_primitive_unavailable",
            extra={"extra": {"booking_id": booking_id, "code": exc.code, "object": exc.object_name}},
        )
        if not app_settings.legacy_settlement_allowed:
            return _fail(ConfigurationError(detail=ERROR_NOT_COMPLETED), "primitive_unavailable")
        return await _legacy_settle(
            session,
            booking,
            booking_id=booking_id,
            payer_id=user_id,
            requested_points=normalized_points,
            summary=summary,
            paid_at=paid_at,
        )
    except TransientInfraError as exc:
        await session.rollback()
        logger.warning(
            "settlement_primitive_failed",
            extra={"extra": {"booking_id": booking_id, "reason": str(exc)}},
        )
        return _fail(DomainError(detail=ERROR_NOT_COMPLETED, status_code=503), "failed")

    if result.already_paid:
        logger.info("settlement_already_paid", extra={"extra": {"booking_id": booking_id}})
        metrics.record_settlement("already_paid")
        return SettlementResult(already_paid=True, points_applied=result.points_applied)

    if not result.updated:
        if await _is_paid_now(session, booking_id):
            logger.info("settlement_lost_race", extra={"extra": {"booking_id": booking_id, "path": "atomic"}})
            metrics.record_settlement("already_paid")
            return SettlementResult(already_paid=True)
        return _fail(BookingValidationError(detail=ERROR_NOT_COMPLETED), "failed")

    _log_finalized(booking_id, "atomic", result.points_applied, result.cash_due)
    metrics.record_settlement("finalized")
    await session.refresh(booking)
    await _notify_paid(session, booking)
    return SettlementResult(updated=True, points_applied=result.points_applied, cash_due=result.cash_due)


async def finalize_booking_fee_payment(
    session: AsyncSession,
    *,
    booking_id: str,
    payment_intent_id: str,
    amount_received_cents: int | None,
    currency: str | None,
    requested_points: object,
    paid_at: datetime | None = None,
    app_settings: Settings = settings,
) -> FinalizeResult:
    """Settle a booking after the gateway reports a captured charge.

    Skips the manual-payment guard since the cash has already been collected.
    Returns a zero result for bookings that are missing, not payable, or
    under-paid. Datastore failures propagate so the caller can release its
    dedupe record.
    """
    booking = await session.get(Booking, booking_id)
    if booking is None or not is_payable(booking.status):
        logger.info(
            "stripe_webhook_booking_not_payable",
            extra={"extra": {"booking_id": booking_id, "status": getattr(booking, "status", None)}},
        )
        return FinalizeResult()
    if amount_received_cents is None:
        return FinalizeResult()
    if (currency or "").lower() != app_settings.payment_currency:
        logger.warning(
            "stripe_webhook_currency_mismatch",
            extra={"extra": {"booking_id": booking_id, "currency": currency}},
        )
        return FinalizeResult()

    summary, points_applied, cash_due = await quote_cash_due(session, booking, requested_points, app_settings)
    expected_cents = to_cents(cash_due)
    if amount_received_cents < expected_cents:
        logger.warning(
            "stripe_webhook_underpaid",
            extra={
                "extra": {
                    "booking_id": booking_id,
                    "paid_cents": amount_received_cents,
                    "expected_cents": expected_cents,
                }
            },
        )
        return FinalizeResult()

    result = await pay_booking_with_points(
        session,
        booking_id=booking_id,
        payer_id=booking.sitter_id,
        requested_points=points_applied,
        summary=summary,
        paid_at=paid_at or _now(),
        cash_paid=amount_received_cents / 100,
    )
    if result.updated or result.already_paid:
        async with datastore_call("bookings"):
            await session.execute(
                update(Booking)
                .where(Booking.booking_id == booking_id)
                .values(stripe_payment_intent_id=payment_intent_id, payment_method=PAYMENT_METHOD_STRIPE)
                .execution_options(synchronize_session=False)
            )
        await session.commit()
    if result.updated:
        _log_finalized(booking_id, "webhook", result.points_applied, result.cash_due)
        metrics.record_settlement("finalized")
        await session.refresh(booking)
        await _notify_paid(session, booking)
    elif result.already_paid:
        logger.info("settlement_already_paid", extra={"extra": {"booking_id": booking_id, "path": "webhook"}})
    return FinalizeResult(updated=result.updated, already_paid=result.already_paid)
