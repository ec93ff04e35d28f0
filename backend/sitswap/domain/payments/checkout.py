"""Gateway side of booking-fee payments: customers, checkout sessions, intents."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.domain.bookings.db_models import Booking, Listing, UserProfile
from sitswap.domain.bookings.statuses import PAYMENT_PAID, is_payable
from sitswap.domain.errors import BookingValidationError, ConfigurationError, TransientInfraError
from sitswap.domain.pricing.fees import to_cents
from sitswap.domain.settlement import service as settlement_service
from sitswap.infra import stripe_client as stripe_infra
from sitswap.infra.schema import datastore_call
from sitswap.infra.stripe_idempotency import make_booking_idempotency_key, make_customer_idempotency_key
from sitswap.settings import Settings, settings

logger = logging.getLogger(__name__)

BOOKING_FEE_FLOW = "booking_fee_payment"

ERROR_NOT_FOUND = "Sit not found"
ERROR_SESSION_NOT_SITTER = "Only the sitter can create a payment session"
ERROR_INTENT_NOT_SITTER = "Only the sitter can create payment intents"
ERROR_NOT_PAYABLE = "This sit isn't ready for payment yet"
ERROR_ALREADY_PAID = "This sit has already been paid"
ERROR_NO_CASH_DUE = "No cash checkout is required for this sit. Use direct completion for points-only payment."
ERROR_STRIPE_UNAVAILABLE = "Stripe is unavailable. You can use manual checkout in this environment."
ERROR_STRIPE_NOT_CONFIGURED = "Stripe payment is not configured."
ERROR_MISSING_CLIENT_SECRET = "Stripe checkout session is missing a client secret"
ERROR_PAYMENT_NOT_FOUND = "Payment not found"
ERROR_NOT_PARTICIPANT = "Only sit participants can view this payment"

REUSABLE_INTENT_STATUSES = frozenset(
    {"requires_payment_method", "requires_confirmation", "requires_action", "processing"}
)
_COLLECTING_STATUSES = frozenset({"requires_payment_method", "requires_confirmation", "requires_action"})
_PROCESSING_STATUSES = frozenset({"processing", "requires_capture"})


@dataclass(frozen=True)
class CheckoutSessionResult:
    error: str | None
    client_secret: str | None


@dataclass(frozen=True)
class PaymentIntentResult:
    client_secret: str | None
    payment_intent_id: str


@dataclass(frozen=True)
class PaymentStatus:
    status: str
    amount: float
    state: str


def classify_intent_status(status: str | None) -> str:
    """Collapse a gateway intent status into collecting/processing/succeeded/failed."""
    if status in _COLLECTING_STATUSES:
        return "collecting"
    if status in _PROCESSING_STATUSES:
        return "processing"
    if status == "succeeded":
        return "succeeded"
    return "failed"


def _booking_fee_metadata(booking_id: str, sitter_id: str, points_applied: int) -> dict[str, str]:
    return {
        "flow": BOOKING_FEE_FLOW,
        "booking_id": booking_id,
        "sitter_id": sitter_id,
        "requested_points": str(points_applied),
    }


async def get_or_create_customer_id(
    session: AsyncSession,
    stripe_client: Any,
    user_id: str,
    fallback_email: str | None = None,
) -> str:
    """Return the gateway customer on file, creating and storing one when missing."""
    profile = await session.get(UserProfile, user_id)
    if profile is not None and profile.stripe_customer_id:
        return profile.stripe_customer_id

    customer = await stripe_infra.call_stripe_client_method(
        stripe_client,
        "create_customer",
        email=(profile.email if profile else None) or fallback_email,
        name=profile.full_name if profile else None,
        user_id=user_id,
        idempotency_key=make_customer_idempotency_key(user_id),
    )
    customer_id = str(stripe_infra.stripe_value(customer, "id"))
    if profile is not None:
        try:
            async with datastore_call("profiles"):
                profile.stripe_customer_id = customer_id
                await session.commit()
        except TransientInfraError as exc:
            await session.rollback()
            logger.warning(
                "stripe_customer_persist_failed",
                extra={"extra": {"user_id": user_id, "reason": str(exc)}},
            )
    return customer_id


async def _quote_points_lenient(
    session: AsyncSession, booking: Booking, requested_points: object, app_settings: Settings
) -> tuple[int, float]:
    booking_id = booking.booking_id
    summary = settlement_service.fee_summary_for(booking, app_settings)
    try:
        _, points_applied, cash_due = await settlement_service.quote_cash_due(
            session, booking, requested_points, app_settings
        )
    except TransientInfraError as exc:
        await session.rollback()
        await session.refresh(booking)
        logger.warning(
            "checkout_points_balance_failed",
            extra={"extra": {"booking_id": booking_id, "reason": str(exc)}},
        )
        return 0, summary.total_fee
    return points_applied, cash_due


async def create_booking_payment_checkout_session(
    session: AsyncSession,
    stripe_client: Any,
    *,
    booking_id: str,
    user_id: str,
    requested_points: object,
    app_settings: Settings = settings,
) -> CheckoutSessionResult:
    """Embedded checkout for the cash part of the booking fees.

    Validation problems come back as ``error``; gateway failures raise.
    """
    booking = await session.get(Booking, booking_id)
    if booking is None:
        return CheckoutSessionResult(error=ERROR_NOT_FOUND, client_secret=None)
    if booking.sitter_id != user_id:
        return CheckoutSessionResult(error=ERROR_SESSION_NOT_SITTER, client_secret=None)
    if not is_payable(booking.status):
        return CheckoutSessionResult(error=ERROR_NOT_PAYABLE, client_secret=None)
    if booking.payment_status == PAYMENT_PAID:
        return CheckoutSessionResult(error=ERROR_ALREADY_PAID, client_secret=None)

    points_applied, cash_due = await _quote_points_lenient(session, booking, requested_points, app_settings)
    if cash_due <= 0:
        return CheckoutSessionResult(error=ERROR_NO_CASH_DUE, client_secret=None)

    try:
        customer_id = await get_or_create_customer_id(session, stripe_client, user_id)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "stripe_customer_unavailable",
            extra={"extra": {"booking_id": booking_id, "reason": type(exc).__name__}},
        )
        if app_settings.manual_payments_enabled:
            return CheckoutSessionResult(error=ERROR_STRIPE_UNAVAILABLE, client_secret=None)
        return CheckoutSessionResult(error=ERROR_STRIPE_NOT_CONFIGURED, client_secret=None)

    listing = await session.get(Listing, booking.listing_id)
    listing_title = (listing.title if listing else None) or "SitSwap sit"
    unit_amount = max(0, to_cents(cash_due))
    metadata = _booking_fee_metadata(booking_id, user_id, points_applied)
    checkout_session = await stripe_infra.call_stripe_client_method(
        stripe_client,
        "create_checkout_session",
        amount_cents=unit_amount,
        currency=app_settings.payment_currency,
        customer=customer_id,
        product_name=f"{listing_title} service fees",
        product_description="Service and cleaning fees for your booking",
        metadata=metadata,
        payment_intent_metadata=metadata,
        idempotency_key=make_booking_idempotency_key(
            booking_id, "fee-checkout", amount_cents=unit_amount, points_applied=points_applied
        ),
    )
    client_secret = stripe_infra.stripe_value(checkout_session, "client_secret")
    if not client_secret:
        return CheckoutSessionResult(error=ERROR_MISSING_CLIENT_SECRET, client_secret=None)

    logger.info(
        "stripe_booking_checkout_created",
        extra={
            "extra": {
                "booking_id": booking_id,
                "checkout_session_id": stripe_infra.stripe_value(checkout_session, "id"),
                "amount_cents": unit_amount,
                "points_applied": points_applied,
            }
        },
    )
    return CheckoutSessionResult(error=None, client_secret=str(client_secret))


async def create_payment_intent(
    session: AsyncSession,
    stripe_client: Any,
    *,
    booking_id: str,
    user_id: str,
    requested_points: object = 0,
    app_settings: Settings = settings,
) -> PaymentIntentResult:
    """Create a payment intent for the cash due, or resume the one already linked."""
    booking = await session.get(Booking, booking_id)
    if booking is None:
        raise BookingValidationError(detail=ERROR_NOT_FOUND, status_code=404)
    if booking.sitter_id != user_id:
        raise BookingValidationError(detail=ERROR_INTENT_NOT_SITTER, status_code=403)
    if not is_payable(booking.status):
        raise BookingValidationError(detail=ERROR_NOT_PAYABLE)
    if booking.payment_status == PAYMENT_PAID:
        raise BookingValidationError(detail=ERROR_ALREADY_PAID)

    points_applied, cash_due = await _quote_points_lenient(session, booking, requested_points, app_settings)
    if cash_due <= 0:
        raise BookingValidationError(detail=ERROR_NO_CASH_DUE)
    if stripe_client is None or not getattr(stripe_client, "configured", True):
        raise ConfigurationError(detail=ERROR_STRIPE_NOT_CONFIGURED)

    amount_cents = to_cents(cash_due)
    customer_id = await get_or_create_customer_id(session, stripe_client, user_id)

    existing_intent_id = booking.stripe_payment_intent_id
    if existing_intent_id:
        existing = await stripe_infra.call_stripe_client_method(
            stripe_client, "retrieve_payment_intent", existing_intent_id
        )
        existing_status = stripe_infra.stripe_value(existing, "status")
        existing_secret = stripe_infra.stripe_value(existing, "client_secret")
        if (
            existing_status in REUSABLE_INTENT_STATUSES
            and stripe_infra.stripe_value(existing, "amount") == amount_cents
            and isinstance(existing_secret, str)
        ):
            logger.info(
                "stripe_payment_intent_reused",
                extra={"extra": {"booking_id": booking_id, "payment_intent_id": existing_intent_id}},
            )
            return PaymentIntentResult(client_secret=existing_secret, payment_intent_id=existing_intent_id)
        if existing_status == "succeeded":
            raise BookingValidationError(detail=ERROR_ALREADY_PAID)

    intent = await stripe_infra.call_stripe_client_method(
        stripe_client,
        "create_payment_intent",
        amount_cents=amount_cents,
        currency=app_settings.payment_currency,
        customer=customer_id,
        metadata=_booking_fee_metadata(booking_id, user_id, points_applied),
        idempotency_key=make_booking_idempotency_key(
            booking_id, "payment_intent", amount_cents=amount_cents, points_applied=points_applied
        ),
    )
    intent_id = str(stripe_infra.stripe_value(intent, "id"))
    async with datastore_call("bookings"):
        await session.execute(
            update(Booking)
            .where(Booking.booking_id == booking_id, Booking.sitter_id == user_id)
            .values(stripe_payment_intent_id=intent_id)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    logger.info(
        "stripe_payment_intent_created",
        extra={"extra": {"booking_id": booking_id, "payment_intent_id": intent_id, "amount_cents": amount_cents}},
    )
    return PaymentIntentResult(
        client_secret=stripe_infra.stripe_value(intent, "client_secret"),
        payment_intent_id=intent_id,
    )


async def get_payment_status(
    session: AsyncSession,
    stripe_client: Any,
    *,
    payment_intent_id: str,
    user_id: str,
) -> PaymentStatus:
    booking = await session.scalar(
        select(Booking).where(Booking.stripe_payment_intent_id == payment_intent_id).limit(1)
    )
    if booking is None:
        raise BookingValidationError(detail=ERROR_PAYMENT_NOT_FOUND, status_code=404)
    listing = await session.get(Listing, booking.listing_id)
    owner_id = listing.owner_id if listing else None
    if user_id not in {booking.sitter_id, owner_id}:
        raise BookingValidationError(detail=ERROR_NOT_PARTICIPANT, status_code=403)

    intent = await stripe_infra.call_stripe_client_method(
        stripe_client, "retrieve_payment_intent", payment_intent_id
    )
    status = str(stripe_infra.stripe_value(intent, "status") or "unknown")
    amount_cents = stripe_infra.stripe_value(intent, "amount") or 0
    return PaymentStatus(status=status, amount=amount_cents / 100, state=classify_intent_status(status))
