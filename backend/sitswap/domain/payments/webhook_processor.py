"""Stripe webhook processing.

Each event id is recorded in ``stripe_webhook_events`` before any work is
done; a second delivery fails the insert and is answered as a duplicate. When
processing raises, the record is deleted again so the gateway's redelivery can
retry. Validation outcomes (unknown booking, under-payment, wrong currency)
keep the record because retrying them cannot change the answer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.domain.bookings.db_models import Booking
from sitswap.domain.bookings.statuses import PAYMENT_PAID, PAYMENT_REFUNDED, PAYMENT_UNPAID
from sitswap.domain.errors import SchemaGapError
from sitswap.domain.payments.checkout import BOOKING_FEE_FLOW
from sitswap.domain.payments.db_models import StripeWebhookEvent
from sitswap.domain.points.service import normalize_requested_points
from sitswap.domain.settlement import service as settlement_service
from sitswap.infra import stripe_client as stripe_infra
from sitswap.infra.metrics import metrics
from sitswap.infra.schema import datastore_call, translate_db_error
from sitswap.settings import Settings, settings

logger = logging.getLogger(__name__)

EVENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_INTENT_FAILED = "payment_intent.payment_failed"
EVENT_INTENT_CANCELED = "payment_intent.canceled"
EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_CHARGE_REFUNDED = "charge.refunded"

SUPPORTED_EVENT_TYPES = frozenset(
    {
        EVENT_INTENT_SUCCEEDED,
        EVENT_INTENT_FAILED,
        EVENT_INTENT_CANCELED,
        EVENT_CHECKOUT_COMPLETED,
        EVENT_CHARGE_REFUNDED,
    }
)

RECORD_RECORDED = "recorded"
RECORD_DUPLICATE = "duplicate"
RECORD_SKIPPED = "skipped"


@dataclass(frozen=True)
class WebhookEvent:
    event_id: str
    event_type: str
    created: int
    object: dict[str, Any]

    @property
    def occurred_at(self) -> datetime:
        return datetime.fromtimestamp(max(0, self.created), tz=timezone.utc)

    @property
    def metadata(self) -> dict[str, Any]:
        value = self.object.get("metadata")
        return value if isinstance(value, dict) else {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.event_id,
            "type": self.event_type,
            "created": self.created,
            "data": {"object": self.object},
        }


@dataclass(frozen=True)
class WebhookOutcome:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def _as_plain(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _as_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_as_plain(item) for item in value]
    return value


def _string(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _integer(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def normalize_event(raw: Any) -> WebhookEvent:
    data = stripe_infra.stripe_value(raw, "data") or {}
    obj = stripe_infra.stripe_value(data, "object") or {}
    return WebhookEvent(
        event_id=str(stripe_infra.stripe_value(raw, "id") or ""),
        event_type=str(stripe_infra.stripe_value(raw, "type") or ""),
        created=_integer(stripe_infra.stripe_value(raw, "created")) or 0,
        object=_as_plain(obj) if isinstance(obj, dict) else {},
    )


def payment_intent_id_from(event: WebhookEvent) -> str | None:
    if event.event_type.startswith("payment_intent."):
        return _string(event.object.get("id"))
    if event.event_type.startswith(("checkout.session.", "charge.")):
        return _string(event.object.get("payment_intent"))
    return None


def booking_id_from(event: WebhookEvent) -> str | None:
    return _string(event.metadata.get("booking_id"))


def payment_flow_from(event: WebhookEvent) -> str | None:
    return _string(event.metadata.get("flow"))


def requested_points_from(event: WebhookEvent) -> int:
    raw = _string(event.metadata.get("requested_points"))
    return normalize_requested_points(raw) if raw else 0


def amount_received_cents_from(event: WebhookEvent) -> int | None:
    obj = event.object
    if event.event_type.startswith("payment_intent."):
        received = _integer(obj.get("amount_received"))
        if received is not None:
            return max(0, received)
        amount = _integer(obj.get("amount"))
    elif event.event_type.startswith("checkout.session."):
        amount = _integer(obj.get("amount_total"))
    elif event.event_type.startswith("charge."):
        amount = _integer(obj.get("amount"))
    else:
        return None
    return None if amount is None else max(0, amount)


def currency_from(event: WebhookEvent) -> str | None:
    currency = _string(event.object.get("currency"))
    return currency.lower() if currency else None


def derive_payment_patch(event: WebhookEvent) -> dict[str, Any] | None:
    """Booking column changes implied by a non-settlement event."""
    if event.event_type == EVENT_INTENT_SUCCEEDED:
        return {"payment_status": PAYMENT_PAID, "paid_at": event.occurred_at}
    if event.event_type == EVENT_CHECKOUT_COMPLETED:
        if _string(event.object.get("payment_status")) != "paid":
            return None
        return {"payment_status": PAYMENT_PAID, "paid_at": event.occurred_at}
    if event.event_type in (EVENT_INTENT_FAILED, EVENT_INTENT_CANCELED):
        return {"payment_status": PAYMENT_UNPAID}
    if event.event_type == EVENT_CHARGE_REFUNDED:
        return {"payment_status": PAYMENT_REFUNDED, "refunded_at": event.occurred_at}
    return None


async def record_event(session: AsyncSession, event: WebhookEvent, app_settings: Settings = settings) -> str:
    """Insert the dedupe record. Returns recorded, duplicate or skipped (no table)."""
    session.add(
        StripeWebhookEvent(
            event_id=event.event_id,
            event_type=event.event_type,
            payload=event.to_payload(),
        )
    )
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        return RECORD_DUPLICATE
    except DBAPIError as exc:
        await session.rollback()
        error = translate_db_error(exc, "stripe_webhook_events")
        if isinstance(error, SchemaGapError):
            if app_settings.is_production:
                logger.error(
                    "stripe_webhook_dedupe_table_missing",
                    extra={"extra": {"event_id": event.event_id, "action": "reject"}},
                )
                raise error from exc
            logger.warning(
                "stripe_webhook_dedupe_table_missing",
                extra={"extra": {"event_id": event.event_id, "action": "process_without_dedupe"}},
            )
            return RECORD_SKIPPED
        raise error from exc
    await session.commit()
    return RECORD_RECORDED


async def release_event(session: AsyncSession, event_id: str) -> None:
    await session.rollback()
    try:
        async with datastore_call("stripe_webhook_events"):
            await session.execute(delete(StripeWebhookEvent).where(StripeWebhookEvent.event_id == event_id))
            await session.commit()
    except SchemaGapError:
        await session.rollback()
        return
    except Exception as exc:  # noqa: BLE001
        await session.rollback()
        logger.warning(
            "stripe_webhook_dedupe_release_failed",
            extra={"extra": {"event_id": event_id, "reason": type(exc).__name__}},
        )
        return
    logger.info("stripe_webhook_dedupe_released", extra={"extra": {"event_id": event_id}})


async def link_booking_to_intent(session: AsyncSession, booking_id: str, payment_intent_id: str) -> None:
    """Attach the intent to the booking if none is linked; never overwrite a different one."""
    async with datastore_call("bookings"):
        booking = await session.get(Booking, booking_id, populate_existing=True)
    if booking is None:
        return
    if not booking.stripe_payment_intent_id:
        async with datastore_call("bookings"):
            await session.execute(
                update(Booking)
                .where(Booking.booking_id == booking_id, Booking.stripe_payment_intent_id.is_(None))
                .values(stripe_payment_intent_id=payment_intent_id)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return
    if booking.stripe_payment_intent_id != payment_intent_id:
        logger.warning(
            "stripe_webhook_intent_mismatch",
            extra={
                "extra": {
                    "booking_id": booking_id,
                    "existing_payment_intent_id": booking.stripe_payment_intent_id,
                    "webhook_payment_intent_id": payment_intent_id,
                }
            },
        )


async def apply_payment_patch(session: AsyncSession, payment_intent_id: str, patch: dict[str, Any]) -> int:
    target_status = patch["payment_status"]
    # paid and unpaid both only apply to bookings not yet paid
    guard_status = PAYMENT_REFUNDED if target_status == PAYMENT_REFUNDED else PAYMENT_PAID
    async with datastore_call("bookings"):
        result = await session.execute(
            update(Booking)
            .where(
                Booking.stripe_payment_intent_id == payment_intent_id,
                Booking.payment_status != guard_status,
            )
            .values(**patch)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    return result.rowcount or 0


async def _verify(
    stripe_client: Any, payload: bytes, signature: str | None, app_settings: Settings
) -> WebhookEvent | WebhookOutcome:
    if not signature:
        metrics.record_webhook_error("missing_signature")
        return WebhookOutcome(400, {"error": "missing_signature"})
    if not app_settings.stripe_webhook_secret or stripe_client is None:
        metrics.record_webhook_error("not_configured")
        return WebhookOutcome(503, {"error": "webhook_not_configured"})
    try:
        raw = await stripe_infra.call_stripe_client_method(
            stripe_client, "verify_webhook", payload=payload, signature=signature
        )
    except Exception as exc:  # noqa: BLE001
        metrics.record_webhook_error("invalid_signature")
        logger.warning("stripe_webhook_invalid", extra={"extra": {"reason": type(exc).__name__}})
        return WebhookOutcome(400, {"error": "invalid_signature"})
    return normalize_event(raw)


async def process_stripe_webhook(
    session: AsyncSession,
    stripe_client: Any,
    payload: bytes,
    signature: str | None,
    app_settings: Settings = settings,
) -> WebhookOutcome:
    verified = await _verify(stripe_client, payload, signature, app_settings)
    if isinstance(verified, WebhookOutcome):
        return verified
    event = verified

    if event.event_type not in SUPPORTED_EVENT_TYPES:
        metrics.record_stripe_webhook("ignored")
        return WebhookOutcome(200, {"received": True, "ignored": True})

    recorded = False
    try:
        record_state = await record_event(session, event, app_settings)
        recorded = record_state == RECORD_RECORDED
        if record_state == RECORD_DUPLICATE:
            logger.info(
                "stripe_webhook_duplicate",
                extra={"extra": {"event_id": event.event_id, "event_type": event.event_type}},
            )
            metrics.record_stripe_webhook("duplicate")
            return WebhookOutcome(200, {"received": True, "duplicate": True})
        return await _handle_event(session, event, app_settings)
    except Exception as exc:  # noqa: BLE001
        if recorded:
            await release_event(session, event.event_id)
        logger.exception(
            "stripe_webhook_error",
            extra={
                "extra": {
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "reason": type(exc).__name__,
                }
            },
        )
        metrics.record_stripe_webhook("error")
        metrics.record_webhook_error("processing_error")
        return WebhookOutcome(500, {"error": "webhook_processing_failed"})


async def _handle_event(session: AsyncSession, event: WebhookEvent, app_settings: Settings) -> WebhookOutcome:
    booking_id = booking_id_from(event)
    payment_intent_id = payment_intent_id_from(event)
    is_booking_fee_flow = payment_flow_from(event) == BOOKING_FEE_FLOW
    is_success_event = event.event_type in (EVENT_INTENT_SUCCEEDED, EVENT_CHECKOUT_COMPLETED)

    if booking_id and payment_intent_id:
        await link_booking_to_intent(session, booking_id, payment_intent_id)

    if is_booking_fee_flow and event.event_type == EVENT_INTENT_SUCCEEDED and booking_id and payment_intent_id:
        paid_cents = amount_received_cents_from(event)
        currency = currency_from(event)
        result = await settlement_service.finalize_booking_fee_payment(
            session,
            booking_id=booking_id,
            payment_intent_id=payment_intent_id,
            amount_received_cents=paid_cents,
            currency=currency,
            requested_points=requested_points_from(event),
            paid_at=event.occurred_at,
            app_settings=app_settings,
        )
        logger.info(
            "stripe_webhook_booking_fee_finalize",
            extra={
                "extra": {
                    "event_id": event.event_id,
                    "booking_id": booking_id,
                    "payment_intent_id": payment_intent_id,
                    "paid_cents": paid_cents,
                    "currency": currency,
                    "finalized": result.finalized,
                }
            },
        )
        metrics.record_stripe_webhook("finalized" if result.finalized else "not_finalized")
        return WebhookOutcome(
            200, {"received": True, "finalized": result.finalized, "booking_fee_flow": True}
        )

    finalized = False
    patch = derive_payment_patch(event)
    if patch and payment_intent_id and not (is_booking_fee_flow and is_success_event):
        changed = await apply_payment_patch(session, payment_intent_id, patch)
        finalized = changed > 0 and patch["payment_status"] == PAYMENT_PAID
        logger.info(
            "stripe_webhook_patch_applied",
            extra={
                "extra": {
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "payment_intent_id": payment_intent_id,
                    "payment_status": patch["payment_status"],
                    "rows": changed,
                }
            },
        )
    metrics.record_stripe_webhook("processed")
    return WebhookOutcome(
        200, {"received": True, "finalized": finalized, "booking_fee_flow": is_booking_fee_flow}
    )
