from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.api.auth import require_user_id
from sitswap.domain.errors import DomainError
from sitswap.domain.payments import checkout as checkout_service
from sitswap.domain.payments import schemas
from sitswap.domain.payments import webhook_processor
from sitswap.domain.settlement import service as settlement_service
from sitswap.infra import stripe_client as stripe_infra
from sitswap.infra.db import get_db_session
from sitswap.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)


def _stripe_client(request: Request):
    return stripe_infra.resolve_client(request.app.state)


def _app_settings(request: Request):
    return getattr(request.app.state, "app_settings", None) or settings


@router.post("/v1/bookings/{booking_id}/payment/complete", response_model=schemas.CompletePaymentResponse)
async def complete_payment(
    booking_id: str,
    request: schemas.PaymentRequest,
    http_request: Request,
    user_id: str = Depends(require_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> schemas.CompletePaymentResponse:
    result = await settlement_service.complete_booking_payment(
        session,
        booking_id=booking_id,
        user_id=user_id,
        requested_points=request.requested_points,
        app_settings=_app_settings(http_request),
    )
    if result.failure is not None:
        raise result.failure
    return schemas.CompletePaymentResponse(
        ok=True,
        already_paid=result.already_paid,
        points_applied=result.points_applied,
        cash_due=result.cash_due,
    )


@router.post("/v1/bookings/{booking_id}/payment/checkout", response_model=schemas.CheckoutSessionResponse)
async def create_checkout_session(
    booking_id: str,
    request: schemas.PaymentRequest,
    http_request: Request,
    user_id: str = Depends(require_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> schemas.CheckoutSessionResponse:
    try:
        result = await checkout_service.create_booking_payment_checkout_session(
            session,
            _stripe_client(http_request),
            booking_id=booking_id,
            user_id=user_id,
            requested_points=request.requested_points,
            app_settings=_app_settings(http_request),
        )
    except DomainError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "stripe_checkout_creation_failed",
            extra={"extra": {"booking_id": booking_id, "reason": type(exc).__name__}},
        )
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Stripe checkout unavailable") from exc
    return schemas.CheckoutSessionResponse(error=result.error, client_secret=result.client_secret)


@router.post("/v1/bookings/{booking_id}/payment/intent", response_model=schemas.PaymentIntentResponse)
async def create_payment_intent(
    booking_id: str,
    http_request: Request,
    request: schemas.PaymentRequest | None = None,
    user_id: str = Depends(require_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> schemas.PaymentIntentResponse:
    try:
        result = await checkout_service.create_payment_intent(
            session,
            _stripe_client(http_request),
            booking_id=booking_id,
            user_id=user_id,
            requested_points=request.requested_points if request else 0,
            app_settings=_app_settings(http_request),
        )
    except DomainError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "stripe_payment_intent_failed",
            extra={"extra": {"booking_id": booking_id, "reason": type(exc).__name__}},
        )
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Stripe payment unavailable") from exc
    return schemas.PaymentIntentResponse(
        client_secret=result.client_secret, payment_intent_id=result.payment_intent_id
    )


@router.get("/v1/payments/intents/{intent_id}", response_model=schemas.PaymentStatusResponse)
async def get_payment_status(
    intent_id: str,
    http_request: Request,
    user_id: str = Depends(require_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> schemas.PaymentStatusResponse:
    try:
        payment = await checkout_service.get_payment_status(
            session,
            _stripe_client(http_request),
            payment_intent_id=intent_id,
            user_id=user_id,
        )
    except DomainError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "stripe_payment_status_failed",
            extra={"extra": {"payment_intent_id": intent_id, "reason": type(exc).__name__}},
        )
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Stripe payment unavailable") from exc
    return schemas.PaymentStatusResponse(status=payment.status, amount=payment.amount, state=payment.state)


@router.post("/v1/payments/stripe/webhook")
async def stripe_webhook(http_request: Request, session: AsyncSession = Depends(get_db_session)) -> JSONResponse:
    payload = await http_request.body()
    signature = http_request.headers.get("Stripe-Signature")
    stripe_client = getattr(http_request.app.state, "stripe_client", None)
    outcome = await webhook_processor.process_stripe_webhook(
        session,
        stripe_client,
        payload,
        signature,
        _app_settings(http_request),
    )
    return JSONResponse(outcome.body, status_code=outcome.status_code)
