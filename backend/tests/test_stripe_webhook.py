import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from sitswap.domain.bookings.db_models import Booking
from sitswap.domain.bookings.statuses import PAYMENT_PAID, PAYMENT_REFUNDED, PAYMENT_UNPAID
from sitswap.domain.errors import TransientInfraError
from sitswap.domain.payments.checkout import BOOKING_FEE_FLOW
from sitswap.domain.payments.db_models import StripeWebhookEvent
from sitswap.domain.points import service as points_service
from sitswap.domain.points.db_models import PointsLedgerEntry
from sitswap.main import app
from sitswap.settings import settings
from tests.factories import seed_booking

SIGNATURE = {"Stripe-Signature": "t=1,v1=test"}


def _intent_event(
    event_id: str,
    booking_id: str,
    *,
    event_type: str = "payment_intent.succeeded",
    intent_id: str = "pi_fee",
    amount_received: int = 35000,
    currency: str = "usd",
    flow: str | None = BOOKING_FEE_FLOW,
    requested_points: str = "0",
) -> dict:
    metadata = {"booking_id": booking_id, "requested_points": requested_points}
    if flow:
        metadata["flow"] = flow
    return {
        "id": event_id,
        "type": event_type,
        "created": int(datetime.now(tz=timezone.utc).timestamp()),
        "data": {
            "object": {
                "id": intent_id,
                "amount": amount_received,
                "amount_received": amount_received,
                "currency": currency,
                "metadata": metadata,
            }
        },
    }


def _install_gateway(event: dict) -> None:
    settings.stripe_webhook_secret = "whsec_test"
    app.state.stripe_client = SimpleNamespace(verify_webhook=lambda payload, signature: event)


def _post(client):
    return client.post("/v1/payments/stripe/webhook", content=b"{}", headers=SIGNATURE)


async def _load(async_session_maker, booking_id: str) -> Booking:
    async with async_session_maker() as session:
        return await session.get(Booking, booking_id)


async def _dedupe_rows(async_session_maker) -> int:
    async with async_session_maker() as session:
        return int(await session.scalar(select(func.count()).select_from(StripeWebhookEvent)) or 0)


async def _ledger_for(async_session_maker, seeded):
    async with async_session_maker() as session:
        booking_entries = (
            await session.scalars(
                select(PointsLedgerEntry.points_delta).where(PointsLedgerEntry.booking_id == seeded.booking_id)
            )
        ).all()
        balance = await points_service.get_balance(session, seeded.sitter_id)
    return list(booking_entries), balance


def test_missing_signature_is_rejected(client):
    settings.stripe_webhook_secret = "whsec_test"
    response = client.post("/v1/payments/stripe/webhook", content=b"{}")
    assert response.status_code == 400
    assert response.json() == {"error": "missing_signature"}


def test_missing_webhook_secret_is_unavailable(client):
    settings.stripe_webhook_secret = None
    response = _post(client)
    assert response.status_code == 503
    assert response.json() == {"error": "webhook_not_configured"}


def test_invalid_signature_is_rejected(client):
    settings.stripe_webhook_secret = "whsec_test"

    def _reject(payload, signature):
        raise ValueError("bad signature")

    app.state.stripe_client = SimpleNamespace(verify_webhook=_reject)
    response = _post(client)
    assert response.status_code == 400
    assert response.json() == {"error": "invalid_signature"}


def test_unsupported_events_are_acknowledged(client):
    _install_gateway({"id": "evt_other", "type": "customer.created", "created": 0, "data": {"object": {}}})
    response = _post(client)
    assert response.status_code == 200
    assert response.json() == {"received": True, "ignored": True}


def test_booking_fee_success_settles_once(client, async_session_maker):
    seeded = asyncio.run(seed_booking(async_session_maker))
    _install_gateway(_intent_event("evt_fee_1", seeded.booking_id))

    first = _post(client)
    assert first.status_code == 200, first.text
    assert first.json() == {"received": True, "finalized": True, "booking_fee_flow": True}

    booking = asyncio.run(_load(async_session_maker, seeded.booking_id))
    assert booking.payment_status == PAYMENT_PAID
    assert booking.payment_method == "stripe"
    assert booking.stripe_payment_intent_id == "pi_fee"
    assert booking.cash_due == 350.0

    replay = _post(client)
    assert replay.status_code == 200
    assert replay.json() == {"received": True, "duplicate": True}


def test_underpayment_is_not_finalized_and_not_retried(client, async_session_maker):
    seeded = asyncio.run(seed_booking(async_session_maker, sitter_points=2))
    _install_gateway(_intent_event("evt_fee_short", seeded.booking_id, amount_received=30000))

    response = _post(client)
    assert response.status_code == 200
    assert response.json()["finalized"] is False
    booking = asyncio.run(_load(async_session_maker, seeded.booking_id))
    assert booking.payment_status == PAYMENT_UNPAID
    assert asyncio.run(_dedupe_rows(async_session_maker)) == 1
    assert asyncio.run(_ledger_for(async_session_maker, seeded)) == ([], 2)


def test_currency_mismatch_is_not_finalized(client, async_session_maker):
    seeded = asyncio.run(seed_booking(async_session_maker, sitter_points=2))
    _install_gateway(_intent_event("evt_fee_cad", seeded.booking_id, currency="CAD"))

    response = _post(client)
    assert response.json()["finalized"] is False
    booking = asyncio.run(_load(async_session_maker, seeded.booking_id))
    assert booking.payment_status == PAYMENT_UNPAID
    assert asyncio.run(_ledger_for(async_session_maker, seeded)) == ([], 2)


def test_points_from_metadata_reduce_the_expected_cash(client, async_session_maker):
    seeded = asyncio.run(seed_booking(async_session_maker, sitter_points=2))
    _install_gateway(
        _intent_event("evt_fee_pts", seeded.booking_id, amount_received=25000, requested_points="2")
    )

    response = _post(client)
    assert response.json()["finalized"] is True
    booking = asyncio.run(_load(async_session_maker, seeded.booking_id))
    assert booking.points_applied == 2
    assert booking.cash_due == 250.0


def test_transient_failure_releases_the_event_for_redelivery(client_no_raise, async_session_maker, monkeypatch):
    seeded = asyncio.run(seed_booking(async_session_maker))
    _install_gateway(_intent_event("evt_fee_retry", seeded.booking_id))

    async def _unavailable(session, user_id):
        raise TransientInfraError("points_ledger: OperationalError")

    monkeypatch.setattr(points_service, "get_balance", _unavailable)
    failed = _post(client_no_raise)
    assert failed.status_code == 500
    assert failed.json() == {"error": "webhook_processing_failed"}
    assert asyncio.run(_dedupe_rows(async_session_maker)) == 0
    booking = asyncio.run(_load(async_session_maker, seeded.booking_id))
    assert booking.payment_status == PAYMENT_UNPAID

    monkeypatch.undo()
    redelivered = _post(client_no_raise)
    assert redelivered.status_code == 200
    assert redelivered.json()["finalized"] is True
    booking = asyncio.run(_load(async_session_maker, seeded.booking_id))
    assert booking.payment_status == PAYMENT_PAID


def test_success_after_manual_completion_counts_as_finalized(client, async_session_maker):
    seeded = asyncio.run(seed_booking(async_session_maker, payment_status=PAYMENT_PAID))
    _install_gateway(_intent_event("evt_fee_late", seeded.booking_id))

    response = _post(client)
    assert response.json() == {"received": True, "finalized": True, "booking_fee_flow": True}
    booking = asyncio.run(_load(async_session_maker, seeded.booking_id))
    assert booking.stripe_payment_intent_id == "pi_fee"


def test_generic_events_patch_the_linked_booking(client, async_session_maker):
    seeded = asyncio.run(seed_booking(async_session_maker, stripe_payment_intent_id="pi_generic"))

    _install_gateway(
        _intent_event(
            "evt_generic_paid", seeded.booking_id, intent_id="pi_generic", flow=None
        )
    )
    paid = _post(client)
    assert paid.json() == {"received": True, "finalized": True, "booking_fee_flow": False}
    assert asyncio.run(_load(async_session_maker, seeded.booking_id)).payment_status == PAYMENT_PAID

    refund = {
        "id": "evt_generic_refund",
        "type": "charge.refunded",
        "created": int(datetime.now(tz=timezone.utc).timestamp()),
        "data": {"object": {"id": "ch_1", "payment_intent": "pi_generic", "amount": 35000, "currency": "usd"}},
    }
    _install_gateway(refund)
    refunded = _post(client)
    assert refunded.json()["finalized"] is False
    booking = asyncio.run(_load(async_session_maker, seeded.booking_id))
    assert booking.payment_status == PAYMENT_REFUNDED
    assert booking.refunded_at is not None


def test_failed_intent_does_not_unpay_a_paid_booking(client, async_session_maker):
    seeded = asyncio.run(
        seed_booking(async_session_maker, payment_status=PAYMENT_PAID, stripe_payment_intent_id="pi_done")
    )
    _install_gateway(
        _intent_event(
            "evt_generic_failed",
            seeded.booking_id,
            event_type="payment_intent.payment_failed",
            intent_id="pi_done",
            flow=None,
        )
    )

    response = _post(client)
    assert response.status_code == 200
    booking = asyncio.run(_load(async_session_maker, seeded.booking_id))
    assert booking.payment_status == PAYMENT_PAID


async def _alter_dedupe_table(test_engine, action) -> None:
    async with test_engine.begin() as conn:
        await conn.run_sync(action)


@pytest.fixture
def without_dedupe_table(test_engine):
    table = StripeWebhookEvent.__table__
    asyncio.run(_alter_dedupe_table(test_engine, table.drop))
    yield
    asyncio.run(_alter_dedupe_table(test_engine, table.create))


def test_missing_dedupe_table_fails_closed_in_production(client, async_session_maker, without_dedupe_table):
    settings.app_env = "prod"
    seeded = asyncio.run(seed_booking(async_session_maker))
    _install_gateway(_intent_event("evt_no_table_prod", seeded.booking_id))

    response = _post(client)

    assert response.status_code == 500
    assert response.json() == {"error": "webhook_processing_failed"}
    assert asyncio.run(_load(async_session_maker, seeded.booking_id)).payment_status == PAYMENT_UNPAID


def test_missing_dedupe_table_processes_without_dedupe_outside_production(
    client, async_session_maker, without_dedupe_table
):
    seeded = asyncio.run(seed_booking(async_session_maker))
    _install_gateway(_intent_event("evt_no_table_dev", seeded.booking_id))

    response = _post(client)

    assert response.status_code == 200, response.text
    assert response.json() == {"received": True, "finalized": True, "booking_fee_flow": True}
    assert asyncio.run(_load(async_session_maker, seeded.booking_id)).payment_status == PAYMENT_PAID
