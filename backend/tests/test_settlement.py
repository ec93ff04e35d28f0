import asyncio
from datetime import datetime, timezone

from sqlalchemy import func, select, update

from sitswap.domain.bookings.db_models import Booking
from sitswap.domain.bookings.statuses import PAYMENT_PAID, PAYMENT_UNPAID, STATUS_PENDING
from sitswap.domain.errors import ConfigurationError, SchemaGapError
from sitswap.domain.jobs.db_models import Job
from sitswap.domain.notifications import service as notifications_service
from sitswap.domain.notifications.db_models import Notification
from sitswap.domain.points import service as points_service
from sitswap.domain.points.db_models import PointsLedgerEntry
from sitswap.domain.settlement import service as settlement_service
from sitswap.settings import settings
from tests.factories import auth_headers, seed_booking


def _complete(async_session_maker, booking_id: str, user_id: str, requested_points=0):
    async def _run():
        async with async_session_maker() as session:
            return await settlement_service.complete_booking_payment(
                session,
                booking_id=booking_id,
                user_id=user_id,
                requested_points=requested_points,
                app_settings=settings,
            )

    return asyncio.run(_run())


async def _booking_state(async_session_maker, booking_id: str):
    async with async_session_maker() as session:
        booking = await session.get(Booking, booking_id)
        ledger = (
            await session.scalars(
                select(PointsLedgerEntry.points_delta)
                .where(PointsLedgerEntry.booking_id == booking_id)
                .order_by(PointsLedgerEntry.created_at)
            )
        ).all()
        return booking, list(ledger)


async def _count(async_session_maker, model) -> int:
    async with async_session_maker() as session:
        return int(await session.scalar(select(func.count()).select_from(model)) or 0)


def test_manual_completion_in_dev_applies_points_and_notifies(async_session_maker):
    seeded = asyncio.run(seed_booking(async_session_maker, sitter_points=5))

    result = _complete(async_session_maker, seeded.booking_id, seeded.sitter_id, requested_points="2")

    assert result.ok
    assert result.updated is True
    assert result.points_applied == 2
    assert result.cash_due == 250.0
    booking, ledger = asyncio.run(_booking_state(async_session_maker, seeded.booking_id))
    assert booking.payment_status == PAYMENT_PAID
    assert booking.paid_at is not None
    assert booking.points_applied == 2
    assert booking.cash_due == 250.0
    assert booking.total_fee == 350.0
    assert booking.payment_method == "manual"
    assert ledger == [-2]
    assert asyncio.run(_count(async_session_maker, Notification)) == 2
    assert asyncio.run(_count(async_session_maker, Job)) == 2


def test_points_are_clamped_to_balance_and_nights(async_session_maker):
    seeded = asyncio.run(seed_booking(async_session_maker, nights=2, sitter_points=10))

    result = _complete(async_session_maker, seeded.booking_id, seeded.sitter_id, requested_points=9)

    assert result.points_applied == 2
    booking, ledger = asyncio.run(_booking_state(async_session_maker, seeded.booking_id))
    assert ledger == [-2]
    assert booking.cash_due == 200.0


def test_second_completion_is_an_already_paid_no_op(async_session_maker):
    seeded = asyncio.run(seed_booking(async_session_maker, sitter_points=3))

    first = _complete(async_session_maker, seeded.booking_id, seeded.sitter_id, requested_points=3)
    paid_once, _ = asyncio.run(_booking_state(async_session_maker, seeded.booking_id))
    second = _complete(async_session_maker, seeded.booking_id, seeded.sitter_id, requested_points=3)

    assert first.updated is True
    assert second.ok
    assert second.updated is False
    assert second.already_paid is True
    paid_twice, ledger = asyncio.run(_booking_state(async_session_maker, seeded.booking_id))
    assert ledger == [-3]
    assert paid_once.paid_at is not None
    assert paid_twice.paid_at == paid_once.paid_at
    assert paid_twice.cash_due == paid_once.cash_due


def test_only_the_sitter_can_pay(async_session_maker):
    seeded = asyncio.run(seed_booking(async_session_maker))

    result = _complete(async_session_maker, seeded.booking_id, seeded.owner_id)

    assert result.error == settlement_service.ERROR_NOT_SITTER
    assert result.failure.status_code == 403
    booking, _ = asyncio.run(_booking_state(async_session_maker, seeded.booking_id))
    assert booking.payment_status == PAYMENT_UNPAID


def test_unpayable_and_missing_bookings(async_session_maker):
    seeded = asyncio.run(seed_booking(async_session_maker, status=STATUS_PENDING))

    pending = _complete(async_session_maker, seeded.booking_id, seeded.sitter_id)
    missing = _complete(async_session_maker, "does-not-exist", seeded.sitter_id)

    assert pending.error == settlement_service.ERROR_NOT_PAYABLE
    assert pending.failure.status_code == 409
    assert missing.error == settlement_service.ERROR_NOT_FOUND
    assert missing.failure.status_code == 404


def test_production_refuses_cash_completion(async_session_maker):
    settings.app_env = "prod"
    settings.allow_manual_booking_payments = False
    seeded = asyncio.run(seed_booking(async_session_maker, sitter_points=1))

    result = _complete(async_session_maker, seeded.booking_id, seeded.sitter_id, requested_points=1)

    assert isinstance(result.failure, ConfigurationError)
    assert result.error == settlement_service.ERROR_MANUAL_DISABLED
    booking, ledger = asyncio.run(_booking_state(async_session_maker, seeded.booking_id))
    assert booking.payment_status == PAYMENT_UNPAID
    assert ledger == []


def test_production_allows_full_points_coverage(async_session_maker):
    settings.app_env = "prod"
    settings.allow_manual_booking_payments = False
    seeded = asyncio.run(seed_booking(async_session_maker, nights=3, cleaning_fee=0, sitter_points=3))

    result = _complete(async_session_maker, seeded.booking_id, seeded.sitter_id, requested_points=3)

    assert result.ok
    assert result.updated is True
    assert result.cash_due == 0.0


def test_production_balance_failure_fails_closed(async_session_maker, monkeypatch):
    settings.app_env = "prod"
    seeded = asyncio.run(seed_booking(async_session_maker, nights=1, cleaning_fee=0, sitter_points=1))

    async def _broken_balance(session, user_id):
        raise settlement_service.TransientInfraError("points_ledger: OperationalError")

    monkeypatch.setattr(points_service, "get_balance", _broken_balance)
    result = _complete(async_session_maker, seeded.booking_id, seeded.sitter_id, requested_points=1)

    assert result.error == settlement_service.ERROR_MANUAL_DISABLED


def test_legacy_bridge_settles_when_primitive_is_missing(async_session_maker, monkeypatch):
    seeded = asyncio.run(seed_booking(async_session_maker, sitter_points=2))

    async def _missing_primitive(session, **kwargs):
        raise SchemaGapError(object_name="pay_booking_with_points", code="42883")

    monkeypatch.setattr(settlement_service, "pay_booking_with_points", _missing_primitive)
    result = _complete(async_session_maker, seeded.booking_id, seeded.sitter_id, requested_points=2)

    assert result.updated is True
    booking, ledger = asyncio.run(_booking_state(async_session_maker, seeded.booking_id))
    assert booking.payment_status == PAYMENT_PAID
    assert booking.points_applied == 2
    assert ledger == [-2]


def test_legacy_bridge_compensates_a_lost_race(async_session_maker, monkeypatch):
    seeded = asyncio.run(seed_booking(async_session_maker, sitter_points=3))

    async def _paid_elsewhere_then_missing(session, **kwargs):
        await session.execute(
            update(Booking)
            .where(Booking.booking_id == kwargs["booking_id"])
            .values(payment_status=PAYMENT_PAID)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        raise SchemaGapError(object_name="pay_booking_with_points", code="42883")

    monkeypatch.setattr(settlement_service, "pay_booking_with_points", _paid_elsewhere_then_missing)
    result = _complete(async_session_maker, seeded.booking_id, seeded.sitter_id, requested_points=3)

    assert result.ok
    assert result.already_paid is True
    _, ledger = asyncio.run(_booking_state(async_session_maker, seeded.booking_id))
    assert sorted(ledger) == [-3, 3]

    async def _balance() -> int:
        async with async_session_maker() as session:
            return await points_service.get_balance(session, seeded.sitter_id)

    assert asyncio.run(_balance()) == 3


def test_legacy_bridge_is_refused_in_production(async_session_maker, monkeypatch):
    settings.app_env = "prod"
    settings.allow_manual_booking_payments = True
    settings.settlement_legacy_fallback_enabled = None
    seeded = asyncio.run(seed_booking(async_session_maker))

    async def _missing_primitive(session, **kwargs):
        raise SchemaGapError(object_name="pay_booking_with_points", code="42883")

    monkeypatch.setattr(settlement_service, "pay_booking_with_points", _missing_primitive)
    result = _complete(async_session_maker, seeded.booking_id, seeded.sitter_id)

    assert isinstance(result.failure, ConfigurationError)
    assert result.error == settlement_service.ERROR_NOT_COMPLETED
    booking, _ = asyncio.run(_booking_state(async_session_maker, seeded.booking_id))
    assert booking.payment_status == PAYMENT_UNPAID


def test_complete_route_returns_ok(client, async_session_maker):
    seeded = asyncio.run(seed_booking(async_session_maker, sitter_points=1))

    response = client.post(
        f"/v1/bookings/{seeded.booking_id}/payment/complete",
        json={"requested_points": 1},
        headers=auth_headers(seeded.sitter_id),
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["ok"] is True
    assert body["points_applied"] == 1
    assert body["cash_due"] == 300.0


def test_complete_route_maps_failures_to_problem_details(client, async_session_maker):
    seeded = asyncio.run(seed_booking(async_session_maker))

    response = client.post(
        f"/v1/bookings/{seeded.booking_id}/payment/complete",
        json={"requested_points": 0},
        headers=auth_headers(seeded.owner_id),
    )

    assert response.status_code == 403
    assert response.headers["content-type"].startswith("application/problem+json")
    assert response.json()["detail"] == settlement_service.ERROR_NOT_SITTER
    assert response.headers["X-Request-ID"]


def test_complete_route_requires_a_token(client, async_session_maker):
    seeded = asyncio.run(seed_booking(async_session_maker))

    response = client.post(f"/v1/bookings/{seeded.booking_id}/payment/complete", json={})

    assert response.status_code == 401


def test_complete_route_clamps_an_enormous_points_request(client, async_session_maker):
    seeded = asyncio.run(seed_booking(async_session_maker, nights=2, sitter_points=5))

    response = client.post(
        f"/v1/bookings/{seeded.booking_id}/payment/complete",
        content='{"requestedPoints": 1' + "0" * 400 + "}",
        headers={**auth_headers(seeded.sitter_id), "Content-Type": "application/json"},
    )

    assert response.status_code == 200, response.text
    assert response.json()["points_applied"] == 2
    _, ledger = asyncio.run(_booking_state(async_session_maker, seeded.booking_id))
    assert ledger == [-2]


def test_primitive_caps_requested_points_at_nights(async_session_maker):
    seeded = asyncio.run(seed_booking(async_session_maker, nights=3, sitter_points=10))

    async def _run():
        async with async_session_maker() as session:
            booking = await session.get(Booking, seeded.booking_id)
            summary = settlement_service.fee_summary_for(booking, settings)
            return await settlement_service.pay_booking_with_points(
                session,
                booking_id=seeded.booking_id,
                payer_id=seeded.sitter_id,
                requested_points=10**12,
                summary=summary,
                paid_at=datetime.now(tz=timezone.utc),
            )

    result = asyncio.run(_run())

    assert result.updated is True
    assert result.points_applied == 3


def test_email_enqueue_failure_keeps_in_app_notifications(async_session_maker, monkeypatch):
    seeded = asyncio.run(seed_booking(async_session_maker))

    async def refuse_enqueue(*args, **kwargs):
        raise RuntimeError("jobs table locked")

    monkeypatch.setattr(notifications_service, "enqueue_email_notification", refuse_enqueue)

    result = _complete(async_session_maker, seeded.booking_id, seeded.sitter_id)

    assert result.updated is True
    booking, _ = asyncio.run(_booking_state(async_session_maker, seeded.booking_id))
    assert booking.payment_status == PAYMENT_PAID
    assert asyncio.run(_count(async_session_maker, Notification)) == 2
    assert asyncio.run(_count(async_session_maker, Job)) == 0
