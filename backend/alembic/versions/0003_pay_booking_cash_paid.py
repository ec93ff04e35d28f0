"""pay_booking_with_points accepts the cash actually paid

Revision ID: 0003_pay_booking_cash_paid
Revises: 0002_pay_booking_with_points
Create Date: 2026-03-02 00:00:00
"""
import importlib.util
from pathlib import Path

from alembic import op

revision = "0003_pay_booking_cash_paid"
down_revision = "0002_pay_booking_with_points"
branch_labels = None
depends_on = None

# A NULL p_cash_paid keeps the eight-argument behaviour, so callers on either
# signature resolve to this function once the old overload is dropped.
FUNCTION_SQL = """
CREATE OR REPLACE FUNCTION pay_booking_with_points(
    p_booking_id text,
    p_sitter_id text,
    p_requested_points integer,
    p_service_fee_per_night numeric,
    p_cleaning_fee numeric,
    p_service_fee_total numeric,
    p_total_fee numeric,
    p_paid_at timestamptz,
    p_cash_paid numeric DEFAULT NULL
)
RETURNS TABLE(updated boolean, already_paid boolean, points_applied integer, cash_due numeric)
LANGUAGE plpgsql
AS $$
#variable_conflict use_column
DECLARE
    v_booking bookings%ROWTYPE;
    v_balance integer;
    v_nights integer;
    v_points integer;
    v_cash numeric;
BEGIN
    SELECT * INTO v_booking FROM bookings b WHERE b.booking_id = p_booking_id FOR UPDATE;
    IF NOT FOUND THEN
        RETURN QUERY SELECT false, false, 0, 0::numeric;
        RETURN;
    END IF;
    IF v_booking.payment_status = 'paid' THEN
        RETURN QUERY SELECT false, true, v_booking.points_applied, coalesce(v_booking.cash_due, 0);
        RETURN;
    END IF;
    IF v_booking.sitter_id <> p_sitter_id OR v_booking.status NOT IN ('confirmed', 'accepted') THEN
        RETURN QUERY SELECT false, false, 0, 0::numeric;
        RETURN;
    END IF;

    PERFORM pg_advisory_xact_lock(hashtext(p_sitter_id));
    SELECT greatest(coalesce(sum(l.points_delta), 0), 0) INTO v_balance
        FROM points_ledger l WHERE l.user_id = p_sitter_id;
    v_nights := greatest(v_booking.end_date - v_booking.start_date, 0);
    v_points := greatest(0, least(greatest(p_requested_points, 0), v_balance, v_nights));
    v_cash := greatest(p_total_fee - v_points * p_service_fee_per_night, 0);

    IF p_cash_paid IS NOT NULL AND round(p_cash_paid * 100) < round(v_cash * 100) THEN
        RETURN QUERY SELECT false, false, v_points, v_cash;
        RETURN;
    END IF;

    UPDATE bookings b SET
        service_fee_per_night = p_service_fee_per_night,
        cleaning_fee = p_cleaning_fee,
        service_fee_total = p_service_fee_total,
        total_fee = p_total_fee,
        points_applied = v_points,
        cash_due = v_cash,
        payment_status = 'paid',
        paid_at = p_paid_at,
        payment_method = 'manual',
        updated_at = p_paid_at
    WHERE b.booking_id = p_booking_id AND b.payment_status <> 'paid';
    IF NOT FOUND THEN
        RETURN QUERY SELECT false, true, 0, 0::numeric;
        RETURN;
    END IF;

    IF v_points > 0 THEN
        INSERT INTO points_ledger (entry_id, user_id, booking_id, points_delta, reason)
        VALUES (gen_random_uuid()::text, p_sitter_id, p_booking_id, -v_points, 'booking_payment_points');
    END IF;
    RETURN QUERY SELECT true, false, v_points, v_cash;
END;
$$;
"""

_EIGHT_ARG_SIGNATURE = "text, text, integer, numeric, numeric, numeric, numeric, timestamptz"


def _previous_function_sql() -> str:
    path = Path(__file__).with_name("0002_pay_booking_with_points.py")
    spec = importlib.util.spec_from_file_location("pay_booking_with_points_0002", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.FUNCTION_SQL


def upgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    op.execute(f"DROP FUNCTION IF EXISTS pay_booking_with_points({_EIGHT_ARG_SIGNATURE})")
    op.execute(FUNCTION_SQL)


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    op.execute(f"DROP FUNCTION IF EXISTS pay_booking_with_points({_EIGHT_ARG_SIGNATURE}, numeric)")
    op.execute(_previous_function_sql())
