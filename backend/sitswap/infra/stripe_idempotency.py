from __future__ import annotations

import hashlib


def make_booking_idempotency_key(
    booking_id: str,
    operation: str,
    *,
    amount_cents: int,
    points_applied: int,
) -> str:
    """Deterministic key for a booking-fee gateway mutation.

    Identical ``(booking, operation, amount, points)`` inputs always yield the
    same key, so a retried client request is answered with the original
    gateway object instead of a second charge.

    Format: ``booking:<id>:<operation>:<cents>:points:<points>``. Ids longer
    than Stripe's 255 character limit allows are replaced by a sha256 digest.
    """
    key = f"booking:{booking_id}:{operation}:{int(amount_cents)}:points:{int(points_applied)}"
    if len(key) <= 255:
        return key
    digest = hashlib.sha256(key.encode()).hexdigest()[:32]
    return f"booking:{operation}:{digest}"


def make_customer_idempotency_key(user_id: str) -> str:
    digest = hashlib.sha256(f"customer|{user_id}".encode()).hexdigest()[:32]
    return f"customer-{digest}"
