from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime

SERVICE_FEE_PER_NIGHT = 50.0
CLEANING_FEE = 200.0
SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class FeeSummary:
    nights: int
    service_fee_per_night: float
    service_fee_total: float
    cleaning_fee: float
    insurance_cost: float
    total_fee: float


def _as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day)


def calculate_nights(start: date | datetime, end: date | datetime) -> int:
    delta = _as_datetime(end) - _as_datetime(start)
    return max(math.ceil(delta.total_seconds() / SECONDS_PER_DAY), 0)


def calculate_booking_fees(
    start: date | datetime,
    end: date | datetime,
    *,
    service_fee_per_night: float | None = None,
    cleaning_fee: float | None = None,
    insurance_cost: float | None = None,
) -> FeeSummary:
    rate = float(SERVICE_FEE_PER_NIGHT if service_fee_per_night is None else service_fee_per_night)
    cleaning = float(CLEANING_FEE if cleaning_fee is None else cleaning_fee)
    insurance = float(insurance_cost or 0)
    nights = calculate_nights(start, end)
    service_fee_total = nights * rate
    return FeeSummary(
        nights=nights,
        service_fee_per_night=rate,
        service_fee_total=service_fee_total,
        cleaning_fee=cleaning,
        insurance_cost=insurance,
        total_fee=service_fee_total + cleaning + insurance,
    )


def cash_due_for(summary: FeeSummary, points_applied: int) -> float:
    points_value = points_applied * summary.service_fee_per_night
    return max(summary.total_fee - points_value, 0.0)


def to_cents(amount: float) -> int:
    return int(round(amount * 100))
