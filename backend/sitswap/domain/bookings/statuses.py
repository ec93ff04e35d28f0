STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_ACCEPTED = "accepted"
STATUS_COMPLETED = "completed"
STATUS_DECLINED = "declined"
STATUS_CANCELLED = "cancelled"
STATUS_REFUNDED = "refunded"

PAYABLE_STATUSES = (STATUS_CONFIRMED, STATUS_ACCEPTED)

PAYMENT_UNPAID = "unpaid"
PAYMENT_PAID = "paid"
PAYMENT_REFUNDED = "refunded"

PAYMENT_METHOD_STRIPE = "stripe"
PAYMENT_METHOD_MANUAL = "manual"


def is_payable(status: str | None) -> bool:
    return status in PAYABLE_STATUSES
