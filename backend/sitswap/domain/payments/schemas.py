from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class PaymentRequest(BaseModel):
    # Coerced leniently by the points service; garbage becomes zero.
    requested_points: Any = Field(0, alias="requestedPoints")

    model_config = ConfigDict(populate_by_name=True)


class CompletePaymentResponse(BaseModel):
    ok: bool
    already_paid: bool = False
    points_applied: int = 0
    cash_due: float = 0.0


class CheckoutSessionResponse(BaseModel):
    error: str | None = None
    client_secret: str | None = None


class PaymentIntentResponse(BaseModel):
    client_secret: str | None
    payment_intent_id: str


class PaymentStatusResponse(BaseModel):
    status: str
    amount: float
    state: str
