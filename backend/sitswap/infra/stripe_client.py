from __future__ import annotations

import inspect
from typing import Any, Callable

import anyio

MUTATING_METHOD_PREFIXES: tuple[str, ...] = (
    "create_",
    "cancel_",
    "update_",
)

READ_ONLY_METHOD_PREFIXES: tuple[str, ...] = (
    "retrieve_",
    "verify_",
)


def is_mutating_method(method_name: str) -> bool:
    if method_name.startswith(READ_ONLY_METHOD_PREFIXES):
        return False
    return method_name.startswith(MUTATING_METHOD_PREFIXES)


class StripeClient:
    def __init__(
        self,
        *,
        secret_key: str | None,
        webhook_secret: str | None,
        stripe_sdk: Any | None = None,
    ) -> None:
        """Hold gateway credentials for the lifetime of the process.

        Built once at start-up and handed to the code that needs it. Calls fail
        fast with ``ValueError`` when the relevant credential is missing.
        """
        if stripe_sdk is None:
            import stripe as stripe_sdk  # type: ignore

        self.stripe = stripe_sdk
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _require_secret_key(self) -> None:
        if not self.secret_key:
            raise ValueError("Stripe secret key not configured")
        self.stripe.api_key = self.secret_key

    async def _call(self, fn: Callable[..., Any], /, *args, **kwargs) -> Any:
        request_kwargs = dict(kwargs)

        def _sync_call() -> Any:
            return fn(*args, **request_kwargs)

        return await anyio.to_thread.run_sync(_sync_call)

    async def create_customer(
        self,
        *,
        email: str | None,
        name: str | None,
        user_id: str,
        idempotency_key: str | None = None,
    ) -> Any:
        self._require_secret_key()
        payload: dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            payload["email"] = email
        if name:
            payload["name"] = name
        extra: dict[str, Any] = {}
        if idempotency_key:
            extra["idempotency_key"] = idempotency_key
        return await self._call(self.stripe.Customer.create, **payload, **extra)

    async def create_checkout_session(
        self,
        *,
        amount_cents: int,
        currency: str,
        customer: str,
        product_name: str,
        product_description: str | None = None,
        metadata: dict[str, str] | None = None,
        payment_intent_metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        """Embedded checkout session that stays on the page after payment."""
        self._require_secret_key()
        product_data: dict[str, Any] = {"name": product_name}
        if product_description:
            product_data["description"] = product_description
        payload: dict[str, Any] = {
            "ui_mode": "embedded",
            "mode": "payment",
            "redirect_on_completion": "never",
            "customer": customer,
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": product_data,
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            "metadata": metadata or {},
        }
        if payment_intent_metadata:
            payload["payment_intent_data"] = {"metadata": payment_intent_metadata}
        extra: dict[str, Any] = {}
        if idempotency_key:
            extra["idempotency_key"] = idempotency_key
        return await self._call(self.stripe.checkout.Session.create, **payload, **extra)

    async def create_payment_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        customer: str,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        self._require_secret_key()
        extra: dict[str, Any] = {}
        if idempotency_key:
            extra["idempotency_key"] = idempotency_key
        return await self._call(
            self.stripe.PaymentIntent.create,
            amount=amount_cents,
            currency=currency,
            customer=customer,
            metadata=metadata or {},
            automatic_payment_methods={"enabled": True},
            **extra,
        )

    async def retrieve_payment_intent(self, intent_id: str) -> Any:
        self._require_secret_key()
        return await self._call(self.stripe.PaymentIntent.retrieve, intent_id)

    async def verify_webhook(self, payload: bytes, signature: str | None) -> Any:
        if not self.webhook_secret:
            raise ValueError("Stripe webhook secret not configured")
        if not signature:
            raise ValueError("Missing Stripe signature header")
        return await self._call(
            self.stripe.Webhook.construct_event,
            payload=payload,
            sig_header=signature,
            secret=self.webhook_secret,
        )


def resolve_client(app_like: Any) -> StripeClient:
    """Return the client wired at start-up (``state.stripe_client``, then ``services``)."""
    state = getattr(app_like, "state", app_like)
    services = getattr(state, "services", None)
    client = getattr(state, "stripe_client", None)
    if client is None and services is not None:
        client = getattr(services, "stripe_client", None)
    if client is None:
        raise RuntimeError("stripe_client_not_wired")
    return client


async def call_stripe_client_method(client: Any, method_name: str, /, *args, **kwargs) -> Any:
    method = getattr(client, method_name, None)
    if method is None:
        raise AttributeError(f"Stripe client missing method {method_name}")

    if is_mutating_method(method_name) and not kwargs.get("idempotency_key"):
        raise ValueError(
            f"Stripe mutation '{method_name}' requires idempotency_key to be provided"
        )

    result = method(*args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result


def stripe_value(source: object, key: str, default: Any | None = None) -> Any:
    """Read a field from a Stripe object or a plain dict."""
    if source is None:
        return default
    if isinstance(source, dict):
        return source.get(key, default)
    getter = getattr(source, "get", None)
    if callable(getter):
        try:
            return getter(key, default)
        except TypeError:
            pass
    return getattr(source, key, default)
