from __future__ import annotations

from dataclasses import dataclass

from sitswap.infra.email import EmailAdapter, NoopEmailAdapter, resolve_email_adapter
from sitswap.infra.metrics import Metrics, configure_metrics
from sitswap.infra.stripe_client import StripeClient


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    email_adapter: EmailAdapter | NoopEmailAdapter
    stripe_client: StripeClient
    metrics: Metrics


def build_app_services(app_settings, *, metrics: Metrics | None = None) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    return AppServices(
        email_adapter=resolve_email_adapter(app_settings),
        stripe_client=StripeClient(
            secret_key=app_settings.stripe_secret_key,
            webhook_secret=app_settings.stripe_webhook_secret,
        ),
        metrics=metrics_client,
    )
