from __future__ import annotations

import html as html_lib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.domain.errors import PermanentJobError
from sitswap.domain.jobs.db_models import Job
from sitswap.domain.jobs.service import TASK_CACHE_CLEANUP, TASK_EMAIL_NOTIFICATION, TASK_RATE_LIMIT_CLEANUP
from sitswap.infra.email import EmailNotConfiguredError
from sitswap.infra.logging import mask_email
from sitswap.jobs import housekeeping
from sitswap.settings import Settings, settings

logger = logging.getLogger(__name__)

JobHandler = Callable[[AsyncSession, Job], Awaitable[None]]

DEFAULT_CLEANUP_MAX_ROWS = 1000


def _int_payload(payload: dict[str, Any], key: str, default: int) -> int:
    try:
        value = int(payload.get(key, default))
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def email_notification_handler(email_adapter: Any, app_settings: Settings = settings) -> JobHandler:
    async def handle(session: AsyncSession, job: Job) -> None:
        payload = job.payload or {}
        recipient = str(payload.get("to") or "").strip()
        if not recipient:
            raise PermanentJobError("email.notification payload missing `to`")
        email_type = payload.get("type")
        subject = str(payload.get("subject") or "SitSwap update")
        preview_text = payload.get("previewText")
        body = str(preview_text) if isinstance(preview_text, str) else subject
        html = payload.get("html")
        if not isinstance(html, str) or not html:
            html = (
                f"<p>{html_lib.escape(preview_text)}</p>"
                if isinstance(preview_text, str) and preview_text
                else "<p>You have a new update.</p>"
            )

        if getattr(email_adapter, "configured", False):
            await email_adapter.send_email(recipient, subject, body, html=html)
            logger.info(
                "email_sent",
                extra={"extra": {"job_id": job.job_id, "recipient": mask_email(recipient), "type": email_type}},
            )
            return

        if app_settings.is_production and not app_settings.allow_email_log_fallback:
            raise EmailNotConfiguredError("email transport is not configured in production")
        logger.info(
            "email_log_fallback",
            extra={"extra": {"job_id": job.job_id, "recipient": mask_email(recipient), "type": email_type}},
        )

    return handle


async def handle_cache_cleanup(session: AsyncSession, job: Job) -> None:
    max_rows = _int_payload(job.payload or {}, "max_rows", DEFAULT_CLEANUP_MAX_ROWS)
    deleted = await housekeeping.cache_cleanup(session, max_rows)
    logger.info("cache_cleanup_complete", extra={"extra": {"job_id": job.job_id, "deleted": deleted}})


def rate_limit_cleanup_handler(app_settings: Settings = settings) -> JobHandler:
    async def handle(session: AsyncSession, job: Job) -> None:
        payload = job.payload or {}
        deleted = await housekeeping.rate_limit_cleanup(
            session,
            _int_payload(payload, "max_rows", DEFAULT_CLEANUP_MAX_ROWS),
            _int_payload(payload, "older_than_seconds", app_settings.housekeeping_rate_limit_retention_seconds),
        )
        logger.info("rate_limit_cleanup_complete", extra={"extra": {"job_id": job.job_id, "deleted": deleted}})

    return handle


def build_handlers(email_adapter: Any, app_settings: Settings = settings) -> dict[str, JobHandler]:
    return {
        TASK_EMAIL_NOTIFICATION: email_notification_handler(email_adapter, app_settings),
        TASK_CACHE_CLEANUP: handle_cache_cleanup,
        TASK_RATE_LIMIT_CLEANUP: rate_limit_cleanup_handler(app_settings),
    }


async def dispatch(handlers: dict[str, JobHandler], session: AsyncSession, job: Job) -> None:
    handler = handlers.get(job.task)
    if handler is None:
        raise PermanentJobError(f"Unknown job task: {job.task}")
    await handler(session, job)
