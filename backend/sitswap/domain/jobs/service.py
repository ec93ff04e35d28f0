"""Relational job queue.

Claiming is a compare-and-set per row: a candidate is only taken when the
``UPDATE`` still finds it claimable, so two workers polling the same snapshot
never both own a row. On PostgreSQL the candidate scan also uses
``FOR UPDATE SKIP LOCKED`` so concurrent workers spread over different rows.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.domain.jobs.db_models import (
    CLAIMABLE_STATUSES,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_QUEUED,
    JOB_RETRY,
    JOB_SUCCEEDED,
    Job,
)
from sitswap.infra.db import dialect_name
from sitswap.infra.metrics import metrics
from sitswap.settings import settings

logger = logging.getLogger(__name__)

TASK_EMAIL_NOTIFICATION = "email.notification"
TASK_CACHE_CLEANUP = "maintenance.cache_cleanup"
TASK_RATE_LIMIT_CLEANUP = "maintenance.rate_limit_cleanup"

_ERROR_MAX_LENGTH = 2000
_BACKOFF_MAX_EXPONENT = 30


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def backoff_seconds(attempt: int) -> float:
    """``min(max, base * 2**attempt)`` seconds before the next try."""
    base = settings.job_backoff_base_seconds
    exponent = min(max(0, attempt), _BACKOFF_MAX_EXPONENT)
    return min(settings.job_backoff_max_seconds, base * (2**exponent))


def _claimable(now: datetime, lock_timeout_seconds: int):
    lock_expired_before = now - timedelta(seconds=lock_timeout_seconds)
    return or_(
        and_(Job.status.in_(CLAIMABLE_STATUSES), Job.run_at <= now),
        and_(Job.status == JOB_PROCESSING, Job.locked_at < lock_expired_before),
    )


async def enqueue_job(
    session: AsyncSession,
    task: str,
    payload: dict[str, Any],
    *,
    max_attempts: int | None = None,
    run_at: datetime | None = None,
) -> Job:
    job = Job(
        task=task,
        payload=payload,
        status=JOB_QUEUED,
        run_at=run_at or _now(),
        attempts=0,
        max_attempts=max_attempts or settings.job_default_max_attempts,
    )
    session.add(job)
    await session.flush()
    return job


async def enqueue_email_notification(
    session: AsyncSession,
    *,
    to: str,
    email_type: str,
    subject: str,
    html: str,
    preview_text: str,
) -> Job:
    return await enqueue_job(
        session,
        TASK_EMAIL_NOTIFICATION,
        {
            "to": to,
            "type": email_type,
            "subject": subject,
            "html": html,
            "previewText": preview_text,
        },
        max_attempts=settings.email_job_max_attempts,
    )


async def claim_jobs(
    session: AsyncSession,
    worker_id: str,
    *,
    max_jobs: int,
    lock_timeout_seconds: int,
    now: datetime | None = None,
) -> list[Job]:
    now = now or _now()
    condition = _claimable(now, lock_timeout_seconds)
    stmt = select(Job.job_id).where(condition).order_by(Job.run_at.asc(), Job.created_at.asc()).limit(max_jobs)
    if dialect_name(session) == "postgresql":
        stmt = stmt.with_for_update(skip_locked=True)
    candidate_ids = list((await session.scalars(stmt)).all())

    claimed_ids: list[str] = []
    for job_id in candidate_ids:
        result = await session.execute(
            update(Job)
            .where(Job.job_id == job_id, condition)
            .values(status=JOB_PROCESSING, locked_by=worker_id, locked_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed_ids.append(job_id)
    await session.commit()

    if not claimed_ids:
        return []
    jobs = (
        await session.scalars(
            select(Job)
            .where(Job.job_id.in_(claimed_ids))
            .order_by(Job.run_at.asc(), Job.created_at.asc())
            .execution_options(populate_existing=True)
        )
    ).all()
    for job in jobs:
        logger.info(
            "job_claimed",
            extra={"extra": {"job_id": job.job_id, "task": job.task, "attempts": job.attempts}},
        )
    metrics.record_job_claims(len(jobs))
    return list(jobs)


async def mark_succeeded(session: AsyncSession, job: Job, worker_id: str) -> bool:
    """Finish a job this worker still owns. Returns False when the lock was lost."""
    now = _now()
    result = await session.execute(
        update(Job)
        .where(Job.job_id == job.job_id, Job.locked_by == worker_id, Job.status == JOB_PROCESSING)
        .values(status=JOB_SUCCEEDED, locked_by=None, locked_at=None, last_error=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    owned = result.rowcount == 1
    if owned:
        logger.info("job_succeeded", extra={"extra": {"job_id": job.job_id, "task": job.task}})
        metrics.record_job(job.task, JOB_SUCCEEDED)
    else:
        logger.warning(
            "job_lock_lost",
            extra={"extra": {"job_id": job.job_id, "task": job.task, "worker_id": worker_id}},
        )
    return owned


async def mark_failed_or_retry(
    session: AsyncSession,
    job: Job,
    worker_id: str,
    error: str,
    *,
    permanent: bool = False,
) -> str | None:
    """Record a failed attempt. Returns the new status, or None when the lock was lost."""
    now = _now()
    attempts = (job.attempts or 0) + 1
    last_error = (error or "unknown")[:_ERROR_MAX_LENGTH]
    values: dict[str, Any] = {
        "attempts": attempts,
        "last_error": last_error,
        "locked_by": None,
        "locked_at": None,
        "updated_at": now,
    }
    if permanent or attempts >= job.max_attempts:
        new_status = JOB_FAILED
    else:
        new_status = JOB_RETRY
        values["run_at"] = now + timedelta(seconds=backoff_seconds(attempts))
    values["status"] = new_status

    result = await session.execute(
        update(Job)
        .where(Job.job_id == job.job_id, Job.locked_by == worker_id, Job.status == JOB_PROCESSING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if result.rowcount != 1:
        logger.warning(
            "job_lock_lost",
            extra={"extra": {"job_id": job.job_id, "task": job.task, "worker_id": worker_id}},
        )
        return None

    log_extra = {
        "job_id": job.job_id,
        "task": job.task,
        "attempts": attempts,
        "max_attempts": job.max_attempts,
        "error": last_error,
    }
    if new_status == JOB_FAILED:
        logger.error("job_failed", extra={"extra": log_extra})
    else:
        logger.warning(
            "job_retry_scheduled",
            extra={"extra": {**log_extra, "retry_in_seconds": backoff_seconds(attempts)}},
        )
    metrics.record_job(job.task, new_status)
    return new_status
