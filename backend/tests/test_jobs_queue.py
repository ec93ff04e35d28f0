import asyncio
from datetime import datetime, timedelta, timezone

from sitswap.domain.jobs import service as jobs_service
from sitswap.domain.jobs.db_models import JOB_FAILED, JOB_PROCESSING, JOB_QUEUED, JOB_RETRY, JOB_SUCCEEDED, Job
from sitswap.settings import settings


async def _enqueue(async_session_maker, task: str = "maintenance.cache_cleanup", **kwargs) -> str:
    async with async_session_maker() as session:
        job = await jobs_service.enqueue_job(session, task, {"max_rows": 10}, **kwargs)
        await session.commit()
        return job.job_id


async def _load(async_session_maker, job_id: str) -> Job:
    async with async_session_maker() as session:
        return await session.get(Job, job_id)


async def _claim(async_session_maker, worker_id: str, **kwargs) -> list[Job]:
    async with async_session_maker() as session:
        return await jobs_service.claim_jobs(
            session, worker_id, max_jobs=kwargs.pop("max_jobs", 10), lock_timeout_seconds=300, **kwargs
        )


def test_backoff_doubles_until_capped():
    settings.job_backoff_base_seconds = 5.0
    settings.job_backoff_max_seconds = 60.0
    try:
        assert jobs_service.backoff_seconds(0) == 5.0
        assert jobs_service.backoff_seconds(1) == 10.0
        assert jobs_service.backoff_seconds(3) == 40.0
        assert jobs_service.backoff_seconds(10) == 60.0
        assert jobs_service.backoff_seconds(5000) == 60.0
    finally:
        settings.job_backoff_base_seconds = 5.0
        settings.job_backoff_max_seconds = 600.0


def test_enqueue_email_notification_uses_email_attempt_budget(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            job = await jobs_service.enqueue_email_notification(
                session,
                to="owner@example.com",
                email_type="booking_paid",
                subject="Paid",
                html="<p>Paid</p>",
                preview_text="Paid",
            )
            await session.commit()
            return job.job_id

    job = asyncio.run(_load(async_session_maker, asyncio.run(_run())))

    assert job.status == JOB_QUEUED
    assert job.task == jobs_service.TASK_EMAIL_NOTIFICATION
    assert job.max_attempts == settings.email_job_max_attempts
    assert job.payload["previewText"] == "Paid"
    assert job.payload["to"] == "owner@example.com"


def test_claim_takes_due_jobs_once(async_session_maker):
    due_id = asyncio.run(_enqueue(async_session_maker))
    asyncio.run(
        _enqueue(async_session_maker, run_at=datetime.now(tz=timezone.utc) + timedelta(hours=1))
    )

    first = asyncio.run(_claim(async_session_maker, "worker-a"))
    second = asyncio.run(_claim(async_session_maker, "worker-b"))

    assert [job.job_id for job in first] == [due_id]
    assert first[0].status == JOB_PROCESSING
    assert first[0].locked_by == "worker-a"
    assert second == []


def test_claim_respects_batch_size(async_session_maker):
    for _ in range(3):
        asyncio.run(_enqueue(async_session_maker))

    claimed = asyncio.run(_claim(async_session_maker, "worker-a", max_jobs=2))

    assert len(claimed) == 2


def test_mark_succeeded_releases_lock(async_session_maker):
    job_id = asyncio.run(_enqueue(async_session_maker))
    job = asyncio.run(_claim(async_session_maker, "worker-a"))[0]

    async def _finish():
        async with async_session_maker() as session:
            return await jobs_service.mark_succeeded(session, job, "worker-a")

    assert asyncio.run(_finish()) is True
    stored = asyncio.run(_load(async_session_maker, job_id))
    assert stored.status == JOB_SUCCEEDED
    assert stored.locked_by is None
    assert stored.locked_at is None


def test_failures_retry_then_fail_permanently(async_session_maker):
    job_id = asyncio.run(_enqueue(async_session_maker, max_attempts=2))

    async def _fail(job, worker_id):
        async with async_session_maker() as session:
            return await jobs_service.mark_failed_or_retry(session, job, worker_id, "RuntimeError: boom")

    job = asyncio.run(_claim(async_session_maker, "worker-a"))[0]
    assert asyncio.run(_fail(job, "worker-a")) == JOB_RETRY
    retried = asyncio.run(_load(async_session_maker, job_id))
    assert retried.attempts == 1
    assert retried.last_error == "RuntimeError: boom"
    assert retried.locked_by is None

    assert asyncio.run(_claim(async_session_maker, "worker-a")) == []
    later = datetime.now(tz=timezone.utc) + timedelta(seconds=settings.job_backoff_max_seconds + 1)
    job = asyncio.run(_claim(async_session_maker, "worker-a", now=later))[0]
    assert asyncio.run(_fail(job, "worker-a")) == JOB_FAILED
    failed = asyncio.run(_load(async_session_maker, job_id))
    assert failed.status == JOB_FAILED
    assert failed.attempts == 2


def test_permanent_failure_skips_retries(async_session_maker):
    job_id = asyncio.run(_enqueue(async_session_maker, max_attempts=5))
    job = asyncio.run(_claim(async_session_maker, "worker-a"))[0]

    async def _fail():
        async with async_session_maker() as session:
            return await jobs_service.mark_failed_or_retry(
                session, job, "worker-a", "bad payload", permanent=True
            )

    assert asyncio.run(_fail()) == JOB_FAILED
    assert asyncio.run(_load(async_session_maker, job_id)).attempts == 1


def test_stale_lock_is_reclaimed_and_old_owner_loses_it(async_session_maker):
    job_id = asyncio.run(_enqueue(async_session_maker))
    stale = asyncio.run(_claim(async_session_maker, "worker-a"))[0]

    later = datetime.now(tz=timezone.utc) + timedelta(seconds=301)
    reclaimed = asyncio.run(_claim(async_session_maker, "worker-b", now=later))
    assert [job.locked_by for job in reclaimed] == ["worker-b"]

    async def _finish_as_stale_owner():
        async with async_session_maker() as session:
            return await jobs_service.mark_succeeded(session, stale, "worker-a")

    assert asyncio.run(_finish_as_stale_owner()) is False
    stored = asyncio.run(_load(async_session_maker, job_id))
    assert stored.status == JOB_PROCESSING
    assert stored.locked_by == "worker-b"


def test_retry_delays_grow_until_the_job_fails(async_session_maker):
    job_id = asyncio.run(_enqueue(async_session_maker, max_attempts=4))
    start = datetime.now(tz=timezone.utc)

    async def _fail(job):
        async with async_session_maker() as session:
            return await jobs_service.mark_failed_or_retry(session, job, "worker-a", "RuntimeError: boom")

    delays = []
    statuses = []
    for attempt in range(4):
        now = start + timedelta(days=attempt)
        job = asyncio.run(_claim(async_session_maker, "worker-a", now=now))[0]
        statuses.append(asyncio.run(_fail(job)))
        stored = asyncio.run(_load(async_session_maker, job_id))
        if stored.status == JOB_RETRY:
            delays.append((stored.run_at - stored.updated_at).total_seconds())

    assert statuses == [JOB_RETRY, JOB_RETRY, JOB_RETRY, JOB_FAILED]
    assert delays == sorted(set(delays))
    assert len(delays) == 3
    assert asyncio.run(_claim(async_session_maker, "worker-a", now=start + timedelta(days=3650))) == []
