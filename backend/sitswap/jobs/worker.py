"""Queue worker: job polling plus the housekeeping and auto-completion timers.

Run with ``python -m sitswap.jobs.worker``. The three loops share one stop
event; SIGINT/SIGTERM set it, the in-flight job finishes and the rest of the
batch is left for lock-timeout recovery.
"""

import argparse
import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import async_sessionmaker

from sitswap.domain.errors import PermanentJobError
from sitswap.domain.jobs import service as jobs_service
from sitswap.domain.jobs.db_models import JOB_SUCCEEDED, Job
from sitswap.infra.db import dispose_engine, get_session_factory
from sitswap.infra.email import resolve_email_adapter
from sitswap.infra.logging import clear_log_context, configure_logging, update_log_context
from sitswap.infra.metrics import configure_metrics
from sitswap.jobs import booking_autocomplete, handlers, housekeeping
from sitswap.jobs.heartbeat import HEARTBEAT_NAME, record_heartbeat
from sitswap.settings import Settings, settings

logger = logging.getLogger(__name__)

CLAIM_FAILURE_MAX_SLEEP_SECONDS = 5.0


@dataclass(frozen=True)
class WorkerConfig:
    worker_id: str
    poll_interval_seconds: float
    batch_size: int
    lock_timeout_seconds: int
    housekeeping_interval_seconds: float
    autocomplete_interval_seconds: float

    @classmethod
    def from_settings(cls, app_settings: Settings) -> "WorkerConfig":
        return cls(
            worker_id=app_settings.jobs_worker_id,
            poll_interval_seconds=app_settings.jobs_poll_interval_ms / 1000,
            batch_size=app_settings.jobs_batch_size,
            lock_timeout_seconds=app_settings.jobs_lock_timeout_seconds,
            housekeeping_interval_seconds=app_settings.jobs_housekeeping_interval_ms / 1000,
            autocomplete_interval_seconds=app_settings.jobs_booking_autocomplete_interval_ms / 1000,
        )

    @property
    def claim_failure_sleep_seconds(self) -> float:
        return min(CLAIM_FAILURE_MAX_SLEEP_SECONDS, self.poll_interval_seconds)


class Worker:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        config: WorkerConfig,
        job_handlers: dict[str, handlers.JobHandler],
        *,
        app_settings: Settings = settings,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.handlers = job_handlers
        self.settings = app_settings
        self.stop_event = stop_event or asyncio.Event()

    def request_stop(self) -> None:
        if not self.stop_event.is_set():
            logger.info("worker_stop_requested", extra={"extra": {"worker_id": self.config.worker_id}})
        self.stop_event.set()

    async def _sleep(self, seconds: float) -> bool:
        """Wait ``seconds`` or until stop is requested. Returns True when stopping."""
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=max(seconds, 0))
        except asyncio.TimeoutError:
            return False
        return True

    async def claim(self) -> list[Job]:
        async with self.session_factory() as session:
            return await jobs_service.claim_jobs(
                session,
                self.config.worker_id,
                max_jobs=self.config.batch_size,
                lock_timeout_seconds=self.config.lock_timeout_seconds,
            )

    async def process_job(self, job: Job) -> str | None:
        """Run one claimed job and record the outcome. Returns the resulting status."""
        update_log_context(worker_id=self.config.worker_id, job_id=job.job_id, task=job.task)
        try:
            try:
                async with self.session_factory() as session:
                    await handlers.dispatch(self.handlers, session, job)
            except PermanentJobError as exc:
                return await self._record_failure(job, str(exc), permanent=True)
            except Exception as exc:  # noqa: BLE001
                return await self._record_failure(job, f"{type(exc).__name__}: {exc}", permanent=False)
            async with self.session_factory() as session:
                owned = await jobs_service.mark_succeeded(session, job, self.config.worker_id)
            return JOB_SUCCEEDED if owned else None
        finally:
            clear_log_context()

    async def _record_failure(self, job: Job, error: str, *, permanent: bool) -> str | None:
        async with self.session_factory() as session:
            return await jobs_service.mark_failed_or_retry(
                session, job, self.config.worker_id, error, permanent=permanent
            )

    async def run_job_cycle(self) -> int:
        """Claim one batch and run it sequentially. Returns how many jobs ran."""
        jobs = await self.claim()
        processed = 0
        for job in jobs:
            if self.stop_event.is_set():
                break
            try:
                await self.process_job(job)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "job_outcome_not_recorded",
                    extra={"extra": {"job_id": job.job_id, "task": job.task, "reason": type(exc).__name__}},
                )
            processed += 1
        return processed

    async def run_housekeeping(self) -> dict[str, int]:
        async with self.session_factory() as session:
            return await housekeeping.run_housekeeping(session, self.settings)

    async def run_autocomplete(self) -> dict[str, int]:
        async with self.session_factory() as session:
            return await booking_autocomplete.autocomplete_bookings(session, app_settings=self.settings)

    async def _heartbeat(self, error_reason: str | None = None) -> None:
        try:
            await record_heartbeat(
                self.session_factory,
                HEARTBEAT_NAME,
                runner_id=self.config.worker_id,
                error_reason=error_reason,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("worker_heartbeat_failed", extra={"extra": {"reason": type(exc).__name__}})

    async def poll_loop(self) -> None:
        while not self.stop_event.is_set():
            try:
                processed = await self.run_job_cycle()
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "job_claim_failed",
                    extra={"extra": {"worker_id": self.config.worker_id, "reason": type(exc).__name__}},
                )
                await self._heartbeat(error_reason=type(exc).__name__)
                await self._sleep(self.config.claim_failure_sleep_seconds)
                continue
            await self._heartbeat()
            if processed == 0:
                await self._sleep(self.config.poll_interval_seconds)

    async def periodic_loop(
        self, name: str, interval_seconds: float, task: Callable[[], Awaitable[Any]]
    ) -> None:
        while not await self._sleep(interval_seconds):
            try:
                await task()
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "worker_periodic_task_failed",
                    extra={"extra": {"task": name, "reason": type(exc).__name__}},
                )

    async def run(self) -> None:
        logger.info(
            "worker_started",
            extra={
                "extra": {
                    "worker_id": self.config.worker_id,
                    "batch_size": self.config.batch_size,
                    "poll_interval_seconds": self.config.poll_interval_seconds,
                }
            },
        )
        await asyncio.gather(
            self.poll_loop(),
            self.periodic_loop("housekeeping", self.config.housekeeping_interval_seconds, self.run_housekeeping),
            self.periodic_loop(
                "booking_autocomplete", self.config.autocomplete_interval_seconds, self.run_autocomplete
            ),
        )
        logger.info("worker_stopped", extra={"extra": {"worker_id": self.config.worker_id}})

    async def run_once(self) -> int:
        await self.run_housekeeping()
        await self.run_autocomplete()
        processed = await self.run_job_cycle()
        await self._heartbeat()
        return processed


def _install_signal_handlers(worker: Worker) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.request_stop)
        except NotImplementedError:
            signal.signal(sig, lambda *_: worker.request_stop())


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run the background job worker")
    parser.add_argument("--once", action="store_true", help="Run one cycle of every loop and exit")
    args = parser.parse_args(argv)

    configure_logging()
    configure_metrics(settings.metrics_enabled)
    email_adapter = resolve_email_adapter(settings)
    worker = Worker(
        get_session_factory(),
        WorkerConfig.from_settings(settings),
        handlers.build_handlers(email_adapter, settings),
        app_settings=settings,
    )
    try:
        if args.once:
            await worker.run_once()
        else:
            _install_signal_handlers(worker)
            await worker.run()
    finally:
        await dispose_engine()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
