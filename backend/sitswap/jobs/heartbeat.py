import socket
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import async_sessionmaker

from sitswap.domain.ops.db_models import JobHeartbeat
from sitswap.infra.metrics import metrics

HEARTBEAT_NAME = "jobs-worker"


def _resolve_runner_id(runner_id: str | None = None) -> str:
    if runner_id and runner_id.strip():
        return runner_id.strip()
    return socket.gethostname()


async def record_heartbeat(
    session_factory: async_sessionmaker,
    name: str = HEARTBEAT_NAME,
    *,
    runner_id: str | None = None,
    error_reason: str | None = None,
) -> None:
    """Upsert the heartbeat row for ``name``. ``error_reason`` records a failed loop."""
    now = datetime.now(tz=timezone.utc)
    resolved_runner_id = _resolve_runner_id(runner_id)
    async with session_factory() as session:
        heartbeat = await session.get(JobHeartbeat, name)
        if heartbeat is None:
            heartbeat = JobHeartbeat(name=name, consecutive_failures=0)
            session.add(heartbeat)
        heartbeat.last_heartbeat = now
        heartbeat.runner_id = resolved_runner_id
        heartbeat.updated_at = now
        if error_reason is None:
            heartbeat.last_success_at = now
            heartbeat.consecutive_failures = 0
            heartbeat.last_error = None
            heartbeat.last_error_at = None
        else:
            heartbeat.consecutive_failures = (heartbeat.consecutive_failures or 0) + 1
            heartbeat.last_error = error_reason[:128]
            heartbeat.last_error_at = now
        await session.commit()
    metrics.record_job_heartbeat(name, now.timestamp())
