import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError

from sitswap.domain.ops.db_models import JobHeartbeat
from sitswap.infra.db import get_session_factory
from sitswap.jobs.heartbeat import HEARTBEAT_NAME

router = APIRouter()
logger = logging.getLogger(__name__)

_DB_CHECK_TIMEOUT_SECONDS = 2.0


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


async def _database_check(session_factory) -> tuple[bool, datetime | None]:  # noqa: ANN001
    async with session_factory() as session:
        await session.execute(text("SELECT 1"))
        heartbeat = await session.scalar(select(JobHeartbeat).where(JobHeartbeat.name == HEARTBEAT_NAME))
    return True, heartbeat.last_heartbeat if heartbeat else None


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    session_factory = getattr(request.app.state, "db_session_factory", None) or get_session_factory()
    body: dict[str, Any] = {"status": "ok", "database": "ok", "worker_heartbeat": None}
    try:
        _, last_heartbeat = await asyncio.wait_for(
            _database_check(session_factory), timeout=_DB_CHECK_TIMEOUT_SECONDS
        )
    except (asyncio.TimeoutError, SQLAlchemyError) as exc:
        logger.warning("readyz_database_failed", extra={"extra": {"reason": type(exc).__name__}})
        body.update({"status": "unavailable", "database": "error"})
        return JSONResponse(body, status_code=503)
    if last_heartbeat is not None:
        if last_heartbeat.tzinfo is None:
            last_heartbeat = last_heartbeat.replace(tzinfo=timezone.utc)
        body["worker_heartbeat"] = last_heartbeat.isoformat()
    return JSONResponse(body, status_code=200)
