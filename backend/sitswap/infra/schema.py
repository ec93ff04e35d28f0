"""Translate driver errors into the two failure kinds callers act on.

Only this module looks at SQLSTATE codes and driver messages. Everything else
matches :class:`SchemaGapError` or :class:`TransientInfraError`.
"""

from __future__ import annotations

import re
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import DBAPIError, OperationalError, ProgrammingError

from sitswap.domain.errors import SchemaGapError, TransientInfraError

SCHEMA_GAP_CODES = frozenset({"42P01", "42703", "42883", "PGRST202"})
_SQLITE_GAP_RE = re.compile(r"no such (table|column|function)", re.IGNORECASE)


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = getattr(exc, "orig", None)
    for attr in ("sqlstate", "pgcode"):
        code = getattr(orig, attr, None)
        if code:
            return str(code)
    diag = getattr(orig, "diag", None)
    code = getattr(diag, "sqlstate", None)
    return str(code) if code else None


def is_schema_gap(exc: BaseException) -> bool:
    if not isinstance(exc, DBAPIError):
        return False
    code = _sqlstate(exc)
    if code in SCHEMA_GAP_CODES:
        return True
    return bool(_SQLITE_GAP_RE.search(str(getattr(exc, "orig", exc))))


def translate_db_error(exc: DBAPIError, object_name: str) -> Exception:
    if is_schema_gap(exc):
        return SchemaGapError(object_name=object_name, code=_sqlstate(exc) or "sqlite", original=exc)
    if isinstance(exc, (OperationalError, ProgrammingError)) or exc.connection_invalidated:
        return TransientInfraError(f"{object_name}: {type(exc.orig or exc).__name__}")
    return TransientInfraError(f"{object_name}: {type(exc).__name__}")


@asynccontextmanager
async def datastore_call(object_name: str) -> AsyncIterator[None]:
    """Run a datastore statement, re-raising driver errors as domain failures."""
    try:
        yield
    except DBAPIError as exc:
        raise translate_db_error(exc, object_name) from exc
