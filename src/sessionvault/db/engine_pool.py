from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from sqlalchemy import event
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from sessionvault.errors import (
    BackendError,
    PermanentBackendError,
    TransientBackendError,
)

from .base import QueryResult

logger = logging.getLogger(__name__)

_TRANSIENT_MESSAGES = (
    "database is locked",
    "database table is locked",
    "database is busy",
    "unable to open database",
    "disk i/o error",
)

# CR_CONN_HOST_ERROR, CR_SERVER_GONE_ERROR, CR_SERVER_LOST, ER_LOCK_DEADLOCK
_TRANSIENT_MYSQL_CODES = frozenset({2003, 2006, 2013, 1213})


def _driver_code(error: sa_exc.DBAPIError) -> int | None:
    args = getattr(error.orig, "args", ())
    if args and isinstance(args[0], int):
        return args[0]
    return None


def classify_error(error: BaseException) -> BackendError:
    """Map an SQLAlchemy / driver exception onto the backend error taxonomy."""

    if isinstance(error, sa_exc.TimeoutError):
        return TransientBackendError(f"connection pool exhausted: {error}")
    if isinstance(error, sa_exc.DBAPIError):
        if error.connection_invalidated:
            return TransientBackendError(f"connection lost: {error.orig}")
        if isinstance(error, sa_exc.OperationalError):
            message = str(error.orig).lower()
            if any(marker in message for marker in _TRANSIENT_MESSAGES):
                return TransientBackendError(str(error.orig))
            if _driver_code(error) in _TRANSIENT_MYSQL_CODES:
                return TransientBackendError(str(error.orig))
        return PermanentBackendError(str(error.orig))
    return PermanentBackendError(str(error))


class EngineQueryPool:
    """Query capability backed by an SQLAlchemy async engine and its pool.

    Statements are sent verbatim to the driver, so they must use the
    driver's positional placeholder style (``?`` for aiosqlite).
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @classmethod
    def for_sqlite(
        cls,
        path: str,
        *,
        pool_size: int = 10,
        pool_timeout: float = 10.0,
        timeout: float = 5.0,
        busy_timeout: int = 5000,
    ) -> "EngineQueryPool":
        pool_args: dict[str, Any] = {}
        # In-memory databases get SQLAlchemy's StaticPool: one shared
        # connection, which takes no sizing arguments.
        if path not in ("", ":memory:"):
            pool_args = {
                "pool_size": int(pool_size),
                "max_overflow": 0,
                "pool_timeout": float(pool_timeout),
            }
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{path}",
            connect_args={"timeout": float(timeout)},
            **pool_args,
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _set_pragmas(dbapi_connection, _record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute(f"PRAGMA busy_timeout = {int(busy_timeout)}")
            cursor.close()

        return cls(engine)

    @classmethod
    def from_settings(cls, database: Any) -> "EngineQueryPool":
        """Build a pool from a ``DatabaseSettings`` section."""

        if database.url:
            engine = create_async_engine(
                database.url,
                pool_size=int(database.pool_size),
                pool_timeout=float(database.pool_timeout),
                pool_pre_ping=True,
            )
            return cls(engine)
        return cls.for_sqlite(
            database.path,
            pool_size=database.pool_size,
            pool_timeout=database.pool_timeout,
            timeout=database.timeout,
            busy_timeout=database.busy_timeout,
        )

    async def query(
        self, sql: str, params: Sequence[Any] | None = None
    ) -> QueryResult:
        try:
            async with self.engine.begin() as conn:
                result = await conn.exec_driver_sql(sql, tuple(params or ()))
                if result.returns_rows:
                    rows = [dict(row) for row in result.mappings().all()]
                    return QueryResult(rows=rows, rowcount=len(rows))
                return QueryResult(rowcount=max(result.rowcount or 0, 0))
        except sa_exc.SQLAlchemyError as error:
            classified = classify_error(error)
            logger.debug(
                "Query failed on %s (fatal=%s): %s",
                self.dialect,
                classified.fatal,
                error,
            )
            raise classified from error

    async def executescript(self, *statements: str) -> None:
        """Run several statements in one transaction (table provisioning, fixtures)."""

        async with self.engine.begin() as conn:
            for statement in statements:
                await conn.exec_driver_sql(statement)

    async def close(self) -> None:
        await self.engine.dispose()


__all__ = ["EngineQueryPool", "classify_error"]
