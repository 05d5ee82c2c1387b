from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable, Mapping, Sequence
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any, Protocol

import orjson

from sessionvault.crypto import EncryptedEnvelopeCodec
from sessionvault.db.base import QueryPool, QueryResult
from sessionvault.db.engine_pool import EngineQueryPool
from sessionvault.db.executor import RetryingQueryExecutor
from sessionvault.errors import CleanupSweepError, DecodeError, EnvelopeError
from sessionvault.settings import Settings, StoreOptions, load_settings
from sessionvault.statements import SessionStatements, get_dialect

logger = logging.getLogger(__name__)

SweepErrorHook = Callable[[CleanupSweepError], None]


class SessionBackend(Protocol):
    """What a session middleware needs from its backing store."""

    async def get(self, sid: str) -> dict[str, Any] | None: ...

    async def set(self, sid: str, record: Mapping[str, Any]) -> None: ...

    async def destroy(self, sid: str) -> None: ...


def expires_seconds(record: Mapping[str, Any]) -> int:
    """Return ``cookie.expires`` as whole epoch seconds, or 0 when absent.

    Accepts a ``datetime`` (naive values are UTC), an ISO-8601 string, or a
    number of epoch milliseconds. Halves round up.
    """

    cookie = record.get("cookie") if isinstance(record, Mapping) else None
    value = cookie.get("expires") if isinstance(cookie, Mapping) else None
    if value is None:
        return 0

    if isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            value = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"invalid cookie.expires: {value!r}") from exc

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        millis = value.timestamp() * 1000
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        millis = float(value)
        if not math.isfinite(millis):
            raise ValueError(f"invalid cookie.expires: {value!r}")
    else:
        raise ValueError(f"invalid cookie.expires: {value!r}")

    return int(math.floor(millis / 1000 + 0.5))


def _json_default(value: Any) -> Any:
    # orjson only serialises real dicts; other mappings arrive here.
    if isinstance(value, Mapping):
        return dict(value)
    raise TypeError(f"Type is not JSON serializable: {type(value).__name__}")


def serialize_record(record: Mapping[str, Any]) -> str:
    return orjson.dumps(record, default=_json_default).decode("utf-8")


class SessionStore:
    """Session records in a relational table, optionally encrypted.

    Rows are ``(sid, session, expires)``. ``session`` holds the JSON
    serialisation of the record, wrapped in an encrypted envelope when a
    secret is configured. ``expires`` only drives the background sweep;
    reads do not filter on it.
    """

    def __init__(
        self,
        pool: QueryPool,
        options: StoreOptions | None = None,
        *,
        on_sweep_error: SweepErrorHook | None = None,
        owns_pool: bool = False,
    ) -> None:
        self._options = options or StoreOptions()
        self._pool = pool
        self._owns_pool = owns_pool
        self._executor = RetryingQueryExecutor(pool, self._options.retries)
        self._codec = EncryptedEnvelopeCodec(
            self._options.secret, self._options.algorithm
        )
        dialect = self._options.dialect or getattr(pool, "dialect", None) or "mysql"
        self._statements = SessionStatements.build(
            self._options.table, get_dialect(dialect)
        )
        self._on_sweep_error = on_sweep_error
        self._sweep_task: asyncio.Task[None] | None = None
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        on_sweep_error: SweepErrorHook | None = None,
    ) -> "SessionStore":
        settings = settings or load_settings()
        pool = EngineQueryPool.from_settings(settings.DATABASE)
        return cls(
            pool,
            StoreOptions.from_settings(settings),
            on_sweep_error=on_sweep_error,
            owns_pool=True,
        )

    async def __aenter__(self) -> "SessionStore":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def options(self) -> StoreOptions:
        return self._options

    @property
    def statements(self) -> SessionStatements:
        return self._statements

    @property
    def sweeping(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Schedule the expiry sweep on the running loop, if enabled."""

        if not self._options.cleanup or self._closed or self.sweeping:
            return
        self._sweep_task = asyncio.create_task(
            self._sweep_loop(), name="sessionvault-sweep"
        )
        logger.debug(
            "Session sweep scheduled every %ss", self._options.cleanup_interval
        )

    async def close(self) -> None:
        self._closed = True
        task = self._sweep_task
        self._sweep_task = None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        if self._owns_pool:
            await self._pool.close()

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    async def query(
        self, sql: str, params: Sequence[Any] | None = None
    ) -> QueryResult:
        return await self._executor.execute(sql, params)

    async def get(self, sid: str) -> dict[str, Any] | None:
        self.start()
        result = await self.query(self._statements.select, (sid,))
        if not result.rows:
            return None
        stored = result.rows[0].get("session")
        if not stored:
            return None

        if isinstance(stored, (bytes, bytearray, memoryview)):
            try:
                stored = bytes(stored).decode("utf-8")
            except UnicodeDecodeError as exc:
                raise DecodeError("stored session is not valid UTF-8") from exc

        try:
            payload = self._codec.decode(stored)
        except EnvelopeError:
            logger.warning("Rejected stored session %s", sid[:8])
            raise

        try:
            record = orjson.loads(payload)
        except orjson.JSONDecodeError as exc:
            raise DecodeError("stored session is not valid JSON") from exc
        if not isinstance(record, dict):
            raise DecodeError("stored session is not a JSON object")
        return record

    async def set(self, sid: str, record: Mapping[str, Any]) -> None:
        self.start()
        expires = expires_seconds(record)
        session = self._codec.encode(serialize_record(record))
        await self.query(
            self._statements.upsert, (sid, session, expires, session, expires)
        )

    async def destroy(self, sid: str) -> None:
        self.start()
        await self.query(self._statements.delete, (sid,))

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    async def cleanup(self) -> int:
        """Delete rows whose ``expires`` is set and in the past."""

        now = int(time.time())
        result = await self.query(self._statements.sweep, (now,))
        if result.rowcount:
            logger.info("Removed %d expired session(s)", result.rowcount)
        return result.rowcount

    async def _sweep_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._options.cleanup_interval)
                try:
                    await self.cleanup()
                except Exception as exc:
                    self._report_sweep_error(exc)
        except asyncio.CancelledError:
            logger.debug("Session sweep cancelled")
            raise

    def _report_sweep_error(self, exc: Exception) -> None:
        error = CleanupSweepError(f"session cleanup sweep failed: {exc}")
        error.__cause__ = exc
        logger.error("Session cleanup sweep failed", exc_info=error)
        if self._on_sweep_error is None:
            return
        try:
            self._on_sweep_error(error)
        except Exception:
            logger.exception("Sweep error hook raised")


__all__ = ["SessionBackend", "SessionStore", "expires_seconds", "serialize_record"]
