from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from sessionvault.errors import RetriesExhausted

from .base import QueryPool, QueryResult, is_fatal

logger = logging.getLogger(__name__)


class RetryingQueryExecutor:
    """Run parameterised SQL against a pool, retrying fatal errors.

    A fatal error reschedules the same statement on the next loop iteration
    until ``max_retries`` retries have been spent; anything else is raised
    on first occurrence, unchanged.
    """

    __slots__ = ("_pool", "_max_retries")

    def __init__(self, pool: QueryPool, max_retries: int = 3) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self._pool = pool
        self._max_retries = int(max_retries)

    @property
    def pool(self) -> QueryPool:
        return self._pool

    @property
    def max_retries(self) -> int:
        return self._max_retries

    async def execute(
        self, sql: str, params: Sequence[Any] | None = None
    ) -> QueryResult:
        attempts = 0
        while True:
            try:
                return await self._pool.query(sql, params)
            except Exception as exc:
                if not is_fatal(exc):
                    raise
                attempts += 1
                if attempts > self._max_retries:
                    logger.warning(
                        "Giving up on query after %d attempt(s): %s", attempts, exc
                    )
                    raise RetriesExhausted(
                        "Too many attempts", last_error=exc, attempts=attempts
                    ) from exc
                logger.debug(
                    "Fatal query error (attempt %d of %d), retrying: %s",
                    attempts,
                    self._max_retries + 1,
                    exc,
                )
            await asyncio.sleep(0)
