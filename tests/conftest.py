from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import pytest
import pytest_asyncio

from sessionvault.db.base import QueryResult
from sessionvault.db.engine_pool import EngineQueryPool

SQLITE_SCHEMA = (
    """
    CREATE TABLE sessions (
        sid TEXT PRIMARY KEY,
        session TEXT NOT NULL,
        expires INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX idx_sessions_expires ON sessions (expires)",
)


class ScriptedPool:
    """Returns (or raises) the scripted outcomes in order; the last one repeats."""

    def __init__(self, *outcomes: Any, dialect: str | None = None) -> None:
        self.outcomes = list(outcomes) or [QueryResult()]
        self.calls: list[tuple[str, Sequence[Any] | None]] = []
        self.closed = False
        if dialect is not None:
            self.dialect = dialect

    async def query(
        self, sql: str, params: Sequence[Any] | None = None
    ) -> QueryResult:
        self.calls.append((sql, params))
        if len(self.outcomes) > 1:
            outcome = self.outcomes.pop(0)
        else:
            outcome = self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def close(self) -> None:
        self.closed = True


class RecordingPool:
    """Keeps rows in a dict, keyed on the statement verb."""

    def __init__(self, dialect: str | None = None) -> None:
        self.rows: dict[str, dict[str, Any]] = {}
        self.calls: list[dict[str, Any]] = []
        if dialect is not None:
            self.dialect = dialect

    async def query(
        self, sql: str, params: Sequence[Any] | None = None
    ) -> QueryResult:
        values = list(params) if params is not None else None
        self.calls.append({"sql": sql, "values": values})
        assert values is not None
        if sql.startswith("INSERT"):
            sid, session, expires = values[:3]
            self.rows[sid] = {"session": session, "expires": expires}
            return QueryResult(rowcount=1)
        if sql.startswith("SELECT"):
            row = self.rows.get(values[0])
            return QueryResult(rows=[{"session": row["session"]}] if row else [])
        if sql.startswith("DELETE"):
            removed = 1 if self.rows.pop(values[0], None) is not None else 0
            return QueryResult(rowcount=removed)
        raise AssertionError(f"unexpected statement: {sql}")

    async def close(self) -> None:
        return None


class FatalError(Exception):
    fatal = True


class NonFatalError(Exception):
    fatal = False


@pytest.fixture
def recording_pool() -> RecordingPool:
    return RecordingPool()


@pytest_asyncio.fixture
async def sqlite_pool(tmp_path):
    pool = EngineQueryPool.for_sqlite(str(tmp_path / "sessions.sqlite3"))
    await pool.executescript(*SQLITE_SCHEMA)
    yield pool
    await pool.close()
