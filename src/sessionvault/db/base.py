from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(slots=True)
class QueryResult:
    """Rows returned by a SELECT, or the affected row count of a write."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    rowcount: int = 0


class QueryPool(Protocol):
    """Pooled relational backend consumed by the store.

    Implementations raise exceptions carrying a boolean ``fatal`` attribute;
    ``fatal`` errors are connection-level and considered transient.
    """

    async def query(
        self, sql: str, params: Sequence[Any] | None = None
    ) -> QueryResult: ...

    async def close(self) -> None: ...


def is_fatal(exc: BaseException) -> bool:
    return bool(getattr(exc, "fatal", False))
