from .base import QueryPool, QueryResult
from .engine_pool import EngineQueryPool
from .executor import RetryingQueryExecutor

__all__ = [
    "EngineQueryPool",
    "QueryPool",
    "QueryResult",
    "RetryingQueryExecutor",
]
