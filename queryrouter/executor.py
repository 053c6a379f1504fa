import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Union

from queryrouter.connection import ConnectionManager, DriverResult, PgConnection
from queryrouter.errors import (
    DatabaseConnectionError,
    ExecutionError,
    TransientConnectionError,
    classify_error,
    error_message,
)
from queryrouter.models import QueryResult, QueryStatus

logger = logging.getLogger(__name__)


def flatten_rows(result: Union[DriverResult, Sequence[DriverResult]]) -> List[Dict[str, Any]]:
    """Rows of a single result set, or of several result sets concatenated."""
    if isinstance(result, DriverResult):
        return list(result.rows)

    rows: List[Dict[str, Any]] = []
    for result_set in result:
        rows.extend(result_set.rows)
    return rows


def _command(result: Union[DriverResult, Sequence[DriverResult]]) -> Optional[str]:
    if isinstance(result, DriverResult):
        return result.command
    # Multi-statement text reports the last statement's command
    return result[-1].command if result else None


def _elapsed_ms(start_time: float) -> float:
    return (time.perf_counter() - start_time) * 1000


class QueryExecutor:
    """Executes validated queries, retrying once on connection loss."""

    def __init__(self, manager: ConnectionManager, retry: bool = True):
        self.manager = manager
        self.retry = retry

    async def execute(self, connection: PgConnection, query: str) -> QueryResult:
        """Execute query and return its result; never raises."""
        start_time = time.perf_counter()

        try:
            result = await connection.query(query)
        except Exception as e:
            failure = classify_error(e)
            if self.retry and isinstance(failure, TransientConnectionError):
                logger.warning("Connection lost while executing query, retrying once: %s", failure)
                return await self._retry(connection, query)
            return self._failed(query, failure, _elapsed_ms(start_time))

        return self._succeeded(query, result, _elapsed_ms(start_time))

    async def _retry(self, stale: PgConnection, query: str) -> QueryResult:
        try:
            fresh = await self.manager.replace(stale)
        except DatabaseConnectionError as e:
            return self._failed(query, e, 0.0)

        start_time = time.perf_counter()
        try:
            result = await fresh.query(query)
        except Exception as e:
            return self._failed(query, classify_error(e), _elapsed_ms(start_time))
        finally:
            await self.manager.release(fresh)

        return self._succeeded(query, result, _elapsed_ms(start_time))

    def _succeeded(
        self, query: str, result: Union[DriverResult, Sequence[DriverResult]], duration: float
    ) -> QueryResult:
        return QueryResult(
            query=query,
            status=QueryStatus.SUCCESS,
            description=_command(result),
            rows=flatten_rows(result),
            duration=duration,
        )

    def _failed(self, query: str, error: Exception, duration: float) -> QueryResult:
        if isinstance(error, ExecutionError):
            description = str(error)
        else:
            description = error_message(error)
        logger.warning("Error executing query: %s", description)
        return QueryResult(
            query=query,
            status=QueryStatus.ERROR,
            description=description,
            rows=[],
            duration=duration,
        )
