import asyncio
import logging
from typing import List, Optional

from queryrouter.connection import ConnectionManager, PgConnection
from queryrouter.errors import DatabaseConnectionError, RejectedQueryError
from queryrouter.executor import QueryExecutor
from queryrouter.models import BatchResponse, QueryResult, QueryStatus
from queryrouter.validator import validate_query

logger = logging.getLogger(__name__)

SUCCESS_MESSAGE = "Queries execution completed, please check individual query status from the results"
FAILURE_MESSAGE = "Error executing queries"


class BatchOrchestrator:
    """Runs a batch of raw queries over one connection."""

    def __init__(self, manager: ConnectionManager, executor: Optional[QueryExecutor] = None):
        self.manager = manager
        self.executor = executor or QueryExecutor(manager)

    async def run(self, connection_string: str, raw_queries: List[str]) -> BatchResponse:
        """Validate and execute every query; results keep the input order."""
        try:
            connection = await self.manager.acquire(connection_string)
        except DatabaseConnectionError as e:
            logger.error("Error executing queries: %s", e)
            return BatchResponse(message=FAILURE_MESSAGE, error=str(e))

        try:
            results = await asyncio.gather(
                *(self._run_one(connection, raw_query) for raw_query in raw_queries)
            )
        finally:
            await self.manager.release(connection)

        return BatchResponse(message=SUCCESS_MESSAGE, data=list(results))

    async def _run_one(self, connection: PgConnection, raw_query: str) -> QueryResult:
        try:
            query = validate_query(raw_query)
        except RejectedQueryError as e:
            logger.info("Rejected query: %s", e)
            return QueryResult(
                query=raw_query.strip(),
                status=QueryStatus.ERROR,
                description=str(e),
                rows=[],
                duration=0.0,
            )

        return await self.executor.execute(connection, query)
