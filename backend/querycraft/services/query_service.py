import asyncio
import logging
from typing import List, Optional, Tuple

from querycraft.core.config import EngineSettings, get_settings
from querycraft.core.exceptions import (
    DirectiveMalformedError,
    ExecutionFailedError,
    QueryCraftError,
    QueryNotFoundError,
    SourceNotFoundError,
)
from querycraft.models.models import (
    BackendKind,
    DataSourceRecord,
    ExecutionOutcome,
    QueryRecord,
    QueryStatus,
)
from querycraft.services.directive_parser import parse_document_directive
from querycraft.services.execution_dispatcher import ExecutionDispatcher
from querycraft.services.query_compiler import QueryCompiler
from querycraft.services.store import InMemoryStore

# Configure logging
logger = logging.getLogger(__name__)


def format_execution_time(duration_ms: float) -> str:
    return f"{duration_ms:.0f}ms"


class QueryService:
    """
    Runs natural-language queries end to end and keeps their records.

    A record moves pending -> running -> completed or failed. Whether a failed
    first run keeps its record is controlled by ``retain_failed_queries``; a
    failed rerun never touches the stored record.
    """

    def __init__(
        self,
        store: InMemoryStore,
        compiler: QueryCompiler,
        dispatcher: ExecutionDispatcher,
        settings: Optional[EngineSettings] = None,
    ):
        self.store = store
        self.compiler = compiler
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()

    def _get_source(self, owner_id: str, source_id: str) -> DataSourceRecord:
        source = self.store.get_source(source_id, owner_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        return source

    def _record_failure(self, query: QueryRecord, error: str):
        if self.settings.retain_failed_queries:
            self.store.update_query(query.id, status=QueryStatus.FAILED, error=error)
        else:
            self.store.delete_query(query.id)

    @staticmethod
    def _raise_for_outcome(source: DataSourceRecord, directive_text: str, outcome: ExecutionOutcome):
        if source.backend_kind == BackendKind.DOCUMENT and not parse_document_directive(directive_text).is_executable:
            raise DirectiveMalformedError(outcome.error, raw_text=directive_text)
        raise ExecutionFailedError(outcome.error)

    async def _execute(self, source: DataSourceRecord, directive_text: str) -> ExecutionOutcome:
        return await asyncio.to_thread(self.dispatcher.execute, source, directive_text)

    async def create_query(
        self,
        owner_id: str,
        source_id: str,
        natural_query: str,
        name: Optional[str] = None,
    ) -> QueryRecord:
        """
        Generate, execute and store a query for a data source.

        Args:
            owner_id: The user running the query
            source_id: The target data source
            natural_query: The question in natural language
            name: Optional title; one is generated when omitted

        Returns:
            The completed QueryRecord

        Raises:
            SourceNotFoundError: If the source does not exist for this owner
            UnsupportedBackendError, CompilationError: If generation fails
            DirectiveMalformedError: If the generated document query cannot be parsed
            ExecutionFailedError: If the backend rejects the query
        """
        source = self._get_source(owner_id, source_id)

        query = self.store.add_query(QueryRecord(
            owner_id=owner_id,
            source_id=source.id,
            natural_query=natural_query,
            name=name or "",
        ))

        try:
            generation = await self.compiler.compile_and_generate(
                source.type, source.db_schema, natural_query
            )
        except QueryCraftError as e:
            self._record_failure(query, str(e))
            raise

        self.store.update_query(
            query.id,
            status=QueryStatus.RUNNING,
            generated_query=generation.directive_text,
            prompt=generation.instruction_text,
        )

        outcome = await self._execute(source, generation.directive_text)
        if not outcome.succeeded:
            logger.error(f"Failed to execute query: {outcome.error}", extra={"query_id": query.id})
            self._record_failure(query, outcome.error)
            self._raise_for_outcome(source, generation.directive_text, outcome)

        title = name or await self.compiler.generate_title(natural_query)
        completed = self.store.update_query(
            query.id,
            status=QueryStatus.COMPLETED,
            results=outcome.result.rows,
            error=None,
            execution_time=format_execution_time(outcome.result.execution_time_ms),
            name=title,
        )
        logger.info(
            f"Query completed with {outcome.result.row_count} rows",
            extra={"query_id": query.id, "row_count": outcome.result.row_count}
        )
        return completed

    async def rerun_query(self, owner_id: str, query_id: str) -> QueryRecord:
        """
        Execute a stored query's generated text again.

        The record is only written when the run succeeds.
        """
        query = self.get_query(owner_id, query_id)
        source = self._get_source(owner_id, query.source_id)

        if not query.generated_query:
            raise ExecutionFailedError("Failed to execute query: no generated query to run")

        outcome = await self._execute(source, query.generated_query)
        if not outcome.succeeded:
            logger.error(f"Failed to rerun query: {outcome.error}", extra={"query_id": query.id})
            self._raise_for_outcome(source, query.generated_query, outcome)

        return self.store.update_query(
            query.id,
            status=QueryStatus.COMPLETED,
            results=outcome.result.rows,
            error=None,
            execution_time=format_execution_time(outcome.result.execution_time_ms),
        )

    def get_query(self, owner_id: str, query_id: str) -> QueryRecord:
        query = self.store.get_query(query_id, owner_id)
        if query is None:
            raise QueryNotFoundError(query_id)
        return query

    def list_queries(
        self,
        owner_id: str,
        source_id: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[QueryRecord], int]:
        return self.store.list_queries(owner_id, source_id=source_id, page=page, limit=limit)

    def delete_query(self, owner_id: str, query_id: str) -> None:
        query = self.get_query(owner_id, query_id)
        self.store.delete_query(query.id)
