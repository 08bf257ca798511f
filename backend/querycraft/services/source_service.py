import logging
from datetime import datetime
from typing import List, Optional, Tuple

from querycraft.core.config import EngineSettings, get_settings
from querycraft.core.exceptions import ConnectionTestError, QueryCraftError, SourceNotFoundError
from querycraft.models.models import (
    BackendKind,
    DataSourceCreate,
    DataSourceRecord,
    InferenceOutcome,
    SchemaDescriptor,
    SourceStats,
)
from querycraft.services.document_adapter import MongoDocumentAdapter, extract_database_name
from querycraft.services.relational_adapter import SqlRelationalAdapter
from querycraft.services.store import InMemoryStore
from querycraft.utils.performance import log_execution_time

# Configure logging
logger = logging.getLogger(__name__)


class SourceService:
    """
    Registers data sources and keeps their cached schema and stats current.

    All methods block on database I/O; the HTTP layer runs them in a worker thread.
    """

    def __init__(
        self,
        store: InMemoryStore,
        settings: Optional[EngineSettings] = None,
        document_adapter: Optional[MongoDocumentAdapter] = None,
        relational_adapter: Optional[SqlRelationalAdapter] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.document_adapter = document_adapter or MongoDocumentAdapter(self.settings)
        self.relational_adapter = relational_adapter or SqlRelationalAdapter(self.settings)

    @staticmethod
    def _build_record(owner_id: str, payload: DataSourceCreate) -> DataSourceRecord:
        record = DataSourceRecord(owner_id=owner_id, **payload.model_dump())
        # Validates the type before anything connects
        kind = record.backend_kind
        if kind == BackendKind.DOCUMENT and not record.database_name:
            database_name = extract_database_name(record.connection_uri)
            if database_name:
                logger.info(f"Extracted database name from URI: {database_name}")
                record = record.model_copy(update={"database_name": database_name})
        return record

    def _ping(self, source: DataSourceRecord) -> None:
        try:
            if source.backend_kind == BackendKind.DOCUMENT:
                self.document_adapter.ping(source)
            else:
                self.relational_adapter.ping(source)
        except QueryCraftError:
            raise
        except Exception as e:
            logger.error(f"Connection test failed for {source.name}: {str(e)}")
            raise ConnectionTestError(f"Connection failed: {str(e)}") from e

    def fetch_document_schema(self, source: DataSourceRecord) -> InferenceOutcome:
        """
        Sample a document store and infer its schema.

        Sampling problems do not fail registration: the outcome comes back
        degraded with an empty schema and the error that caused it.
        """
        try:
            return InferenceOutcome(db_schema=self.document_adapter.infer_schema(source))
        except Exception as e:
            logger.warning(f"Error fetching MongoDB schema: {str(e)}", extra={"source_id": source.id})
            return InferenceOutcome(db_schema=SchemaDescriptor(), degraded=True, error=str(e))

    def _fetch_schema(self, source: DataSourceRecord) -> SchemaDescriptor:
        if source.backend_kind == BackendKind.DOCUMENT:
            return self.fetch_document_schema(source).db_schema
        try:
            return self.relational_adapter.introspect_schema(source)
        except Exception as e:
            logger.error(f"Error fetching SQL schema: {str(e)}", extra={"source_id": source.id})
            raise ConnectionTestError(f"Failed to read schema: {str(e)}") from e

    def _fetch_stats(self, source: DataSourceRecord) -> SourceStats:
        try:
            if source.backend_kind == BackendKind.DOCUMENT:
                return self.document_adapter.fetch_stats(source)
            return self.relational_adapter.fetch_stats(source)
        except Exception as e:
            logger.warning(f"Error getting database stats: {str(e)}", extra={"source_id": source.id})
            return SourceStats()

    @log_execution_time
    def register(self, owner_id: str, payload: DataSourceCreate) -> DataSourceRecord:
        """
        Connect to a new data source and store it with its schema and stats.

        Args:
            owner_id: The user registering the source
            payload: Connection details

        Returns:
            The stored DataSourceRecord

        Raises:
            UnsupportedBackendError: If the source type is unknown
            ConnectionTestError: If the source cannot be reached
        """
        source = self._build_record(owner_id, payload)
        self._ping(source)

        schema = self._fetch_schema(source)
        stats = self._fetch_stats(source)
        source = source.model_copy(update={
            "db_schema": schema,
            "stats": stats,
            "last_connected": datetime.now(),
        })

        logger.info(
            f"Registered {source.type} source {source.name} with {len(schema.tables)} tables",
            extra={"source_id": source.id, "table_count": len(schema.tables)}
        )
        return self.store.save_source(source)

    def test_connection(self, payload: DataSourceCreate) -> bool:
        source = self._build_record("", payload)
        self._ping(source)
        logger.info(f"Connection test succeeded for {source.name}")
        return True

    def get_source(self, owner_id: str, source_id: str) -> DataSourceRecord:
        source = self.store.get_source(source_id, owner_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        return source

    def list_sources(self, owner_id: str) -> List[DataSourceRecord]:
        return self.store.list_sources(owner_id)

    @log_execution_time
    def refresh(self, owner_id: str, source_id: str) -> Tuple[SchemaDescriptor, SourceStats]:
        """Re-read a source's schema and stats, replacing the cached copies wholesale"""
        source = self.get_source(owner_id, source_id)

        schema = self._fetch_schema(source)
        stats = self._fetch_stats(source)
        self.store.update_source(source.id, db_schema=schema, stats=stats, last_connected=datetime.now())

        logger.info(f"Refreshed schema for {source.name}", extra={"source_id": source.id})
        return schema, stats
