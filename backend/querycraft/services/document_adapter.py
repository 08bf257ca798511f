import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote_plus, urlencode, urlsplit

from pymongo import MongoClient

from querycraft.core.config import EngineSettings, get_settings
from querycraft.models.models import (
    DataSourceRecord,
    DocumentDirective,
    OperationKind,
    SchemaDescriptor,
    SourceStats,
)
from querycraft.services.schema_inference import infer_schema, is_system_collection
from querycraft.utils.formatting import format_size, to_jsonable
from querycraft.utils.performance import PerformanceTracker

# Configure logging
logger = logging.getLogger(__name__)

MONGODB_SCHEMES = ("mongodb://", "mongodb+srv://")


def extract_database_name(uri: Optional[str]) -> Optional[str]:
    """
    Get the database name from the path segment of a MongoDB connection string.

    Args:
        uri: mongodb:// or mongodb+srv:// connection string

    Returns:
        The database name, or None when the URI carries none
    """
    if not uri or not uri.startswith(MONGODB_SCHEMES):
        return None
    try:
        path = urlsplit(uri).path
    except ValueError as e:
        logger.warning(f"Failed to extract database name from URI: {str(e)}")
        return None
    name = path.lstrip("/").strip()
    return name or None


def build_connection_string(source: DataSourceRecord) -> str:
    """Use the source's URI, or assemble one from its host and credential fields"""
    if source.connection_uri:
        return source.connection_uri

    credentials = ""
    if source.username:
        credentials = quote_plus(source.username)
        if source.password:
            credentials += f":{quote_plus(source.password)}"
        credentials += "@"

    options: Dict[str, str] = {}
    if source.ssl:
        options["ssl"] = "true"
    options["retryWrites"] = "true"
    options["w"] = "majority"

    return f"mongodb+srv://{credentials}{source.host}/{source.database_name or ''}?{urlencode(options)}"


def resolve_database_name(source: DataSourceRecord) -> str:
    """Explicit database name first, then the connection string's path segment"""
    name = (source.database_name or "").strip() or extract_database_name(source.connection_uri)
    if not name:
        raise ValueError("Database name could not be determined")
    return name


def apply_pipeline_limit(pipeline: List[Dict[str, Any]], max_rows: int) -> List[Dict[str, Any]]:
    """Append a $limit stage unless the pipeline already bounds its output"""
    if any(isinstance(stage, dict) and "$limit" in stage for stage in pipeline):
        return pipeline
    return list(pipeline) + [{"$limit": max_rows}]


class MongoDocumentAdapter:
    """
    Executes directives against MongoDB.

    Every call opens its own client and closes it before returning, on
    success and on failure.
    """

    def __init__(self, settings: Optional[EngineSettings] = None, client_factory: Callable[..., Any] = MongoClient):
        self.settings = settings or get_settings()
        self.client_factory = client_factory

    def _connect(self, source: DataSourceRecord):
        logger.info(f"Connecting to MongoDB database: {source.name}")
        return self.client_factory(
            build_connection_string(source),
            serverSelectionTimeoutMS=self.settings.mongo_server_selection_timeout_ms,
        )

    def execute(self, source: DataSourceRecord, directive: DocumentDirective) -> List[Dict[str, Any]]:
        """
        Run a find or aggregate directive.

        Args:
            source: The data source record
            directive: An executable document directive

        Returns:
            JSON-safe documents, at most max_rows for find
        """
        db_name = resolve_database_name(source)
        client = self._connect(source)
        try:
            collection = client[db_name][directive.collection_name]

            with PerformanceTracker(f"mongodb_{directive.operation_kind}"):
                if directive.operation_kind == OperationKind.FIND.value:
                    cursor = collection.find(directive.payload).limit(self.settings.max_rows)
                elif directive.operation_kind == OperationKind.AGGREGATE.value:
                    pipeline = apply_pipeline_limit(directive.payload, self.settings.max_rows)
                    cursor = collection.aggregate(pipeline)
                else:
                    raise ValueError(f"Unsupported operation type: {directive.operation_kind}")

                documents = [to_jsonable(document) for document in cursor]

            logger.debug(f"MongoDB {directive.operation_kind} on {directive.collection_name} returned {len(documents)} documents")
            return documents
        finally:
            client.close()

    def ping(self, source: DataSourceRecord) -> None:
        client = self._connect(source)
        try:
            client[resolve_database_name(source)].command("ping")
        finally:
            client.close()

    def infer_schema(self, source: DataSourceRecord) -> SchemaDescriptor:
        db_name = resolve_database_name(source)
        client = self._connect(source)
        try:
            return infer_schema(
                client[db_name],
                sample_limit=self.settings.sample_limit,
                id_field=self.settings.document_id_field,
                max_depth=self.settings.max_schema_depth,
            )
        finally:
            client.close()

    def fetch_stats(self, source: DataSourceRecord) -> SourceStats:
        db_name = resolve_database_name(source)
        client = self._connect(source)
        try:
            database = client[db_name]
            collection_count = sum(
                1 for name in database.list_collection_names() if not is_system_collection(name)
            )
            stats = database.command("dbstats")
            return SourceStats(table_count=collection_count, size=format_size(stats.get("dataSize") or 0))
        finally:
            client.close()
