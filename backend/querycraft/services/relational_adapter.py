import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import URL, Engine

from querycraft.core.config import EngineSettings, get_settings
from querycraft.models.models import (
    ColumnDescriptor,
    DataSourceRecord,
    RelationalDirective,
    SchemaDescriptor,
    SourceStats,
    TableDescriptor,
)
from querycraft.utils.formatting import format_size, to_jsonable
from querycraft.utils.performance import PerformanceTracker

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_DRIVERS = {
    "postgresql": "postgresql+psycopg2",
    "sqlite": "sqlite",
}


def build_url(source: DataSourceRecord) -> URL:
    """Build the SQLAlchemy URL for a relational data source"""
    drivername = source.driver or DEFAULT_DRIVERS.get(source.type.lower(), source.type)
    return URL.create(
        drivername=drivername,
        username=source.username or None,
        password=source.password or None,
        host=source.host or None,
        port=source.port or None,
        database=source.database_name or None,
    )


def build_connect_args(source: DataSourceRecord, url: URL) -> Dict[str, Any]:
    if source.ssl and url.get_backend_name() == "postgresql":
        return {"sslmode": "require"}
    return {}


class SqlRelationalAdapter:
    """
    Executes SQL statements through SQLAlchemy.

    Each call creates its own engine and disposes it before returning, so
    no connection pool outlives a call.
    """

    def __init__(self, settings: Optional[EngineSettings] = None, engine_factory: Callable[..., Engine] = create_engine):
        self.settings = settings or get_settings()
        self.engine_factory = engine_factory

    def _create_engine(self, source: DataSourceRecord) -> Engine:
        url = build_url(source)
        logger.info(f"Connecting to {url.get_backend_name()} database: {source.database_name}")
        return self.engine_factory(url, connect_args=build_connect_args(source, url))

    def execute(self, source: DataSourceRecord, directive: RelationalDirective) -> List[Dict[str, Any]]:
        """
        Execute a statement verbatim.

        Args:
            source: The data source record
            directive: The statement to run

        Returns:
            Result rows as JSON-safe dictionaries; empty for statements without rows
        """
        engine = self._create_engine(source)
        try:
            with engine.connect() as connection:
                logger.debug(f"Executing SQL query: {directive.statement_text}")
                with PerformanceTracker("sql_execute"):
                    result = connection.execution_options(no_parameters=True).exec_driver_sql(
                        directive.statement_text
                    )
                    if not result.returns_rows:
                        return []
                    rows = [to_jsonable(dict(row._mapping)) for row in result]
            if len(rows) > self.settings.max_rows:
                logger.warning(
                    f"SQL query returned {len(rows)} rows, above the {self.settings.max_rows} row limit",
                    extra={"row_count": len(rows), "max_rows": self.settings.max_rows}
                )
            return rows
        finally:
            engine.dispose()

    def ping(self, source: DataSourceRecord) -> None:
        engine = self._create_engine(source)
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        finally:
            engine.dispose()

    def introspect_schema(self, source: DataSourceRecord) -> SchemaDescriptor:
        """Read tables, columns, nullability and primary keys from the catalog"""
        engine = self._create_engine(source)
        try:
            inspector = inspect(engine)
            tables = []
            for table_name in sorted(inspector.get_table_names()):
                primary_keys = set(inspector.get_pk_constraint(table_name).get("constrained_columns") or [])
                columns = [
                    ColumnDescriptor(
                        name=column["name"],
                        type=str(column["type"]),
                        nullable=bool(column.get("nullable", True)),
                        primary_key=column["name"] in primary_keys,
                    )
                    for column in inspector.get_columns(table_name)
                ]
                tables.append(TableDescriptor(name=table_name, columns=columns))

            logger.info(f"Introspected {len(tables)} tables")
            return SchemaDescriptor(tables=tables)
        finally:
            engine.dispose()

    def fetch_stats(self, source: DataSourceRecord) -> SourceStats:
        engine = self._create_engine(source)
        try:
            table_count = len(inspect(engine).get_table_names())
            size = "Unknown"
            if engine.dialect.name == "postgresql":
                with engine.connect() as connection:
                    size_bytes = connection.execute(text("SELECT pg_database_size(current_database())")).scalar()
                size = format_size(size_bytes or 0)
            return SourceStats(table_count=table_count, size=size)
        finally:
            engine.dispose()
