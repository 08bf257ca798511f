import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from querycraft.models.models import DataSourceRecord, QueryRecord

logger = logging.getLogger(__name__)


class InMemoryStore:
    """
    Persisted-entity store for data sources and query records.

    Records are scoped by owner: lookups take both the record id and the
    owner id. Stored records are replaced on update, never modified in place.
    """

    def __init__(self):
        self._sources: Dict[str, DataSourceRecord] = {}
        self._queries: Dict[str, QueryRecord] = {}
        self._lock = threading.Lock()

    # Data sources

    def save_source(self, source: DataSourceRecord) -> DataSourceRecord:
        with self._lock:
            self._sources[source.id] = source
        return source

    def get_source(self, source_id: str, owner_id: str) -> Optional[DataSourceRecord]:
        with self._lock:
            source = self._sources.get(source_id)
        if source is None or source.owner_id != owner_id:
            return None
        return source

    def list_sources(self, owner_id: str) -> List[DataSourceRecord]:
        with self._lock:
            sources = list(self._sources.values())
        return [source for source in sources if source.owner_id == owner_id]

    def update_source(self, source_id: str, **fields) -> Optional[DataSourceRecord]:
        with self._lock:
            source = self._sources.get(source_id)
            if source is None:
                return None
            fields.setdefault("updated_at", datetime.now())
            updated = source.model_copy(update=fields)
            self._sources[source_id] = updated
        return updated

    # Query records

    def add_query(self, query: QueryRecord) -> QueryRecord:
        with self._lock:
            self._queries[query.id] = query
        return query

    def get_query(self, query_id: str, owner_id: str) -> Optional[QueryRecord]:
        with self._lock:
            query = self._queries.get(query_id)
        if query is None or query.owner_id != owner_id:
            return None
        return query

    def update_query(self, query_id: str, **fields) -> Optional[QueryRecord]:
        with self._lock:
            query = self._queries.get(query_id)
            if query is None:
                return None
            fields.setdefault("updated_at", datetime.now())
            updated = query.model_copy(update=fields)
            self._queries[query_id] = updated
        return updated

    def delete_query(self, query_id: str) -> bool:
        with self._lock:
            return self._queries.pop(query_id, None) is not None

    def list_queries(
        self,
        owner_id: str,
        source_id: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[QueryRecord], int]:
        """Newest first, paginated; returns the page and the total count"""
        with self._lock:
            snapshot = list(self._queries.values())
        queries = [
            query for query in snapshot
            if query.owner_id == owner_id and (source_id is None or query.source_id == source_id)
        ]
        queries.sort(key=lambda query: query.created_at, reverse=True)
        skip = (max(page, 1) - 1) * limit
        return queries[skip:skip + limit], len(queries)
