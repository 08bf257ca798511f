from fastapi import APIRouter, Depends, HTTPException, Header, Query
from typing import List, Dict, Any, Optional
from functools import lru_cache
import asyncio
import logging
import math

from querycraft.core.exceptions import (
    QueryCraftError,
    QueryNotFoundError,
    SourceNotFoundError,
)
from querycraft.models.models import (
    DataSourceCreate,
    DataSourceRecord,
    GenerateRequest,
    GenerationResult,
    QueryCreate,
    QueryRecord,
    RefreshResponse,
)
from querycraft.services.completion import VertexCompletionProvider
from querycraft.services.execution_dispatcher import ExecutionDispatcher
from querycraft.services.query_compiler import QueryCompiler
from querycraft.services.query_service import QueryService
from querycraft.services.source_service import SourceService
from querycraft.services.store import InMemoryStore
from querycraft.utils.performance import async_log_execution_time

# Configure logging
logger = logging.getLogger(__name__)

router = APIRouter()


# Service providers, overridable through app.dependency_overrides

@lru_cache
def get_store() -> InMemoryStore:
    return InMemoryStore()


@lru_cache
def get_compiler() -> QueryCompiler:
    return QueryCompiler(VertexCompletionProvider())


def get_source_service(store: InMemoryStore = Depends(get_store)) -> SourceService:
    return SourceService(store)


def get_query_service(
    store: InMemoryStore = Depends(get_store),
    compiler: QueryCompiler = Depends(get_compiler),
) -> QueryService:
    return QueryService(store, compiler, ExecutionDispatcher())


def get_owner_id(x_owner_id: str = Header(..., description="Id of the user making the request")) -> str:
    return x_owner_id


def raise_http_error(e: QueryCraftError):
    """Map pipeline errors to HTTP errors, keeping the backend message"""
    if isinstance(e, (SourceNotFoundError, QueryNotFoundError)):
        raise HTTPException(status_code=404, detail=str(e)) from e
    raise HTTPException(status_code=400, detail=str(e)) from e


def source_view(source: DataSourceRecord) -> Dict[str, Any]:
    """Public representation of a data source; the password never leaves the server"""
    return source.model_dump(by_alias=True, exclude={"password"}, mode="json")


# Data sources

@router.post("/sources", response_model=Dict[str, Any])
@async_log_execution_time
async def create_source(
    payload: DataSourceCreate,
    owner_id: str = Depends(get_owner_id),
    sources: SourceService = Depends(get_source_service),
):
    """Register a data source, reading its schema and stats"""
    logger.info(f"Registering {payload.type} source: {payload.name}", extra={"source_type": payload.type})

    try:
        source = await asyncio.to_thread(sources.register, owner_id, payload)
        return source_view(source)
    except QueryCraftError as e:
        logger.error(f"Failed to register source {payload.name}: {str(e)}")
        raise_http_error(e)


@router.post("/sources/test-connection", response_model=Dict[str, Any])
@async_log_execution_time
async def test_source_connection(
    payload: DataSourceCreate,
    sources: SourceService = Depends(get_source_service),
):
    """Check that a data source is reachable without storing it"""
    logger.info(f"Testing connection to {payload.type} source: {payload.name}")

    try:
        await asyncio.to_thread(sources.test_connection, payload)
        return {"success": True, "message": "Connection successful"}
    except QueryCraftError as e:
        raise_http_error(e)


@router.get("/sources", response_model=List[Dict[str, Any]])
async def list_sources(
    owner_id: str = Depends(get_owner_id),
    sources: SourceService = Depends(get_source_service),
):
    """List the caller's data sources"""
    return [source_view(source) for source in sources.list_sources(owner_id)]


@router.get("/sources/{source_id}", response_model=Dict[str, Any])
async def get_source(
    source_id: str,
    owner_id: str = Depends(get_owner_id),
    sources: SourceService = Depends(get_source_service),
):
    """Get a data source with its cached schema"""
    try:
        return source_view(sources.get_source(owner_id, source_id))
    except QueryCraftError as e:
        raise_http_error(e)


@router.post("/sources/{source_id}/refresh", response_model=RefreshResponse)
@async_log_execution_time
async def refresh_source(
    source_id: str,
    owner_id: str = Depends(get_owner_id),
    sources: SourceService = Depends(get_source_service),
):
    """Re-read a data source's schema and stats"""
    logger.info(f"Refreshing schema for source: {source_id}", extra={"source_id": source_id})

    try:
        schema, stats = await asyncio.to_thread(sources.refresh, owner_id, source_id)
        return RefreshResponse(db_schema=schema, stats=stats)
    except QueryCraftError as e:
        raise_http_error(e)


# Query generation and execution

@router.post("/generate", response_model=GenerationResult)
@async_log_execution_time
async def generate_query(
    generate_request: GenerateRequest,
    compiler: QueryCompiler = Depends(get_compiler),
):
    """Generate query text for a schema and question without executing it"""
    logger.debug(f"Question: {generate_request.question}", extra={"question": generate_request.question})

    try:
        result = await compiler.compile_and_generate(
            generate_request.backend_kind,
            generate_request.db_schema,
            generate_request.question,
        )
        logger.info(f"Generated query with length {len(result.directive_text)}")
        return result
    except QueryCraftError as e:
        logger.error(f"Failed to generate query: {str(e)}")
        raise_http_error(e)


@router.post("/queries", response_model=QueryRecord)
@async_log_execution_time
async def create_query(
    query_create: QueryCreate,
    owner_id: str = Depends(get_owner_id),
    queries: QueryService = Depends(get_query_service),
):
    """Generate and run a query against a data source"""
    logger.info(f"Creating query for source: {query_create.source_id}", extra={"source_id": query_create.source_id})

    try:
        return await queries.create_query(owner_id, query_create.source_id, query_create.query, query_create.name)
    except QueryCraftError as e:
        raise_http_error(e)


@router.get("/queries", response_model=Dict[str, Any])
async def list_queries(
    owner_id: str = Depends(get_owner_id),
    source_id: Optional[str] = Query(None, description="Only queries against this data source"),
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(10, ge=1, le=100, description="Maximum number of queries per page"),
    queries: QueryService = Depends(get_query_service),
):
    """List the caller's queries, newest first"""
    items, total = queries.list_queries(owner_id, source_id=source_id, page=page, limit=limit)
    logger.info(f"Retrieved {len(items)} queries", extra={"total": total})
    return {
        "queries": [item.model_dump(mode="json") for item in items],
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit),
        },
    }


@router.get("/queries/{query_id}", response_model=QueryRecord)
async def get_query(
    query_id: str,
    owner_id: str = Depends(get_owner_id),
    queries: QueryService = Depends(get_query_service),
):
    try:
        return queries.get_query(owner_id, query_id)
    except QueryCraftError as e:
        raise_http_error(e)


@router.post("/queries/{query_id}/rerun", response_model=QueryRecord)
@async_log_execution_time
async def rerun_query(
    query_id: str,
    owner_id: str = Depends(get_owner_id),
    queries: QueryService = Depends(get_query_service),
):
    """Execute a stored query again"""
    logger.info(f"Rerunning query: {query_id}", extra={"query_id": query_id})

    try:
        return await queries.rerun_query(owner_id, query_id)
    except QueryCraftError as e:
        raise_http_error(e)


@router.delete("/queries/{query_id}", response_model=Dict[str, Any])
async def delete_query(
    query_id: str,
    owner_id: str = Depends(get_owner_id),
    queries: QueryService = Depends(get_query_service),
):
    try:
        queries.delete_query(owner_id, query_id)
        return {"success": True}
    except QueryCraftError as e:
        raise_http_error(e)
