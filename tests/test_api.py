import asyncio
import logging

import pytest
from httpx import AsyncClient
from starlette.requests import Request
from starlette.responses import Response

from querycraft.core.logging_config import install_request_id_factory
from querycraft.main import RequestIDMiddleware


def current_request_id():
    record = logging.getLogRecordFactory()("querycraft.api", logging.INFO, __file__, 1, "tick", None, None)
    return getattr(record, "request_id", None)


def make_request(request_id):
    return Request({
        "type": "http",
        "method": "GET",
        "path": "/",
        "query_string": b"",
        "headers": [(b"x-request-id", request_id.encode())],
    })


@pytest.mark.asyncio
async def test_root(client: AsyncClient):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_request_id_is_echoed(client: AsyncClient):
    response = await client.get("/", headers={"X-Request-ID": "req-42"})
    assert response.headers["X-Request-ID"] == "req-42"


@pytest.mark.asyncio
async def test_overlapping_requests_keep_their_own_request_id():
    """Log records carry the id of their own request and nothing leaks afterwards"""
    install_request_id_factory()
    middleware = RequestIDMiddleware(app=None)
    a_finished, b_started = asyncio.Event(), asyncio.Event()
    seen = {}

    async def handle_a(request):
        await b_started.wait()
        seen["A"] = current_request_id()
        return Response()

    async def handle_b(request):
        b_started.set()
        await a_finished.wait()
        seen["B"] = current_request_id()
        return Response()

    async def run_a():
        response = await middleware.dispatch(make_request("req-A"), handle_a)
        a_finished.set()
        return response

    response_a, response_b = await asyncio.gather(run_a(), middleware.dispatch(make_request("req-B"), handle_b))

    assert seen == {"A": "req-A", "B": "req-B"}
    assert response_a.headers["X-Request-ID"] == "req-A"
    assert response_b.headers["X-Request-ID"] == "req-B"
    assert current_request_id() is None


@pytest.mark.asyncio
async def test_register_and_get_source(client: AsyncClient, owner_headers, sqlite_path):
    payload = {"name": "Warehouse", "type": "sqlite", "database_name": str(sqlite_path), "password": "hidden"}
    response = await client.post("/api/sources", json=payload, headers=owner_headers)

    assert response.status_code == 200
    data = response.json()
    assert "password" not in data
    assert data["schema"]["tables"][0]["name"] == "users"

    response = await client.get(f"/api/sources/{data['id']}", headers=owner_headers)
    assert response.status_code == 200
    assert response.json()["name"] == "Warehouse"

    response = await client.get("/api/sources", headers=owner_headers)
    assert [source["id"] for source in response.json()] == [data["id"]]


@pytest.mark.asyncio
async def test_source_of_other_owner_is_404(client: AsyncClient, store, sqlite_source):
    store.save_source(sqlite_source)

    response = await client.get(f"/api/sources/{sqlite_source.id}", headers={"X-Owner-Id": "someone-else"})

    assert response.status_code == 404
    assert response.json()["detail"] == "Database not found"


@pytest.mark.asyncio
async def test_owner_header_required(client: AsyncClient):
    response = await client.get("/api/sources")
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_connection_failure_is_400(client: AsyncClient, tmp_path):
    payload = {"name": "Broken", "type": "sqlite", "database_name": str(tmp_path / "missing" / "db.sqlite")}

    response = await client.post("/api/sources/test-connection", json=payload)

    assert response.status_code == 400
    assert response.json()["detail"].startswith("Connection failed")


@pytest.mark.asyncio
async def test_refresh_source(client: AsyncClient, owner_headers, store, sqlite_source):
    store.save_source(sqlite_source)

    response = await client.post(f"/api/sources/{sqlite_source.id}/refresh", headers=owner_headers)

    assert response.status_code == 200
    assert response.json()["stats"]["table_count"] == 1


@pytest.mark.asyncio
async def test_generate_unsupported_backend(client: AsyncClient, completion):
    payload = {"backend_kind": "cassandra", "schema": {"tables": []}, "question": "anything"}

    response = await client.post("/api/generate", json=payload)

    assert response.status_code == 400
    assert response.json()["detail"] == "Unsupported database type: cassandra"
    assert completion.calls == []


@pytest.mark.asyncio
async def test_generate(client: AsyncClient, completion):
    completion.responses.append("SELECT COUNT(*) FROM users")
    payload = {
        "backend_kind": "postgresql",
        "schema": {"tables": [{"name": "users", "columns": [{"name": "id", "type": "INTEGER", "primaryKey": True}]}]},
        "question": "how many users",
    }

    response = await client.post("/api/generate", json=payload)

    assert response.status_code == 200
    assert response.json()["directive_text"] == "SELECT COUNT(*) FROM users"


@pytest.mark.asyncio
async def test_query_lifecycle(client: AsyncClient, owner_headers, completion, store, sqlite_source):
    store.save_source(sqlite_source)
    completion.responses.extend(["SELECT COUNT(*) AS total FROM users", "User count"])

    response = await client.post(
        "/api/queries", json={"source_id": sqlite_source.id, "query": "how many users"}, headers=owner_headers
    )
    assert response.status_code == 200
    query = response.json()
    assert query["status"] == "completed"
    assert query["results"] == [{"total": 3}]
    assert query["name"] == "User count"

    response = await client.get("/api/queries", headers=owner_headers)
    assert response.json()["pagination"] == {"total": 1, "page": 1, "limit": 10, "pages": 1}

    response = await client.post(f"/api/queries/{query['id']}/rerun", headers=owner_headers)
    assert response.status_code == 200

    response = await client.delete(f"/api/queries/{query['id']}", headers=owner_headers)
    assert response.json() == {"success": True}

    response = await client.get(f"/api/queries/{query['id']}", headers=owner_headers)
    assert response.status_code == 404
    assert response.json()["detail"] == "Query not found"


@pytest.mark.asyncio
async def test_failed_query_is_400(client: AsyncClient, owner_headers, completion, store, sqlite_source):
    store.save_source(sqlite_source)
    completion.responses.append("SELECT * FROM missing_table")

    response = await client.post(
        "/api/queries", json={"source_id": sqlite_source.id, "query": "missing"}, headers=owner_headers
    )

    assert response.status_code == 400
    assert "missing_table" in response.json()["detail"]
