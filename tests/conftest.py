import pytest
import pytest_asyncio
import mongomock
from httpx import AsyncClient, ASGITransport
from sqlalchemy import create_engine, text

from querycraft.core.config import EngineSettings
from querycraft.main import app
from querycraft.api.routes import get_compiler, get_query_service, get_source_service, get_store
from querycraft.models.models import (
    ColumnDescriptor,
    DataSourceRecord,
    SchemaDescriptor,
    TableDescriptor,
)
from querycraft.services.document_adapter import MongoDocumentAdapter
from querycraft.services.execution_dispatcher import ExecutionDispatcher
from querycraft.services.query_compiler import QueryCompiler
from querycraft.services.query_service import QueryService
from querycraft.services.relational_adapter import SqlRelationalAdapter
from querycraft.services.source_service import SourceService
from querycraft.services.store import InMemoryStore

OWNER_ID = "user-1"


class StubCompletion:
    """Completion provider that replays canned responses and records every call"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    async def __call__(self, system_instruction, user_instruction):
        self.calls.append((system_instruction, user_instruction))
        if not self.responses:
            raise RuntimeError("No canned response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class TrackingClient:
    """Wraps a shared mongomock client so that close() can be observed"""

    def __init__(self, client):
        self._client = client
        self.closed = False

    def __getitem__(self, name):
        return self._client[name]

    def close(self):
        self.closed = True


class MongoClientFactory:
    def __init__(self):
        self.client = mongomock.MongoClient()
        self.opened = []
        self.calls = []

    def __call__(self, uri, **kwargs):
        self.calls.append((uri, kwargs))
        tracking = TrackingClient(self.client)
        self.opened.append(tracking)
        return tracking


# Settings

@pytest.fixture
def settings():
    return EngineSettings(retain_failed_queries=True)


@pytest.fixture
def stub_completion():
    return StubCompletion


# Document store

@pytest.fixture
def mongo_factory():
    return MongoClientFactory()


@pytest.fixture
def mongo_db(mongo_factory):
    return mongo_factory.client["shop"]


@pytest.fixture
def document_adapter(settings, mongo_factory):
    return MongoDocumentAdapter(settings, client_factory=mongo_factory)


@pytest.fixture
def document_source(mongo_db):
    mongo_db.orders.insert_many([
        {"status": "shipped", "total": 120.5, "customer": {"name": "Ada", "city": "London"}},
        {"status": "pending", "total": 80, "customer": {"name": "Grace", "city": "New York"}},
        {"status": "shipped", "total": 42, "customer": {"name": "Linus", "city": "Helsinki"}},
    ])
    return DataSourceRecord(
        owner_id=OWNER_ID,
        name="Shop",
        type="mongodb",
        connection_uri="mongodb://localhost:27017/shop",
        schema=SchemaDescriptor(tables=[
            TableDescriptor(name="orders", columns=[
                ColumnDescriptor(name="_id", type="ObjectID", primary_key=True),
                ColumnDescriptor(name="status", type="string", nullable=True),
                ColumnDescriptor(name="total", type="number", nullable=True),
            ]),
        ]),
    )


# Relational store

@pytest.fixture
def sqlite_path(tmp_path):
    path = tmp_path / "warehouse.db"
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as connection:
        connection.execute(text(
            "CREATE TABLE users (id INTEGER NOT NULL PRIMARY KEY, name TEXT NOT NULL, email VARCHAR(100))"
        ))
        connection.execute(text(
            "INSERT INTO users (id, name, email) VALUES "
            "(1, 'Ada', 'ada@example.com'), (2, 'Grace', NULL), (3, 'Linus', 'linus@example.com')"
        ))
    engine.dispose()
    return path


@pytest.fixture
def sqlite_source(sqlite_path):
    return DataSourceRecord(
        owner_id=OWNER_ID,
        name="Warehouse",
        type="sqlite",
        database_name=str(sqlite_path),
        schema=SchemaDescriptor(tables=[
            TableDescriptor(name="users", columns=[
                ColumnDescriptor(name="id", type="INTEGER", primary_key=True),
                ColumnDescriptor(name="name", type="TEXT"),
                ColumnDescriptor(name="email", type="VARCHAR(100)", nullable=True),
            ]),
        ]),
    )


@pytest.fixture
def relational_adapter(settings):
    return SqlRelationalAdapter(settings)


@pytest.fixture
def dispatcher(settings, document_adapter, relational_adapter):
    return ExecutionDispatcher(settings, document_adapter, relational_adapter)


# Services

@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def source_service(store, settings, document_adapter, relational_adapter):
    return SourceService(store, settings, document_adapter, relational_adapter)


@pytest.fixture
def make_query_service(store, settings, dispatcher):
    def factory(completion, retain_failed_queries=True):
        service_settings = settings.model_copy(update={"retain_failed_queries": retain_failed_queries})
        return QueryService(store, QueryCompiler(completion, service_settings), dispatcher, service_settings)
    return factory


# Client

@pytest.fixture
def completion():
    return StubCompletion()


@pytest_asyncio.fixture(scope="function")
async def client(store, settings, completion, source_service, dispatcher):
    compiler = QueryCompiler(completion, settings)

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_compiler] = lambda: compiler
    app.dependency_overrides[get_source_service] = lambda: source_service
    app.dependency_overrides[get_query_service] = lambda: QueryService(store, compiler, dispatcher, settings)

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def owner_headers():
    return {"X-Owner-Id": OWNER_ID}
