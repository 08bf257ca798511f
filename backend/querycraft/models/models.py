import json
import uuid
from datetime import datetime
from enum import Enum
from typing import List, Dict, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from querycraft.core.exceptions import UnsupportedBackendError


class ColumnType(str, Enum):
    """Type tags assigned to fields sampled from a schemaless store"""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    NULL = "null"
    OBJECT = "object"
    ARRAY = "array"
    UNKNOWN = "unknown"


# Native identity type reported for document store keys
OBJECT_ID_TYPE = "ObjectID"

STRUCTURED_TYPES = {ColumnType.OBJECT.value, ColumnType.ARRAY.value}


class ColumnDescriptor(BaseModel):
    """A column of a relational table or a field of a document collection"""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    type: str
    nullable: bool = False
    primary_key: bool = Field(default=False, alias="primaryKey")
    nested: List["ColumnDescriptor"] = Field(default_factory=list, alias="fields")
    path: Optional[str] = None

    @model_validator(mode="after")
    def check_nested_shape(self) -> "ColumnDescriptor":
        if self.nested and self.type not in STRUCTURED_TYPES:
            raise ValueError(f"Column '{self.name}' of type {self.type} cannot carry nested fields")
        return self


ColumnDescriptor.model_rebuild()


class TableDescriptor(BaseModel):
    """Schema information for a table or collection"""
    name: str
    columns: List[ColumnDescriptor] = Field(default_factory=list)


class SchemaDescriptor(BaseModel):
    """Ordered set of tables known for a data source"""
    tables: List[TableDescriptor] = Field(default_factory=list)

    @field_validator("tables")
    @classmethod
    def table_names_unique(cls, tables: List[TableDescriptor]) -> List[TableDescriptor]:
        seen = set()
        for table in tables:
            if table.name in seen:
                raise ValueError(f"Duplicate table name: {table.name}")
            seen.add(table.name)
        return tables

    def table(self, name: str) -> Optional[TableDescriptor]:
        for table in self.tables:
            if table.name == name:
                return table
        return None


class SourceStats(BaseModel):
    """Size figures stored alongside a data source's schema"""
    table_count: int = 0
    size: str = "Unknown"


class BackendKind(str, Enum):
    DOCUMENT = "document"
    RELATIONAL = "relational"


BACKEND_ALIASES = {
    "document": BackendKind.DOCUMENT,
    "mongodb": BackendKind.DOCUMENT,
    "relational": BackendKind.RELATIONAL,
    "postgresql": BackendKind.RELATIONAL,
    "sqlite": BackendKind.RELATIONAL,
}


def resolve_backend_kind(value) -> BackendKind:
    """Map a backend kind or a data source type to its BackendKind"""
    if isinstance(value, BackendKind):
        return value
    kind = BACKEND_ALIASES.get(str(value).lower()) if value is not None else None
    if kind is None:
        raise UnsupportedBackendError(value)
    return kind


class DataSourceRecord(BaseModel):
    """A connected data source together with its cached schema"""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    owner_id: str
    name: str
    type: str  # mongodb, postgresql or sqlite
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    database_name: Optional[str] = None
    ssl: bool = False
    connection_uri: Optional[str] = None
    driver: Optional[str] = None  # SQLAlchemy driver name override
    db_schema: Optional[SchemaDescriptor] = Field(default=None, alias="schema")
    stats: Optional[SourceStats] = None
    last_connected: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    model_config = ConfigDict(populate_by_name=True)

    @property
    def backend_kind(self) -> BackendKind:
        return resolve_backend_kind(self.type)


class GenerationRequest(BaseModel):
    """Input of a single compilation, discarded afterwards"""
    model_config = ConfigDict(frozen=True)

    backend_kind: BackendKind
    db_schema: SchemaDescriptor
    natural_language_text: str


class CompiledPrompt(BaseModel):
    """The instruction pair sent to the completion provider"""
    model_config = ConfigDict(frozen=True)

    system_instruction: Optional[str] = None
    user_instruction: str

    @property
    def instruction_text(self) -> str:
        if self.system_instruction:
            return f"{self.system_instruction}\n\n{self.user_instruction}"
        return self.user_instruction


class TranscriptEntry(BaseModel):
    phase: str
    role: str
    content: str


class GenerationResult(BaseModel):
    """Directive source text plus the exact instructions that produced it"""
    directive_text: str
    instruction_text: str
    matched_table: Optional[str] = None
    focused: bool = False
    transcript: List[TranscriptEntry] = Field(default_factory=list)


class OperationKind(str, Enum):
    FIND = "find"
    AGGREGATE = "aggregate"


class DocumentDirective(BaseModel):
    """Parsed form of a generated document store query"""
    collection_name: Optional[str] = None
    operation_kind: Optional[str] = None
    payload: Optional[Any] = None
    raw_body: str = ""
    error: Optional[str] = None

    @property
    def problem(self) -> Optional[str]:
        """Why the directive cannot be executed, or None when it can"""
        if not self.collection_name:
            return "Collection name not specified in the query"
        if not self.operation_kind:
            return "Operation type not specified in the query"
        if self.operation_kind not in (OperationKind.FIND.value, OperationKind.AGGREGATE.value):
            return f"Unsupported operation type: {self.operation_kind}"
        if self.payload is None:
            return self.error or f"Invalid query JSON. Original query: {self.raw_body}"
        if self.operation_kind == OperationKind.FIND.value and not isinstance(self.payload, dict):
            return "A find query must be a JSON object"
        if self.operation_kind == OperationKind.AGGREGATE.value and not isinstance(self.payload, list):
            return "An aggregate query must be a JSON array of pipeline stages"
        return None

    @property
    def is_executable(self) -> bool:
        return self.problem is None

    def to_text(self) -> str:
        lines = []
        if self.collection_name:
            lines.append(f"// Collection: {self.collection_name}")
        if self.operation_kind:
            lines.append(f"// Operation: {self.operation_kind}")
        if self.payload is not None:
            lines.append(json.dumps(self.payload, separators=(",", ":"), ensure_ascii=False))
        else:
            lines.append(self.raw_body)
        return "\n".join(lines)


class RelationalDirective(BaseModel):
    """Parsed form of a generated SQL statement"""
    statement_text: str


class ExecutionResult(BaseModel):
    """Normalized rows returned by a backend"""
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0
    execution_time_ms: float = 0.0


class ExecutionState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionOutcome(BaseModel):
    """Terminal state of one execution attempt"""
    state: ExecutionState
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == ExecutionState.COMPLETED


class InferenceOutcome(BaseModel):
    """Schema produced by inference, flagged when sampling had to give up"""
    db_schema: SchemaDescriptor = Field(default_factory=SchemaDescriptor)
    degraded: bool = False
    error: Optional[str] = None


class QueryStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class QueryRecord(BaseModel):
    """A natural-language query and the outcome of running it"""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    owner_id: str
    source_id: str
    name: str = ""
    natural_query: str
    generated_query: Optional[str] = None
    prompt: Optional[str] = None
    status: QueryStatus = QueryStatus.PENDING
    results: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None
    execution_time: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


# API request and response bodies

class DataSourceCreate(BaseModel):
    """Request to register a data source"""
    name: str
    type: str
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    database_name: Optional[str] = None
    ssl: bool = False
    connection_uri: Optional[str] = None
    driver: Optional[str] = None


class GenerateRequest(BaseModel):
    """Request to compile a natural-language question without executing it"""
    backend_kind: str
    db_schema: SchemaDescriptor = Field(alias="schema")
    question: str

    model_config = ConfigDict(populate_by_name=True)


class QueryCreate(BaseModel):
    """Request to generate and run a query against a data source"""
    source_id: str
    query: str
    name: Optional[str] = None


class RefreshResponse(BaseModel):
    db_schema: SchemaDescriptor = Field(alias="schema")
    stats: SourceStats

    model_config = ConfigDict(populate_by_name=True)
