import os
from pathlib import Path
from functools import lru_cache
from typing import Optional
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

# Load .env file if it exists
env_path = Path(__file__).parent.parent.parent.parent / '.env'
if env_path.exists():
    load_dotenv(dotenv_path=env_path)

# Vertex AI configuration (completion provider)
GOOGLE_CLOUD_PROJECT = os.getenv("GOOGLE_CLOUD_PROJECT")
GOOGLE_CLOUD_REGION = os.getenv("GOOGLE_CLOUD_REGION", "us-central1")
VERTEX_AI_MODEL = os.getenv("VERTEX_AI_MODEL", "gemini-1.5-pro")
VERTEX_AI_MAX_OUTPUT_TOKENS = int(os.getenv("VERTEX_AI_MAX_OUTPUT_TOKENS", "1024"))
VERTEX_AI_TEMPERATURE = float(os.getenv("VERTEX_AI_TEMPERATURE", "0.2"))

# Query pipeline configuration
DEFAULT_MAX_ROWS = int(os.getenv("DEFAULT_MAX_ROWS", "100"))
SCHEMA_SAMPLE_LIMIT = int(os.getenv("SCHEMA_SAMPLE_LIMIT", "100"))
MAX_SCHEMA_DEPTH = int(os.getenv("MAX_SCHEMA_DEPTH", "20"))
DOCUMENT_ID_FIELD = os.getenv("DOCUMENT_ID_FIELD", "_id")
SQL_DIALECT = os.getenv("SQL_DIALECT", "PostgreSQL")
MONGO_SERVER_SELECTION_TIMEOUT_MS = int(os.getenv("MONGO_SERVER_SELECTION_TIMEOUT_MS", "10000"))
RETAIN_FAILED_QUERIES = os.getenv("RETAIN_FAILED_QUERIES", "true").lower() == "true"

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "standard")  # standard, detailed, json
LOG_TO_FILE = os.getenv("LOG_TO_FILE", "false").lower() == "true"
LOG_DIR = os.getenv("LOG_DIR", str(Path(__file__).parent.parent.parent.parent / 'logs'))
LOG_FILE_MAX_SIZE = int(os.getenv("LOG_FILE_MAX_SIZE", "10485760"))  # 10MB
LOG_FILE_BACKUP_COUNT = int(os.getenv("LOG_FILE_BACKUP_COUNT", "10"))
LOG_JSON_ENABLED = os.getenv("LOG_JSON_ENABLED", "true").lower() == "true"

# Application configuration
APP_NAME = "QueryCraft"
APP_VERSION = "1.0.0"
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# API configuration
API_PREFIX = "/api"
CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",")]


class EngineSettings(BaseModel):
    """Immutable settings injected into the compiler, dispatcher and services"""
    model_config = ConfigDict(frozen=True)

    vertex_project: Optional[str] = GOOGLE_CLOUD_PROJECT
    vertex_region: str = GOOGLE_CLOUD_REGION
    vertex_model: str = VERTEX_AI_MODEL
    max_output_tokens: int = VERTEX_AI_MAX_OUTPUT_TOKENS
    temperature: float = VERTEX_AI_TEMPERATURE

    max_rows: int = DEFAULT_MAX_ROWS
    sample_limit: int = SCHEMA_SAMPLE_LIMIT
    max_schema_depth: int = MAX_SCHEMA_DEPTH
    document_id_field: str = DOCUMENT_ID_FIELD
    sql_dialect: str = SQL_DIALECT
    mongo_server_selection_timeout_ms: int = MONGO_SERVER_SELECTION_TIMEOUT_MS
    retain_failed_queries: bool = RETAIN_FAILED_QUERIES


@lru_cache
def get_settings() -> EngineSettings:
    """Build the settings once from the environment-derived constants"""
    return EngineSettings()
