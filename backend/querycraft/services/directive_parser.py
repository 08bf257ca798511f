import re
import json
import logging
from typing import Union

from querycraft.models.models import (
    BackendKind,
    DocumentDirective,
    RelationalDirective,
    resolve_backend_kind,
)

# Configure logging
logger = logging.getLogger(__name__)

COMMENT_MARKER = "//"
COLLECTION_PATTERN = re.compile(r"^//\s*collection\s*:\s*(.*)$", re.IGNORECASE)
OPERATION_PATTERN = re.compile(r"^//\s*operation\s*:\s*(.*)$", re.IGNORECASE)
OPENING_FENCE_PATTERN = re.compile(r"^```[a-zA-Z]*[ \t]*\n?")
CLOSING_FENCE_PATTERN = re.compile(r"\n?```$")


def parse_document_directive(text: str) -> DocumentDirective:
    """
    Parse the provider's document-store output into a directive.

    Comment lines carry the collection name and operation kind. All other
    non-blank lines are joined, in order, into the JSON body. A body that
    does not parse is kept as raw text with ``error`` set, so the caller
    can report it at execution time.

    Args:
        text: Raw completion text

    Returns:
        DocumentDirective, possibly not executable
    """
    collection_name = None
    operation_kind = None
    body_parts = []

    for line in (text or "").splitlines():
        stripped = line.strip()
        if stripped.startswith(COMMENT_MARKER):
            collection_match = COLLECTION_PATTERN.match(stripped)
            operation_match = OPERATION_PATTERN.match(stripped)
            if collection_match:
                collection_name = collection_match.group(1).strip() or None
            elif operation_match:
                operation_kind = operation_match.group(1).strip().lower() or None
        elif stripped and not stripped.startswith("```"):
            body_parts.append(stripped)

    raw_body = "".join(body_parts).strip()

    if not raw_body:
        return DocumentDirective(
            collection_name=collection_name,
            operation_kind=operation_kind,
            raw_body=raw_body,
            error="Query JSON is empty",
        )

    try:
        payload = json.loads(raw_body)
    except json.JSONDecodeError as e:
        logger.debug(f"JSON parse error: {e}, retrying with collapsed whitespace")
        cleaned_body = re.sub(r"\s+", " ", raw_body).strip()
        try:
            payload = json.loads(cleaned_body)
        except json.JSONDecodeError:
            logger.warning(f"Could not parse generated query JSON: {e}")
            return DocumentDirective(
                collection_name=collection_name,
                operation_kind=operation_kind,
                raw_body=raw_body,
                error=f"Invalid query JSON: {e}. Original query: {raw_body}",
            )

    return DocumentDirective(
        collection_name=collection_name,
        operation_kind=operation_kind,
        payload=payload,
        raw_body=raw_body,
    )


def canonicalize_document_text(text: str) -> str:
    """
    Re-serialize the JSON body of a document directive onto a single line.

    The text is returned unchanged when the body cannot be parsed, so the
    diagnostic content reaches the user as generated.
    """
    directive = parse_document_directive(text)
    if directive.payload is None:
        return text
    return directive.to_text()


def clean_sql_query(sql: str) -> str:
    """
    Strip a markdown code fence wrapped around a SQL statement.

    Args:
        sql: The SQL statement as generated

    Returns:
        The statement without fences; no other validation is done
    """
    if not sql:
        return sql

    sql = sql.strip()

    if sql.startswith("```"):
        sql = OPENING_FENCE_PATTERN.sub("", sql, count=1)
    if sql.endswith("```"):
        sql = CLOSING_FENCE_PATTERN.sub("", sql, count=1)

    return sql.strip()


def parse_relational_directive(text: str) -> RelationalDirective:
    return RelationalDirective(statement_text=clean_sql_query(text or ""))


def parse_directive(backend_kind, text: str) -> Union[DocumentDirective, RelationalDirective]:
    """Parse directive text according to the backend it targets"""
    kind = resolve_backend_kind(backend_kind)
    if kind == BackendKind.DOCUMENT:
        return parse_document_directive(text)
    return parse_relational_directive(text)
