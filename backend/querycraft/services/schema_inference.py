"""
Schema inference for schemaless (document) data sources.

No authoritative schema exists for a document collection, so one is derived
by sampling records: each record is classified field by field, then the
per-record column lists are folded together with ``merge_columns``.

Data Flow:
    collection -> sample documents -> infer_one() per document -> merge_columns() fold -> TableDescriptor
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping

from bson import Decimal128, ObjectId

from querycraft.core.config import DOCUMENT_ID_FIELD, MAX_SCHEMA_DEPTH, SCHEMA_SAMPLE_LIMIT
from querycraft.models.models import (
    ColumnDescriptor,
    ColumnType,
    OBJECT_ID_TYPE,
    SchemaDescriptor,
    TableDescriptor,
)
from querycraft.utils.performance import PerformanceTracker

logger = logging.getLogger(__name__)

SYSTEM_COLLECTION_PREFIX = "system."


def classify_value(value: Any) -> str:
    """Map a runtime value from the document store to a column type tag"""
    if value is None:
        return ColumnType.NULL.value
    # bool is a subclass of int, check it first
    if isinstance(value, bool):
        return ColumnType.BOOLEAN.value
    if isinstance(value, (int, float, Decimal, Decimal128)):
        return ColumnType.NUMBER.value
    if isinstance(value, str):
        return ColumnType.STRING.value
    if isinstance(value, (datetime, date)):
        return ColumnType.DATE.value
    if isinstance(value, ObjectId):
        return OBJECT_ID_TYPE
    if isinstance(value, Mapping):
        return ColumnType.OBJECT.value
    if isinstance(value, (list, tuple)):
        return ColumnType.ARRAY.value
    return ColumnType.UNKNOWN.value


def infer_one(
    document: Mapping[str, Any],
    parent_path: str = "",
    depth: int = 0,
    id_field: str = DOCUMENT_ID_FIELD,
    max_depth: int = MAX_SCHEMA_DEPTH,
) -> List[ColumnDescriptor]:
    """
    Infer the columns of a single document.

    Args:
        document: The sampled record
        parent_path: Dotted path of the enclosing field, empty at the root
        depth: Current nesting depth
        id_field: Name of the store's identity field
        max_depth: Nesting depth beyond which fields are typed but not expanded

    Returns:
        Column descriptors in the document's field order
    """
    columns = []

    for key, value in document.items():
        path = f"{parent_path}.{key}" if parent_path else key

        if key == id_field:
            columns.append(ColumnDescriptor(
                name=key,
                type=OBJECT_ID_TYPE,
                nullable=False,
                primary_key=True,
                path=path,
            ))
            continue

        data_type = classify_value(value)
        nested: List[ColumnDescriptor] = []

        if depth + 1 < max_depth:
            if data_type == ColumnType.OBJECT.value:
                nested = infer_one(value, path, depth + 1, id_field, max_depth)
            elif data_type == ColumnType.ARRAY.value and value and isinstance(value[0], Mapping):
                # Arrays are assumed homogeneous: only the first element is sampled
                nested = infer_one(value[0], path, depth + 1, id_field, max_depth)
        else:
            logger.debug(f"Depth limit reached at '{path}', nested fields not expanded")

        columns.append(ColumnDescriptor(
            name=key,
            type=data_type,
            nullable=True,
            primary_key=False,
            nested=nested,
            path=path,
        ))

    return columns


def merge_columns(
    existing: List[ColumnDescriptor],
    incoming: List[ColumnDescriptor],
    depth: int = 0,
    max_depth: int = MAX_SCHEMA_DEPTH,
) -> List[ColumnDescriptor]:
    """
    Merge two column lists keyed by column name.

    New names are appended. A column typed "null" takes the type of the
    incoming column, since null only means nothing has been observed yet.
    Nested shapes of objects, and of arrays of objects, are merged
    recursively. Neither input is modified.

    Args:
        existing: Columns accumulated so far
        incoming: Columns inferred from the next document
        depth: Current nesting depth
        max_depth: Depth beyond which nested shapes are left as they are

    Returns:
        The merged column list
    """
    merged = [column.model_copy() for column in existing]
    index: Dict[str, int] = {column.name: i for i, column in enumerate(merged)}

    for new_col in incoming:
        if new_col.name not in index:
            merged.append(new_col.model_copy())
            index[new_col.name] = len(merged) - 1
            continue

        position = index[new_col.name]
        current = merged[position]
        updates: Dict[str, Any] = {}

        if current.type == ColumnType.NULL.value and new_col.type != ColumnType.NULL.value:
            updates["type"] = new_col.type
            updates["nested"] = list(new_col.nested)
        elif depth + 1 < max_depth and current.type == new_col.type:
            if current.type == ColumnType.OBJECT.value:
                updates["nested"] = merge_columns(current.nested, new_col.nested, depth + 1, max_depth)
            elif current.type == ColumnType.ARRAY.value:
                if current.nested and new_col.nested:
                    updates["nested"] = merge_columns(current.nested, new_col.nested, depth + 1, max_depth)
                elif new_col.nested:
                    updates["nested"] = list(new_col.nested)

        if updates:
            merged[position] = current.model_copy(update=updates)

    return merged


def infer_columns(
    documents: Iterable[Mapping[str, Any]],
    id_field: str = DOCUMENT_ID_FIELD,
    max_depth: int = MAX_SCHEMA_DEPTH,
) -> List[ColumnDescriptor]:
    """Fold merge_columns over the inferred columns of each document, in order"""
    merged: List[ColumnDescriptor] = []
    for docs_processed, document in enumerate(documents):
        columns = infer_one(document, id_field=id_field, max_depth=max_depth)
        if docs_processed == 0:
            merged = columns
        else:
            merged = merge_columns(merged, columns, max_depth=max_depth)
    return merged


def is_system_collection(name: str) -> bool:
    return name.startswith(SYSTEM_COLLECTION_PREFIX)


def infer_schema(
    database,
    sample_limit: int = SCHEMA_SAMPLE_LIMIT,
    id_field: str = DOCUMENT_ID_FIELD,
    max_depth: int = MAX_SCHEMA_DEPTH,
) -> SchemaDescriptor:
    """
    Derive a schema for every user collection of a document database.

    Args:
        database: A pymongo (or API-compatible) Database handle
        sample_limit: Maximum documents sampled per collection

    Returns:
        SchemaDescriptor with one table per non-system collection
    """
    tables = []

    with PerformanceTracker("document_schema_inference"):
        for collection_name in sorted(database.list_collection_names()):
            if is_system_collection(collection_name):
                continue

            documents = database[collection_name].find({}).limit(sample_limit)
            columns = infer_columns(documents, id_field=id_field, max_depth=max_depth)
            logger.debug(f"Inferred {len(columns)} top-level fields for collection {collection_name}")

            tables.append(TableDescriptor(name=collection_name, columns=columns))

    logger.info(f"Inferred schema for {len(tables)} collections")
    return SchemaDescriptor(tables=tables)
