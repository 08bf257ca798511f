import logging
from typing import List

from querycraft.models.models import ColumnDescriptor, SchemaDescriptor, TableDescriptor

# Configure logging
logger = logging.getLogger(__name__)

INDENT = "  "


def _describe_nested(fields: List[ColumnDescriptor], level: int, lines: List[str]) -> None:
    indent = INDENT * level
    for field in fields:
        lines.append(f"{indent}- {field.name} ({field.type})")
        if field.nested:
            _describe_nested(field.nested, level + 1, lines)


def _describe_table_lines(table: TableDescriptor, lines: List[str]) -> None:
    lines.append(f"Table/Collection: {table.name}")
    lines.append("Columns/Fields:")
    for column in table.columns:
        primary_key = " (PRIMARY KEY)" if column.primary_key else ""
        nullable = " (NULLABLE)" if column.nullable else ""
        lines.append(f"- {column.name} ({column.type}){primary_key}{nullable}")

        # Nested fields of document collections
        if column.nested:
            _describe_nested(column.nested, 1, lines)
    lines.append("")


def describe_table(table: TableDescriptor) -> str:
    """Format a single table for a focused prompt"""
    lines: List[str] = []
    _describe_table_lines(table, lines)
    return "\n".join(lines) + "\n"


def describe_schema(schema: SchemaDescriptor) -> str:
    """
    Format every table of a schema for inclusion in a prompt.

    The rendering is deterministic: the same schema always yields the same
    text, which keeps prompts reproducible.

    Args:
        schema: The stored schema of a data source

    Returns:
        Schema description text, one block per table
    """
    lines: List[str] = []
    for table in schema.tables:
        _describe_table_lines(table, lines)
    return "\n".join(lines) + "\n" if lines else ""


def list_table_names(schema: SchemaDescriptor) -> str:
    """Format only the table names, as used for table matching"""
    return "".join(f"- {table.name}\n" for table in schema.tables)
