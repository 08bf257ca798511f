import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from bson import Decimal128, ObjectId

SIZE_UNITS = ["B", "KB", "MB", "GB", "TB"]


def format_size(size_bytes: float) -> str:
    """Format a byte count, e.g. 1536 -> '1.50 KB'"""
    size = float(size_bytes or 0)
    unit_index = 0
    while size >= 1024 and unit_index < len(SIZE_UNITS) - 1:
        size /= 1024
        unit_index += 1
    return f"{size:.2f} {SIZE_UNITS[unit_index]}"


def to_jsonable(value: Any) -> Any:
    """Convert values returned by the database drivers into JSON-safe values"""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, (ObjectId, uuid.UUID)):
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal128):
        return float(value.to_decimal())
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return str(value)
