"""Primitive field type registry with storage defaults and coercion."""

import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable


class CoercionError(ValueError):
    """Raised when a value cannot be converted to a field type."""


def _coerce_uuid(value: Any) -> str:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, str):
        try:
            return str(uuid.UUID(value))
        except ValueError:
            pass
    raise CoercionError(f"expected a UUID, got {value!r}")


def _coerce_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    raise CoercionError(f"expected a string, got {type(value).__name__}")


def _coerce_integer(value: Any) -> int:
    if isinstance(value, bool):
        raise CoercionError("expected an integer, got a boolean")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and re.fullmatch(r"[+-]?\d+", value.strip()):
        return int(value)
    raise CoercionError(f"expected an integer, got {value!r}")


def _coerce_number(value: Any) -> float:
    if isinstance(value, bool):
        raise CoercionError("expected a number, got a boolean")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, str):
        try:
            return float(Decimal(value.strip()))
        except InvalidOperation:
            pass
    raise CoercionError(f"expected a number, got {value!r}")


def _coerce_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise CoercionError(f"expected a boolean, got {value!r}")


def _coerce_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        try:
            return date.fromisoformat(value).isoformat()
        except ValueError:
            pass
    raise CoercionError(f"expected an ISO date, got {value!r}")


def _coerce_time(value: Any) -> str:
    if isinstance(value, time):
        return value.isoformat()
    if isinstance(value, str):
        try:
            return time.fromisoformat(value).isoformat()
        except ValueError:
            pass
    raise CoercionError(f"expected an ISO time, got {value!r}")


def _coerce_datetime(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, str):
        try:
            # fromisoformat in 3.11 accepts the trailing "Z"
            return datetime.fromisoformat(value).isoformat()
        except ValueError:
            pass
    raise CoercionError(f"expected an ISO datetime, got {value!r}")


@dataclass(frozen=True)
class FieldType:
    name: str
    storage_type: str
    coerce: Callable[[Any], Any]
    generated_key: bool = False


# Built-in primitive types
FIELD_TYPES: dict[str, FieldType] = {
    "UUID": FieldType(
        name="UUID",
        storage_type="TEXT",
        coerce=_coerce_uuid,
        generated_key=True,
    ),
    "String": FieldType(
        name="String",
        storage_type="TEXT",
        coerce=_coerce_string,
    ),
    "LargeString": FieldType(
        name="LargeString",
        storage_type="TEXT",
        coerce=_coerce_string,
    ),
    "Integer": FieldType(
        name="Integer",
        storage_type="INTEGER",
        coerce=_coerce_integer,
    ),
    "Int64": FieldType(
        name="Int64",
        storage_type="BIGINT",
        coerce=_coerce_integer,
    ),
    "Decimal": FieldType(
        name="Decimal",
        storage_type="NUMERIC",
        coerce=_coerce_number,
    ),
    "Double": FieldType(
        name="Double",
        storage_type="REAL",
        coerce=_coerce_number,
    ),
    "Boolean": FieldType(
        name="Boolean",
        storage_type="BOOLEAN",
        coerce=_coerce_boolean,
    ),
    "Date": FieldType(
        name="Date",
        storage_type="TEXT",  # ISO format
        coerce=_coerce_date,
    ),
    "Time": FieldType(
        name="Time",
        storage_type="TEXT",  # ISO format
        coerce=_coerce_time,
    ),
    "DateTime": FieldType(
        name="DateTime",
        storage_type="TEXT",  # ISO format
        coerce=_coerce_datetime,
    ),
    "Timestamp": FieldType(
        name="Timestamp",
        storage_type="TEXT",  # ISO format
        coerce=_coerce_datetime,
    ),
}


def is_known_type(type_name: str) -> bool:
    return type_name in FIELD_TYPES


def get_field_type(type_name: str) -> FieldType:
    """Get a primitive type definition.

    Raises:
        KeyError: If the type is not a registered primitive
    """
    if type_name not in FIELD_TYPES:
        raise KeyError(
            f"Unknown field type '{type_name}'. "
            f"Known types: {', '.join(sorted(FIELD_TYPES))}"
        )
    return FIELD_TYPES[type_name]


def get_storage_type(type_name: str) -> str:
    """Get the SQL storage type for a primitive type."""
    return get_field_type(type_name).storage_type
