from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ColumnType(str, Enum):
    UUID = "uuid"
    TEXT = "text"
    BIGINT = "bigint"
    BOOLEAN = "boolean"
    JSONB = "jsonb"
    NUMERIC = "numeric"
    INTEGER = "integer"
    TIMESTAMPTZ = "timestamptz"


class PermissionOperation(str, Enum):
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class TriggerTiming(str, Enum):
    BEFORE = "BEFORE"
    AFTER = "AFTER"
    INSTEAD_OF = "INSTEAD OF"


@dataclass(frozen=True)
class ColumnRef:
    schema: str
    table: str
    column: str


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    data_type: str
    udt_name: str
