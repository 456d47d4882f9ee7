from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from reconciler.services.sql_fragments import validate_identifier

_IDENTIFIER = r"^[A-Za-z_][A-Za-z0-9_$]*$"


class DiffTarget(BaseModel):
    schema_name: str = Field("public", alias="schema", pattern=_IDENTIFIER)
    table: str = Field(..., pattern=_IDENTIFIER)
    column: str = Field(..., pattern=_IDENTIFIER)
    id_column: Optional[str] = Field(None, alias="idColumn", pattern=_IDENTIFIER)

    model_config = {"populate_by_name": True}


class StateTarget(BaseModel):
    schema_name: str = Field("public", alias="schema", pattern=_IDENTIFIER)
    table: str = Field(..., pattern=_IDENTIFIER)
    columns: List[str] = Field(..., min_length=1)
    id_column: Optional[str] = Field(None, alias="idColumn", pattern=_IDENTIFIER)

    model_config = {"populate_by_name": True}

    @field_validator("columns")
    @classmethod
    def _validate_columns(cls, value: List[str]) -> List[str]:
        return [validate_identifier(column) for column in value]


class LogsDiffsConfig(BaseModel):
    diffs: List[DiffTarget] = Field(default_factory=list)


class LogsStatesConfig(BaseModel):
    states: List[StateTarget] = Field(default_factory=list)


class LogsConfig(BaseModel):
    diffs: Optional[LogsDiffsConfig] = None
    states: Optional[LogsStatesConfig] = None
