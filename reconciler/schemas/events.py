from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventData(BaseModel):
    old: Optional[Dict[str, Any]] = None
    new: Optional[Dict[str, Any]] = None


class EventBody(BaseModel):
    op: str = Field(..., pattern=r"^(INSERT|UPDATE|DELETE|MANUAL)$")
    data: EventData
    session_variables: Optional[Dict[str, Any]] = None


class EventTable(BaseModel):
    schema_name: str = Field(..., alias="schema")
    name: str

    model_config = {"populate_by_name": True}


class EventTrigger(BaseModel):
    name: str


class EventPayload(BaseModel):
    """Body posted by the GraphQL engine for a database event trigger."""

    id: Optional[str] = None
    created_at: Optional[str] = None
    event: EventBody
    table: EventTable
    trigger: EventTrigger


class EventResponse(BaseModel):
    success: bool
    diff_id: Optional[str] = Field(default=None, alias="diffId")
    patch: Optional[str] = None
    error: Optional[str] = None

    model_config = {"populate_by_name": True}
