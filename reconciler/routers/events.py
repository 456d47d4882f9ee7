from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from reconciler.config import Settings, get_settings
from reconciler.database import get_sql_executor
from reconciler.schemas.events import EventPayload, EventResponse
from reconciler.services.diff_materializer import DiffMaterializationError, materialize_diff
from reconciler.services.event_triggers import verify_event_secret
from reconciler.services.sql_executor import SqlExecutor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["Events"])


def require_event_secret(request: Request, settings: Settings = Depends(get_settings)) -> None:
    if not verify_event_secret(request.headers, settings):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def _parse_payload(body: Any) -> EventPayload:
    # Some senders wrap the event in a top-level "payload" key.
    if isinstance(body, dict) and "payload" in body and "event" not in body:
        body = body["payload"]
    try:
        return EventPayload.model_validate(body)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid event payload: {exc.errors()}",
        ) from exc


@router.post(
    "/logs-diffs",
    response_model=EventResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    dependencies=[Depends(require_event_secret)],
)
def handle_logs_diffs_event(
    body: Any = Body(...),
    executor: SqlExecutor = Depends(get_sql_executor),
    settings: Settings = Depends(get_settings),
):
    payload = _parse_payload(body)
    logger.info(
        "Received %s event from %s.%s via trigger %s",
        payload.event.op,
        payload.table.schema_name,
        payload.table.name,
        payload.trigger.name,
    )

    record = payload.event.data.new or {}
    diff_id = record.get("id")
    if not diff_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Event payload does not contain the new diffs record id.",
        )

    try:
        result = materialize_diff(executor, str(diff_id), audit_schema=settings.audit_schema)
    except DiffMaterializationError as exc:
        logger.error("Failed to process diffs event %s: %s", diff_id, exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": str(exc)},
        )
    return EventResponse(success=True, diff_id=result.diff_id, patch=result.patch)
