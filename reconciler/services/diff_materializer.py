"""Turn raw value snapshots in the diffs audit table into textual patches."""
from __future__ import annotations

import difflib
import logging
from dataclasses import dataclass
from typing import Any

from reconciler.services.sql_executor import SqlExecutionError, SqlExecutor
from reconciler.services.sql_fragments import qualified_name

logger = logging.getLogger(__name__)


class DiffMaterializationError(Exception):
    """Raised when a diffs record cannot be turned into a patch."""


@dataclass(frozen=True)
class DiffResult:
    diff_id: str
    patch: str
    previous_value: str | None
    current_value: str | None

    def as_response(self) -> dict[str, Any]:
        return {"success": True, "diffId": self.diff_id, "patch": self.patch}


def compute_patch(old: str | None, new: str | None, *, label: str = "value") -> str:
    """Unified diff of two snapshots; a missing old side is treated as empty text."""

    old_lines = (old or "").splitlines()
    new_lines = (new or "").splitlines()
    diff = difflib.unified_diff(
        old_lines,
        new_lines,
        fromfile=f"a/{label}",
        tofile=f"b/{label}",
        lineterm="",
    )
    return "\n".join(diff)


def _read_snapshots(executor: SqlExecutor, diff_id: str, table: str) -> tuple[str | None, str | None, str]:
    result = executor.execute(
        f"SELECT cur._value AS current_value, "
        f"(SELECT prev._value FROM {table} prev "
        "WHERE prev._schema = cur._schema AND prev._table = cur._table "
        "AND prev._column = cur._column AND prev._id = cur._id "
        "AND prev.id <> cur.id AND prev.created_at <= cur.created_at "
        "ORDER BY prev.created_at DESC LIMIT 1) AS previous_value, "
        "cur._column AS column_name "
        f"FROM {table} cur WHERE cur.id = :diff_id",
        {"diff_id": diff_id},
    )
    records = result.records()
    if not records:
        raise DiffMaterializationError(f"Diff record {diff_id} was not found.")
    record = records[0]
    return record.get("previous_value"), record.get("current_value"), str(record.get("column_name") or "value")


def materialize_diff(executor: SqlExecutor, diff_id: str, *, audit_schema: str = "logs") -> DiffResult:
    """Compute the patch for one diffs record and mark it processed."""

    table = qualified_name(audit_schema, "diffs")
    try:
        previous, current, column = _read_snapshots(executor, diff_id, table)
        patch = compute_patch(previous, current, label=column)
        updated = executor.execute(
            f"UPDATE {table} SET diff = :patch, processed = true WHERE id = :diff_id RETURNING id",
            {"patch": patch, "diff_id": diff_id},
        )
    except SqlExecutionError as exc:
        logger.error("Unable to materialize diff %s: %s", diff_id, exc)
        raise DiffMaterializationError(f"Unable to materialize diff {diff_id}: {exc}") from exc

    if not updated.rows:
        raise DiffMaterializationError(f"Diff record {diff_id} was not updated.")

    logger.info("Materialized diff %s (%d characters)", diff_id, len(patch))
    return DiffResult(diff_id=diff_id, patch=patch, previous_value=previous, current_value=current)
