from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from reconciler.services.diff_materializer import (
    DiffMaterializationError,
    compute_patch,
    materialize_diff,
)
from reconciler.services.sql_executor import EngineSqlExecutor, SqlResult


@pytest.fixture()
def diffs_executor():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    executor = EngineSqlExecutor(engine)
    executor.execute("ATTACH DATABASE :path AS logs", {"path": ":memory:"})
    executor.execute(
        "CREATE TABLE logs.diffs ("
        "id TEXT PRIMARY KEY, _schema TEXT, _table TEXT, _column TEXT, _id TEXT, "
        "_value TEXT, diff TEXT, processed BOOLEAN DEFAULT 0, created_at TEXT)"
    )
    yield executor
    executor.close()
    engine.dispose()


def _insert(executor: EngineSqlExecutor, diff_id: str, record_id: str, value: str | None, created_at: str) -> None:
    executor.execute(
        "INSERT INTO logs.diffs (id, _schema, _table, _column, _id, _value, created_at) "
        "VALUES (:id, 'public', 'users', 'name', :record_id, :value, :created_at)",
        {"id": diff_id, "record_id": record_id, "value": value, "created_at": created_at},
    )


def test_compute_patch_uses_empty_old_side():
    patch = compute_patch(None, "Alice", label="name")

    assert patch.splitlines() == ["--- a/name", "+++ b/name", "@@ -0,0 +1 @@", "+Alice"]


def test_compute_patch_of_identical_values_is_empty():
    assert compute_patch("same", "same") == ""


def test_materialize_uses_previous_value_of_same_record(diffs_executor: EngineSqlExecutor):
    _insert(diffs_executor, "d1", "u1", "Alice", "2024-01-01T00:00:01")
    _insert(diffs_executor, "d2", "u2", "Bob", "2024-01-01T00:00:02")
    _insert(diffs_executor, "d3", "u1", "Alicia", "2024-01-01T00:00:03")

    result = materialize_diff(diffs_executor, "d3")

    assert result.previous_value == "Alice"
    assert result.current_value == "Alicia"
    assert "-Alice" in result.patch.splitlines()
    assert "+Alicia" in result.patch.splitlines()
    stored = diffs_executor.execute("SELECT diff, processed FROM logs.diffs WHERE id = 'd3'").rows[0]
    assert stored[0] == result.patch
    assert bool(stored[1]) is True
    assert result.as_response() == {"success": True, "diffId": "d3", "patch": result.patch}


def test_first_change_is_patched_against_empty_text(diffs_executor: EngineSqlExecutor):
    _insert(diffs_executor, "d1", "u1", "Alice", "2024-01-01T00:00:01")

    result = materialize_diff(diffs_executor, "d1")

    assert result.previous_value is None
    assert result.patch
    assert "+Alice" in result.patch.splitlines()


def test_unknown_diff_raises(diffs_executor: EngineSqlExecutor):
    with pytest.raises(DiffMaterializationError, match="not found"):
        materialize_diff(diffs_executor, "missing")


def test_zero_updated_rows_raises(executor):
    executor.results = [
        (
            "SELECT cur._value",
            SqlResult(header=["current_value", "previous_value", "column_name"], rows=[["new", "old", "name"]]),
        ),
        ("UPDATE", SqlResult(header=["id"], rows=[])),
    ]

    with pytest.raises(DiffMaterializationError, match="not updated"):
        materialize_diff(executor, "d1")

    update_statement, params = executor.statements[-1]
    assert update_statement.startswith('UPDATE "logs"."diffs" SET diff = :patch, processed = true')
    assert params["diff_id"] == "d1"


def test_sql_errors_are_reported_as_materialization_errors(executor):
    executor.fail_on = "SELECT cur._value"

    with pytest.raises(DiffMaterializationError, match="forced failure"):
        materialize_diff(executor, "d1")
