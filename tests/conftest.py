import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Mapping

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

TEST_DATABASE_URL = "sqlite://"
os.environ.setdefault("DATABASE_URL", TEST_DATABASE_URL)
os.environ.setdefault("SQL_BACKEND", "engine")
os.environ.setdefault("HASURA_URL", "http://localhost:8080/v1/graphql")
os.environ.setdefault("HASURA_ADMIN_SECRET", "admin-secret")
os.environ.setdefault("ENVIRONMENT", "development")

from reconciler.config import Settings, get_settings  # noqa: E402
from reconciler.database import get_sql_executor  # noqa: E402
from reconciler.main import app  # noqa: E402
from reconciler.services.reconciler import Reconciler  # noqa: E402
from reconciler.services.sql_executor import SqlExecutionError, SqlExecutor, SqlResult  # noqa: E402


class FakeCatalog:
    """In-memory stand-in for the catalog queries issued by the reconciler."""

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict[str, Any]]] = {}

    def add_table(
        self,
        schema: str,
        table: str,
        *,
        columns: list[str] | None = None,
        primary_key: list[str] | None = None,
        triggers: list[str] | None = None,
    ) -> None:
        self.tables.setdefault(schema, {})[table] = {
            "columns": list(columns or ["id"]),
            "primary_key": list(primary_key if primary_key is not None else ["id"]),
            "triggers": list(triggers or []),
        }

    def respond(self, statement: str, params: Mapping[str, Any]) -> SqlResult | None:
        if not statement.lstrip().upper().startswith("SELECT"):
            return None
        if "information_schema.schemata" in statement:
            names = sorted([*self.tables, "information_schema", "pg_catalog", "pg_toast"])
            return SqlResult(header=["schema_name"], rows=[[name] for name in names])
        if "information_schema.tables" in statement:
            tables = self.tables.get(params["schema"], {})
            return SqlResult(header=["table_name"], rows=[[name] for name in sorted(tables)])
        table = self.tables.get(params.get("schema", ""), {}).get(params.get("table", ""))
        if "information_schema.columns" in statement:
            columns = table["columns"] if table else []
            return SqlResult(
                header=["column_name", "data_type", "udt_name"],
                rows=[[name, "text", "text"] for name in columns],
            )
        if "table_constraints" in statement:
            return SqlResult(header=["column_name"], rows=[[name] for name in (table or {}).get("primary_key", [])])
        if "pg_trigger" in statement:
            prefix = params.get("prefix") or ""
            names = [name for name in (table or {}).get("triggers", []) if name.startswith(prefix)]
            return SqlResult(header=["tgname"], rows=[[name] for name in sorted(names)])
        return None


class RecordingExecutor(SqlExecutor):
    def __init__(self, catalog: FakeCatalog | None = None) -> None:
        self.catalog = catalog or FakeCatalog()
        self.statements: list[tuple[str, dict[str, Any]]] = []
        self.transactions: list[list[str]] = []
        self.results: list[tuple[str, SqlResult]] = []
        self.fail_on: str | None = None
        self.closed = False
        self._current: list[str] | None = None

    @property
    def sql(self) -> list[str]:
        return [statement for statement, _ in self.statements]

    def execute(self, statement: str, params: Mapping[str, Any] | None = None) -> SqlResult:
        values = dict(params or {})
        self.statements.append((statement, values))
        if self._current is not None:
            self._current.append(statement)
        if self.fail_on and self.fail_on in statement:
            raise SqlExecutionError(f"Error executing SQL: forced failure on {self.fail_on}")
        for marker, result in self.results:
            if marker in statement:
                return result
        return self.catalog.respond(statement, values) or SqlResult()

    @contextmanager
    def transaction(self):
        if self._current is not None:
            yield self
            return
        self._current = []
        try:
            yield self
        finally:
            self.transactions.append(self._current)
            self._current = None

    def close(self) -> None:
        self.closed = True


class FakeMetadata:
    def __init__(self, source: str = "default") -> None:
        self.source = source
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.reloads = 0

    @property
    def types(self) -> list[str]:
        return [request_type for request_type, _ in self.calls]

    def metadata(self, request_type: str, args: Mapping[str, Any] | None = None) -> dict[str, Any]:
        self.calls.append((request_type, dict(args or {})))
        return {"message": "success"}

    def reload_metadata(self) -> dict[str, Any]:
        self.reloads += 1
        return {"message": "success"}


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        database_url=TEST_DATABASE_URL,
        hasura_url="http://localhost:8080",
        hasura_admin_secret="admin-secret",
        hasura_event_secret=None,
        environment="development",
        events_base_url="http://reconciler.local",
    )


@pytest.fixture()
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture()
def executor(catalog: FakeCatalog) -> RecordingExecutor:
    return RecordingExecutor(catalog)


@pytest.fixture()
def metadata() -> FakeMetadata:
    return FakeMetadata()


@pytest.fixture()
def reconciler(executor: RecordingExecutor, metadata: FakeMetadata) -> Reconciler:
    return Reconciler(executor, metadata)


class PrefixedTestClient(TestClient):
    api_prefix = "/api"

    def request(self, method: str, url: str, *args, **kwargs):  # type: ignore[override]
        if url.startswith("/") and not url.startswith("/health"):
            url = f"{self.api_prefix}{url}"
        return super().request(method, url, *args, **kwargs)


@pytest.fixture()
def client(executor: RecordingExecutor, settings: Settings) -> Generator[TestClient, None, None]:
    def override_get_sql_executor():
        try:
            yield executor
        finally:
            pass

    app.dependency_overrides[get_sql_executor] = override_get_sql_executor
    app.dependency_overrides[get_settings] = lambda: settings

    client = PrefixedTestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.pop(get_sql_executor, None)
        app.dependency_overrides.pop(get_settings, None)
