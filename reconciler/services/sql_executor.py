"""Executors that send raw SQL statements to PostgreSQL and return tabular results."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterator, Mapping, Sequence

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from reconciler.config import Settings, get_settings
from reconciler.services.sql_fragments import render_params

if TYPE_CHECKING:
    from reconciler.services.metadata_client import MetadataClient

logger = logging.getLogger(__name__)


class SqlExecutionError(Exception):
    """Raised when the database rejects a statement."""


@dataclass(frozen=True)
class SqlResult:
    header: list[str] = field(default_factory=list)
    rows: list[list[Any]] = field(default_factory=list)

    @property
    def result(self) -> list[list[Any]]:
        """Header row followed by data rows, or an empty list for DDL."""
        if not self.header:
            return []
        return [list(self.header), *[list(row) for row in self.rows]]

    def scalar(self) -> Any:
        if not self.rows or not self.rows[0]:
            return None
        return self.rows[0][0]

    def column(self, index: int = 0) -> list[Any]:
        return [row[index] for row in self.rows]

    def records(self) -> list[dict[str, Any]]:
        return [dict(zip(self.header, row)) for row in self.rows]

    @classmethod
    def from_result(cls, result: Sequence[Sequence[Any]] | None) -> "SqlResult":
        if not result:
            return cls()
        header, *rows = result
        return cls(header=[str(name) for name in header], rows=[list(row) for row in rows])


class SqlExecutor:
    """Interface shared by the SQL backends."""

    def execute(self, statement: str, params: Mapping[str, Any] | None = None) -> SqlResult:
        raise NotImplementedError

    @contextmanager
    def transaction(self) -> Iterator["SqlExecutor"]:
        yield self

    def close(self) -> None:
        pass


class EngineSqlExecutor(SqlExecutor):
    """Runs statements over one SQLAlchemy connection reused for the whole run."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._connection: Connection | None = None
        self._in_transaction = False

    def _connect(self) -> Connection:
        if self._connection is None:
            self._connection = self._engine.connect()
        return self._connection

    def execute(self, statement: str, params: Mapping[str, Any] | None = None) -> SqlResult:
        connection = self._connect()
        logger.debug("Executing SQL: %s", statement.strip())
        try:
            result = connection.execute(text(statement), dict(params or {}))
            if result.returns_rows:
                header = list(result.keys())
                rows = [list(row) for row in result.fetchall()]
            else:
                header, rows = [], []
            if not self._in_transaction:
                connection.commit()
        except SQLAlchemyError as exc:
            if not self._in_transaction:
                connection.rollback()
            message = str(getattr(exc, "orig", exc)) or "Unknown error"
            logger.error("SQL statement failed: %s", message)
            raise SqlExecutionError(f"Error executing SQL: {message}") from exc
        return SqlResult(header=header, rows=rows)

    @contextmanager
    def transaction(self) -> Iterator["EngineSqlExecutor"]:
        if self._in_transaction:
            yield self
            return

        connection = self._connect()
        if connection.in_transaction():
            connection.commit()
        self._in_transaction = True
        try:
            yield self
        except Exception:
            connection.rollback()
            raise
        else:
            connection.commit()
        finally:
            self._in_transaction = False

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None


class HasuraSqlExecutor(SqlExecutor):
    """Runs statements through the run_sql endpoint of the GraphQL engine.

    The endpoint has no parameter binding, so values are rendered as quoted
    literals. Inside ``transaction()`` statements are buffered and sent as a
    single run_sql call, which the engine executes in one transaction.
    """

    def __init__(self, client: "MetadataClient") -> None:
        self._client = client
        self._buffer: list[str] | None = None

    def execute(self, statement: str, params: Mapping[str, Any] | None = None) -> SqlResult:
        rendered = render_params(statement, params)
        if self._buffer is not None:
            self._buffer.append(_terminate(rendered))
            return SqlResult()
        return self._run(rendered)

    def _run(self, sql: str) -> SqlResult:
        from reconciler.services.metadata_client import MetadataError

        try:
            payload = self._client.run_sql(sql)
        except MetadataError as exc:
            raise SqlExecutionError(f"Error executing SQL: {exc}") from exc

        result = payload.get("result") if isinstance(payload, Mapping) else None
        return SqlResult.from_result(result)

    @contextmanager
    def transaction(self) -> Iterator["HasuraSqlExecutor"]:
        if self._buffer is not None:
            yield self
            return

        self._buffer = []
        try:
            yield self
        except Exception:
            self._buffer = None
            raise
        statements, self._buffer = self._buffer, None
        if statements:
            logger.info("Submitting %d buffered SQL statements in one transaction", len(statements))
            self._run("\n".join(statements))


def _terminate(statement: str) -> str:
    stripped = statement.strip()
    return stripped if stripped.endswith(";") else f"{stripped};"


def build_sql_executor(
    settings: Settings | None = None,
    *,
    metadata: "MetadataClient | None" = None,
) -> SqlExecutor:
    resolved = settings or get_settings()
    if resolved.sql_backend == "hasura":
        if metadata is None:
            from reconciler.services.metadata_client import MetadataClient

            metadata = MetadataClient.from_settings(resolved)
        return HasuraSqlExecutor(metadata)

    from reconciler.database import get_engine

    return EngineSqlExecutor(get_engine(resolved.database_url))
