"""Idempotent define/track/delete operations over the SQL executor and metadata client.

Every ``define_*`` call is safe to repeat: SQL objects are created with guarded
statements (``IF NOT EXISTS``) and metadata objects are dropped before they are
recreated. ``define_foreign_key`` is the one operation that replaces an existing
object with the latest definition instead of keeping the first one.
"""
from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Sequence

from reconciler.schemas.reconcile import ColumnInfo, ColumnRef, ColumnType, PermissionOperation, TriggerTiming
from reconciler.services.metadata_client import MetadataClient
from reconciler.services.sql_executor import SqlExecutor
from reconciler.services.sql_fragments import (
    create_function_sql,
    create_trigger_sql,
    object_name,
    qualified_name,
    quote_identifier,
    quote_literal,
    referential_action,
    validate_identifier,
)

logger = logging.getLogger(__name__)

SYSTEM_SCHEMAS = ("information_schema", "pg_catalog", "pg_toast")
_SYSTEM_SCHEMA_PREFIXES = ("pg_temp_", "pg_toast_temp_")
_EPOCH_MILLIS = "(EXTRACT(EPOCH FROM CURRENT_TIMESTAMP) * 1000)::bigint"

_RolesArg = str | Sequence[str]
_TablesArg = str | Sequence[str]


class ReconcilerError(Exception):
    """Raised when a reconciliation primitive receives an invalid definition."""


def is_system_schema(schema: str) -> bool:
    return schema in SYSTEM_SCHEMAS or schema.startswith(_SYSTEM_SCHEMA_PREFIXES)


def _as_list(value: str | Sequence[str]) -> list[str]:
    if isinstance(value, str):
        return [value]
    return list(value)


class Reconciler:
    def __init__(self, executor: SqlExecutor, metadata: MetadataClient, *, source: str | None = None) -> None:
        self.executor = executor
        self.metadata = metadata
        self.source = source or metadata.source

    def sql(self, statement: str, params: Mapping[str, Any] | None = None):
        return self.executor.execute(statement, params)

    def _table_ref(self, schema: str, table: str) -> dict[str, str]:
        return {"schema": validate_identifier(schema), "name": validate_identifier(table)}

    # Schemas and tables

    def define_schema(self, schema: str) -> None:
        logger.info("Defining schema %s", schema)
        self.sql(f"CREATE SCHEMA IF NOT EXISTS {quote_identifier(schema)}")

    def define_table(
        self,
        schema: str,
        table: str,
        *,
        id: str = "id",
        type: ColumnType = ColumnType.UUID,
        timestamps: bool = True,
    ) -> None:
        """Create the table with its primary key.

        With ``timestamps`` the table also gets ``created_at``/``updated_at``
        columns holding epoch milliseconds.
        """

        column_type = ColumnType(type)
        default = " DEFAULT gen_random_uuid()" if column_type is ColumnType.UUID else ""
        columns = [f"{quote_identifier(id)} {column_type.value} PRIMARY KEY{default}"]
        if timestamps:
            columns.extend(f"{name} bigint NOT NULL DEFAULT {_EPOCH_MILLIS}" for name in ("created_at", "updated_at"))
        logger.info("Defining table %s.%s with id column %s of type %s", schema, table, id, column_type.value)
        self.sql(f"CREATE TABLE IF NOT EXISTS {qualified_name(schema, table)} ({', '.join(columns)})")

    def delete_table(self, schema: str, table: _TablesArg) -> None:
        for name in _as_list(table):
            logger.info("Deleting table %s.%s", schema, name)
            self.untrack_table(schema, name)
            self.sql(f"DROP TABLE IF EXISTS {qualified_name(schema, name)} CASCADE")

    def delete_schema(self, schema: str, *, cascade: bool = True) -> None:
        """Drop a schema; intended for test teardown only."""

        logger.info("Deleting schema %s%s", schema, " with CASCADE" if cascade else "")
        for table in self.tables(schema):
            self.untrack_table(schema, table)
        clause = "CASCADE" if cascade else "RESTRICT"
        self.sql(f"DROP SCHEMA IF EXISTS {quote_identifier(schema)} {clause}")

    # Columns

    def define_column(
        self,
        schema: str,
        table: str,
        name: str,
        type: ColumnType,
        *,
        postfix: str | None = None,
        unique: bool = False,
        comment: str | None = None,
    ) -> None:
        column_type = ColumnType(type)
        parts = [
            f"ALTER TABLE {qualified_name(schema, table)}",
            f"ADD COLUMN IF NOT EXISTS {quote_identifier(name)} {column_type.value}",
        ]
        if postfix and postfix.strip():
            parts.append(postfix.strip())
        if unique:
            parts.append("UNIQUE")
        logger.info("Defining column %s.%s.%s of type %s", schema, table, name, column_type.value)
        self.sql(" ".join(parts))

        if comment is not None:
            self.sql(
                f"COMMENT ON COLUMN {qualified_name(schema, table)}.{quote_identifier(name)} "
                f"IS {quote_literal(comment)}"
            )

    def delete_column(self, schema: str, table: str, name: str) -> None:
        logger.info("Deleting column %s.%s.%s", schema, table, name)
        self.sql(f"ALTER TABLE {qualified_name(schema, table)} DROP COLUMN IF EXISTS {quote_identifier(name)}")

    # Foreign keys

    @staticmethod
    def foreign_key_name(from_: ColumnRef, to: ColumnRef) -> str:
        return object_name("fk", from_.table, from_.column, to.table, to.column)

    def define_foreign_key(
        self,
        from_: ColumnRef,
        to: ColumnRef,
        *,
        on_delete: str = "RESTRICT",
        on_update: str = "CASCADE",
        name: str | None = None,
    ) -> str:
        constraint = validate_identifier(name or self.foreign_key_name(from_, to))
        source = qualified_name(from_.schema, from_.table)
        logger.info("Defining foreign key %s", constraint)
        self.sql(f"ALTER TABLE {source} DROP CONSTRAINT IF EXISTS {quote_identifier(constraint)}")
        self.sql(
            f"ALTER TABLE {source} ADD CONSTRAINT {quote_identifier(constraint)} "
            f"FOREIGN KEY ({quote_identifier(from_.column)}) "
            f"REFERENCES {qualified_name(to.schema, to.table)} ({quote_identifier(to.column)}) "
            f"ON DELETE {referential_action(on_delete)} ON UPDATE {referential_action(on_update)}"
        )
        return constraint

    def delete_foreign_key(self, schema: str, table: str, name: str) -> None:
        logger.info("Deleting foreign key %s from %s.%s", name, schema, table)
        self.sql(f"ALTER TABLE {qualified_name(schema, table)} DROP CONSTRAINT IF EXISTS {quote_identifier(name)}")

    # Tracking

    def track_table(self, schema: str, table: _TablesArg) -> None:
        for name in _as_list(table):
            logger.info("Tracking table %s.%s", schema, name)
            self.metadata.metadata(
                "pg_track_table",
                {"source": self.source, "table": self._table_ref(schema, name)},
            )

    def untrack_table(self, schema: str, table: _TablesArg, *, cascade: bool = False) -> None:
        for name in _as_list(table):
            logger.info("Untracking table %s.%s", schema, name)
            self.metadata.metadata(
                "pg_untrack_table",
                {"source": self.source, "table": self._table_ref(schema, name), "cascade": cascade},
            )

    def reload(self) -> None:
        self.metadata.reload_metadata()

    # Relationships

    def define_object_relationship_foreign(self, schema: str, table: str, name: str, key: str) -> None:
        """Expose a many-to-one link keyed by a foreign-key column on this table."""

        logger.info("Defining object relationship %s on %s.%s using %s", name, schema, table, key)
        self.delete_relationship(schema, table, name)
        self.metadata.metadata(
            "pg_create_object_relationship",
            {
                "source": self.source,
                "table": self._table_ref(schema, table),
                "name": validate_identifier(name),
                "using": {"foreign_key_constraint_on": validate_identifier(key)},
            },
        )

    def define_array_relationship_foreign(self, schema: str, table: str, name: str, key: str) -> None:
        """Expose a one-to-many link; ``key`` names the remote ``table.column``."""

        remote_table, _, remote_column = key.partition(".")
        if not remote_column:
            raise ReconcilerError(f"Array relationship key must be '<table>.<column>', got {key!r}.")
        remote_schema = schema
        if "." in remote_column:
            remote_schema, remote_table, remote_column = key.split(".", 2)

        logger.info("Defining array relationship %s on %s.%s using %s", name, schema, table, key)
        self.delete_relationship(schema, table, name)
        self.metadata.metadata(
            "pg_create_array_relationship",
            {
                "source": self.source,
                "table": self._table_ref(schema, table),
                "name": validate_identifier(name),
                "using": {
                    "foreign_key_constraint_on": {
                        "table": self._table_ref(remote_schema, remote_table),
                        "column": validate_identifier(remote_column),
                    }
                },
            },
        )

    def delete_relationship(self, schema: str, table: str, name: str) -> None:
        self.metadata.metadata(
            "pg_drop_relationship",
            {"source": self.source, "table": self._table_ref(schema, table), "relationship": name},
        )

    # Views

    def define_view(self, schema: str, name: str, definition: str) -> None:
        """Recreate the view from ``definition`` (a SELECT) and track it."""

        logger.info("Defining view %s.%s", schema, name)
        self.untrack_view(schema, name)
        self.sql(f"DROP VIEW IF EXISTS {qualified_name(schema, name)} CASCADE")
        self.sql(f"CREATE VIEW {qualified_name(schema, name)} AS {definition.strip().rstrip(';')}")
        self.track_view(schema, name)

    def delete_view(self, schema: str, name: str) -> None:
        logger.info("Deleting view %s.%s", schema, name)
        self.untrack_view(schema, name)
        self.sql(f"DROP VIEW IF EXISTS {qualified_name(schema, name)} CASCADE")

    def track_view(self, schema: str, name: str) -> None:
        self.metadata.metadata("pg_track_table", {"source": self.source, "table": self._table_ref(schema, name)})

    def untrack_view(self, schema: str, name: str) -> None:
        self.metadata.metadata(
            "pg_untrack_table",
            {"source": self.source, "table": self._table_ref(schema, name), "cascade": False},
        )

    # Computed fields

    def define_computed_field(
        self,
        schema: str,
        table: str,
        name: str,
        *,
        function: tuple[str, str],
        table_argument: str | None = None,
        comment: str | None = None,
    ) -> None:
        """Expose ``function`` (taking the table row) as field ``name`` of the table."""

        function_schema, function_name = function
        definition: dict[str, Any] = {
            "function": {"schema": validate_identifier(function_schema), "name": validate_identifier(function_name)}
        }
        if table_argument:
            definition["table_argument"] = validate_identifier(table_argument)

        args: dict[str, Any] = {
            "source": self.source,
            "table": self._table_ref(schema, table),
            "name": validate_identifier(name),
            "definition": definition,
        }
        if comment is not None:
            args["comment"] = comment

        logger.info("Defining computed field %s on %s.%s", name, schema, table)
        self.delete_computed_field(schema, table, name)
        self.metadata.metadata("pg_add_computed_field", args)

    def delete_computed_field(self, schema: str, table: str, name: str) -> None:
        self.metadata.metadata(
            "pg_drop_computed_field",
            {"source": self.source, "table": self._table_ref(schema, table), "name": validate_identifier(name)},
        )

    # Permissions

    def define_permission(
        self,
        schema: str,
        table: str,
        operation: PermissionOperation | str,
        role: _RolesArg,
        *,
        filter: Mapping[str, Any] | None = None,
        columns: bool | Sequence[str] = True,
        aggregate: bool = False,
    ) -> None:
        op = PermissionOperation(operation)
        rule = dict(filter or {})

        column_list: list[str] | None = None
        if op is not PermissionOperation.DELETE:
            if columns is True:
                column_list = [column.name for column in self.columns(schema, table)]
            elif columns is False:
                column_list = []
            else:
                column_list = [validate_identifier(column) for column in columns]

        for role_name in _as_list(role):
            logger.info("Defining %s permission for role %s on %s.%s", op.value, role_name, schema, table)
            self.delete_permission(schema, table, op, role_name)

            permission: dict[str, Any] = {}
            if op is PermissionOperation.INSERT:
                permission["check"] = rule
            else:
                permission["filter"] = rule
            if column_list is not None:
                permission["columns"] = column_list
            if op is PermissionOperation.SELECT and aggregate:
                permission["allow_aggregations"] = True

            self.metadata.metadata(
                f"pg_create_{op.value}_permission",
                {
                    "source": self.source,
                    "table": self._table_ref(schema, table),
                    "role": role_name,
                    "permission": permission,
                },
            )

    def delete_permission(
        self,
        schema: str,
        table: str,
        operation: PermissionOperation | str,
        role: _RolesArg,
    ) -> None:
        op = PermissionOperation(operation)
        for role_name in _as_list(role):
            self.metadata.metadata(
                f"pg_drop_{op.value}_permission",
                {"source": self.source, "table": self._table_ref(schema, table), "role": role_name},
            )

    # Functions and triggers

    def define_function(
        self,
        schema: str,
        name: str,
        body: str,
        *,
        returns: str = "TRIGGER",
        language: str = "plpgsql",
    ) -> None:
        logger.info("Defining function %s.%s", schema, name)
        self.sql(create_function_sql(schema, name, body, returns=returns, language=language))

    def delete_function(self, schema: str, name: str) -> None:
        logger.info("Deleting function %s.%s", schema, name)
        self.sql(f"DROP FUNCTION IF EXISTS {qualified_name(schema, name)}() CASCADE")

    def define_trigger(
        self,
        schema: str,
        table: str,
        name: str,
        *,
        timing: TriggerTiming | str,
        event: str,
        function: tuple[str, str],
        args: Iterable[str] = (),
    ) -> None:
        when = TriggerTiming(timing)
        logger.info("Defining trigger %s on %s.%s", name, schema, table)
        self.delete_trigger(schema, table, name)
        self.sql(
            create_trigger_sql(
                name,
                timing=when.value,
                event=event,
                schema=schema,
                table=table,
                function=function,
                args=args,
            )
        )

    def delete_trigger(self, schema: str, table: str, name: str) -> None:
        self.sql(f"DROP TRIGGER IF EXISTS {quote_identifier(name)} ON {qualified_name(schema, table)}")

    def triggers(self, schema: str, table: str, *, prefix: str | None = None) -> list[str]:
        statement = (
            "SELECT t.tgname FROM pg_trigger t "
            "JOIN pg_class c ON c.oid = t.tgrelid "
            "JOIN pg_namespace n ON n.oid = c.relnamespace "
            "WHERE NOT t.tgisinternal AND n.nspname = :schema AND c.relname = :table"
        )
        params: dict[str, Any] = {"schema": schema, "table": table}
        if prefix:
            statement += " AND starts_with(t.tgname::text, :prefix)"
            params["prefix"] = prefix
        result = self.sql(statement + " ORDER BY t.tgname", params)
        return [str(name) for name in result.column(0)]

    # Introspection

    def schemas(self) -> list[str]:
        result = self.sql(
            "SELECT schema_name FROM information_schema.schemata ORDER BY schema_name"
        )
        return [str(name) for name in result.column(0) if not is_system_schema(str(name))]

    def tables(self, schema: str) -> list[str]:
        result = self.sql(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = :schema AND table_type = 'BASE TABLE' ORDER BY table_name",
            {"schema": schema},
        )
        return [str(name) for name in result.column(0)]

    def columns(self, schema: str, table: str) -> list[ColumnInfo]:
        result = self.sql(
            "SELECT column_name, data_type, udt_name FROM information_schema.columns "
            "WHERE table_schema = :schema AND table_name = :table ORDER BY ordinal_position",
            {"schema": schema, "table": table},
        )
        return [ColumnInfo(name=str(row[0]), data_type=str(row[1]), udt_name=str(row[2])) for row in result.rows]

    def primary_key(self, schema: str, table: str) -> list[str]:
        result = self.sql(
            "SELECT kcu.column_name FROM information_schema.table_constraints tc "
            "JOIN information_schema.key_column_usage kcu "
            "ON kcu.constraint_name = tc.constraint_name "
            "AND kcu.constraint_schema = tc.constraint_schema "
            "AND kcu.table_name = tc.table_name "
            "WHERE tc.constraint_type = 'PRIMARY KEY' "
            "AND tc.table_schema = :schema AND tc.table_name = :table "
            "ORDER BY kcu.ordinal_position",
            {"schema": schema, "table": table},
        )
        return [str(name) for name in result.column(0)]
