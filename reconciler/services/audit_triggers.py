"""Shared pieces of the diffs/states audit trigger generators."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from reconciler.config import Settings, get_settings
from reconciler.services.reconciler import Reconciler
from reconciler.services.sql_fragments import qualified_name, quote_identifier, quote_literal, validate_identifier

logger = logging.getLogger(__name__)


class AuditTriggerError(Exception):
    """Raised when audit triggers cannot be generated for the configured targets."""


@dataclass(frozen=True)
class AuditNaming:
    schema: str
    prefix: str
    user_setting: str
    user_claim: str

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "AuditNaming":
        resolved = settings or get_settings()
        return cls(
            schema=validate_identifier(resolved.audit_schema),
            prefix=validate_identifier(resolved.audit_trigger_prefix),
            user_setting=resolved.audit_user_setting,
            user_claim=resolved.audit_user_claim,
        )

    def trigger_prefix(self, kind: str) -> str:
        return f"{self.prefix}_{kind}_"

    def function(self, name: str) -> tuple[str, str]:
        return self.schema, f"{self.prefix}_{name}"

    def user_id_block(self, target: str = "user_id_val") -> str:
        """PL/pgSQL that reads the acting user id from the session claims."""
        return (
            "BEGIN\n"
            f"    {target} := NULLIF(\n"
            f"      NULLIF(current_setting({quote_literal(self.user_setting)}, true), '')::jsonb"
            f" ->> {quote_literal(self.user_claim)},\n"
            "      ''\n"
            "    )::uuid;\n"
            "  EXCEPTION WHEN OTHERS THEN\n"
            f"    {target} := NULL;\n"
            "  END;"
        )


class PrimaryKeyRegistry:
    """Resolves the record id column of each audited table once, at generation time."""

    def __init__(self, reconciler: Reconciler, overrides: dict[tuple[str, str], str] | None = None) -> None:
        self._reconciler = reconciler
        self._resolved: dict[tuple[str, str], str] = dict(overrides or {})

    def register(self, schema: str, table: str, column: str) -> None:
        self._resolved[(schema, table)] = validate_identifier(column)

    def resolve(self, schema: str, table: str) -> str:
        key = (schema, table)
        if key in self._resolved:
            return self._resolved[key]

        columns = self._reconciler.primary_key(schema, table)
        if not columns:
            raise AuditTriggerError(
                f"Table {schema}.{table} has no primary key; set id_column for it in the logs config."
            )
        if len(columns) > 1:
            raise AuditTriggerError(
                f"Table {schema}.{table} has a composite primary key ({', '.join(columns)});"
                " set id_column for it in the logs config."
            )
        self._resolved[key] = columns[0]
        return columns[0]


@dataclass
class TriggerPlan:
    """Statements collected before they are executed in one transaction."""

    statements: list[str] = field(default_factory=list)
    dropped_triggers: list[str] = field(default_factory=list)
    created_triggers: list[str] = field(default_factory=list)

    def add(self, statement: str) -> None:
        self.statements.append(statement.strip())


def plan_teardown(
    reconciler: Reconciler,
    plan: TriggerPlan,
    *,
    trigger_prefix: str,
    functions: Iterable[tuple[str, str]],
) -> None:
    """Queue drops for every generated trigger in every user table, then the shared functions."""

    for schema in reconciler.schemas():
        for table in reconciler.tables(schema):
            for name in reconciler.triggers(schema, table, prefix=trigger_prefix):
                plan.add(f"DROP TRIGGER IF EXISTS {quote_identifier(name)} ON {qualified_name(schema, table)}")
                plan.dropped_triggers.append(f"{schema}.{table}.{name}")
                logger.debug("Queued removal of trigger %s on %s.%s", name, schema, table)

    for function_schema, function_name in functions:
        plan.add(f"DROP FUNCTION IF EXISTS {qualified_name(function_schema, function_name)}() CASCADE")


def execute_plan(reconciler: Reconciler, plan: TriggerPlan) -> None:
    with reconciler.executor.transaction() as executor:
        for statement in plan.statements:
            executor.execute(statement)
