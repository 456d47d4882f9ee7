"""Generate per-column change-tracking triggers that feed the diffs audit table."""
from __future__ import annotations

import logging

from reconciler.config import Settings
from reconciler.schemas.logs import DiffTarget, LogsDiffsConfig
from reconciler.services.audit_triggers import (
    AuditNaming,
    PrimaryKeyRegistry,
    TriggerPlan,
    execute_plan,
    plan_teardown,
)
from reconciler.services.reconciler import Reconciler
from reconciler.services.sql_fragments import (
    create_function_sql,
    create_trigger_sql,
    qualified_name,
    quote_identifier,
    trigger_name,
)

logger = logging.getLogger(__name__)

DIFFS_TABLE = "diffs"
DIFF_FUNCTION = "record_diff"


def diff_function_sql(naming: AuditNaming) -> str:
    """Shared trigger function; TG_ARGV[0] is the watched column, TG_ARGV[1] the id column."""

    audit_table = qualified_name(naming.schema, DIFFS_TABLE)
    body = f"""
DECLARE
  user_id_val UUID;
  row_data JSONB;
BEGIN
  {naming.user_id_block()}
  row_data := to_jsonb(NEW);

  INSERT INTO {audit_table} (_schema, _table, _column, _id, user_id, _value)
  VALUES (
    TG_TABLE_SCHEMA,
    TG_TABLE_NAME,
    TG_ARGV[0],
    COALESCE(row_data ->> TG_ARGV[1], 'unknown'),
    user_id_val,
    row_data ->> TG_ARGV[0]
  );

  RETURN NEW;
END;
"""
    return create_function_sql(*naming.function(DIFF_FUNCTION), body)


def diff_trigger_name(naming: AuditNaming, target: DiffTarget) -> str:
    return trigger_name(naming.prefix, "diffs", target.schema_name, target.table, target.column)


def unique_diff_targets(targets: list[DiffTarget]) -> list[DiffTarget]:
    """Drop repeated (schema, table, column) entries; the last one wins."""

    merged: dict[tuple[str, str, str], DiffTarget] = {}
    for target in targets:
        key = (target.schema_name, target.table, target.column)
        if key in merged:
            logger.warning("Diffs target %s.%s.%s is listed more than once.", *key)
        merged[key] = target
    return list(merged.values())


def plan_logs_diffs(
    reconciler: Reconciler,
    config: LogsDiffsConfig,
    *,
    naming: AuditNaming,
    registry: PrimaryKeyRegistry | None = None,
) -> TriggerPlan:
    registry = registry or PrimaryKeyRegistry(reconciler)
    plan = TriggerPlan()
    plan_teardown(
        reconciler,
        plan,
        trigger_prefix=naming.trigger_prefix("diffs"),
        functions=[naming.function(DIFF_FUNCTION)],
    )

    if not config.diffs:
        return plan

    plan.add(diff_function_sql(naming))
    for target in unique_diff_targets(config.diffs):
        if target.id_column:
            registry.register(target.schema_name, target.table, target.id_column)
        id_column = registry.resolve(target.schema_name, target.table)
        name = diff_trigger_name(naming, target)
        plan.add(
            create_trigger_sql(
                name,
                timing="AFTER",
                event=f"INSERT OR UPDATE OF {quote_identifier(target.column)}",
                schema=target.schema_name,
                table=target.table,
                function=naming.function(DIFF_FUNCTION),
                args=(target.column, id_column),
            )
        )
        plan.created_triggers.append(name)
    return plan


def apply_logs_diffs(
    reconciler: Reconciler,
    config: LogsDiffsConfig,
    *,
    settings: Settings | None = None,
) -> TriggerPlan:
    """Tear down every generated diffs trigger and recreate the configured ones."""

    naming = AuditNaming.from_settings(settings)
    logger.info("Applying logs-diffs configuration with %d targets", len(config.diffs))
    plan = plan_logs_diffs(reconciler, config, naming=naming)
    execute_plan(reconciler, plan)
    logger.info(
        "Logs-diffs applied: removed %d triggers, created %d triggers",
        len(plan.dropped_triggers),
        len(plan.created_triggers),
    )
    return plan
