"""Generate state-snapshot triggers that feed the states audit table."""
from __future__ import annotations

import logging

from reconciler.config import Settings
from reconciler.schemas.logs import LogsStatesConfig, StateTarget
from reconciler.services.audit_triggers import (
    AuditNaming,
    PrimaryKeyRegistry,
    TriggerPlan,
    execute_plan,
    plan_teardown,
)
from reconciler.services.reconciler import Reconciler
from reconciler.services.sql_fragments import create_function_sql, create_trigger_sql, qualified_name, trigger_name

logger = logging.getLogger(__name__)

STATES_TABLE = "states"
INSERT_UPDATE_FUNCTION = "record_state_insert_update"
DELETE_FUNCTION = "record_state_delete"


def _state_function_sql(naming: AuditNaming, function_name: str, *, row: str, deleted: bool) -> str:
    # TG_ARGV[0] is the id column; the remaining arguments are the watched columns.
    audit_table = qualified_name(naming.schema, STATES_TABLE)
    state_value = "NULL" if deleted else "jsonb_build_object(col_name, row_data -> col_name)"
    body = f"""
DECLARE
  user_id_val UUID;
  record_id TEXT;
  row_data JSONB;
  col_name TEXT;
BEGIN
  {naming.user_id_block()}
  row_data := to_jsonb({row});
  record_id := COALESCE(row_data ->> TG_ARGV[0], 'unknown');

  FOR i IN 1..TG_NARGS-1 LOOP
    col_name := TG_ARGV[i];
    INSERT INTO {audit_table} (_schema, _table, _column, _id, user_id, state)
    VALUES (TG_TABLE_SCHEMA, TG_TABLE_NAME, col_name, record_id, user_id_val, {state_value});
  END LOOP;

  RETURN {row};
END;
"""
    return create_function_sql(*naming.function(function_name), body)


def insert_update_function_sql(naming: AuditNaming) -> str:
    return _state_function_sql(naming, INSERT_UPDATE_FUNCTION, row="NEW", deleted=False)


def delete_function_sql(naming: AuditNaming) -> str:
    return _state_function_sql(naming, DELETE_FUNCTION, row="OLD", deleted=True)


def state_trigger_names(naming: AuditNaming, target: StateTarget) -> tuple[str, str]:
    base = (naming.prefix, "states", target.schema_name, target.table)
    return trigger_name(*base, "iu"), trigger_name(*base, "d")


def merge_state_targets(targets: list[StateTarget]) -> list[StateTarget]:
    """Fold entries for the same table into one, keeping each watched column once.

    Every table gets a single pair of triggers, so its entries must share them.
    """

    merged: dict[tuple[str, str], StateTarget] = {}
    for target in targets:
        key = (target.schema_name, target.table)
        existing = merged.get(key)
        if existing is None:
            merged[key] = target
            continue
        logger.warning("States target %s.%s is listed more than once; merging its columns.", *key)
        columns = list(existing.columns)
        columns.extend(column for column in target.columns if column not in columns)
        merged[key] = existing.model_copy(
            update={"columns": columns, "id_column": target.id_column or existing.id_column}
        )
    return list(merged.values())


def plan_logs_states(
    reconciler: Reconciler,
    config: LogsStatesConfig,
    *,
    naming: AuditNaming,
    registry: PrimaryKeyRegistry | None = None,
) -> TriggerPlan:
    registry = registry or PrimaryKeyRegistry(reconciler)
    plan = TriggerPlan()
    plan_teardown(
        reconciler,
        plan,
        trigger_prefix=naming.trigger_prefix("states"),
        functions=[naming.function(INSERT_UPDATE_FUNCTION), naming.function(DELETE_FUNCTION)],
    )

    if not config.states:
        return plan

    plan.add(insert_update_function_sql(naming))
    plan.add(delete_function_sql(naming))
    for target in merge_state_targets(config.states):
        if target.id_column:
            registry.register(target.schema_name, target.table, target.id_column)
        id_column = registry.resolve(target.schema_name, target.table)
        insert_update_name, delete_name = state_trigger_names(naming, target)
        args = (id_column, *target.columns)
        plan.add(
            create_trigger_sql(
                insert_update_name,
                timing="AFTER",
                event="INSERT OR UPDATE",
                schema=target.schema_name,
                table=target.table,
                function=naming.function(INSERT_UPDATE_FUNCTION),
                args=args,
            )
        )
        plan.add(
            create_trigger_sql(
                delete_name,
                timing="AFTER",
                event="DELETE",
                schema=target.schema_name,
                table=target.table,
                function=naming.function(DELETE_FUNCTION),
                args=args,
            )
        )
        plan.created_triggers.extend([insert_update_name, delete_name])
    return plan


def apply_logs_states(
    reconciler: Reconciler,
    config: LogsStatesConfig,
    *,
    settings: Settings | None = None,
) -> TriggerPlan:
    """Tear down every generated states trigger and recreate the configured ones."""

    naming = AuditNaming.from_settings(settings)
    logger.info("Applying logs-states configuration with %d targets", len(config.states))
    plan = plan_logs_states(reconciler, config, naming=naming)
    execute_plan(reconciler, plan)
    logger.info(
        "Logs-states applied: removed %d triggers, created %d triggers",
        len(plan.dropped_triggers),
        len(plan.created_triggers),
    )
    return plan
