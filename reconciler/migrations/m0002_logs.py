"""Audit tables for column diffs and row state snapshots."""
from __future__ import annotations

import logging

from reconciler.config import get_settings
from reconciler.schemas.reconcile import ColumnType
from reconciler.services.event_triggers import define_event_trigger, delete_event_trigger, webhook_url
from reconciler.services.reconciler import Reconciler

logger = logging.getLogger(__name__)

EVENT_TRIGGER = "logs_diffs"
EVENT_WEBHOOK_PATH = "/api/events/logs-diffs"
PROTECT_FUNCTION = "prevent_diffs_update"
PROTECT_TRIGGER = "prevent_diffs_update_trigger"

_SOURCE_COLUMNS = [
    ("_schema", ColumnType.TEXT, "NOT NULL", "Source schema name"),
    ("_table", ColumnType.TEXT, "NOT NULL", "Source table name"),
    ("_column", ColumnType.TEXT, "NOT NULL", "Source column name"),
    ("_id", ColumnType.TEXT, "NOT NULL", "Source record identifier"),
    ("user_id", ColumnType.UUID, None, "User who made the change"),
]

DIFFS_COLUMNS = _SOURCE_COLUMNS + [
    ("_value", ColumnType.TEXT, None, "Value of the column after the change"),
    ("diff", ColumnType.TEXT, None, "Patch from the previous value, filled in by the materializer"),
    ("processed", ColumnType.BOOLEAN, "NOT NULL DEFAULT FALSE", "Whether the patch has been computed"),
    ("created_at", ColumnType.TIMESTAMPTZ, "NOT NULL DEFAULT clock_timestamp()", "When the diff was recorded"),
    ("updated_at", ColumnType.TIMESTAMPTZ, "DEFAULT now()", "When the record was last updated"),
]

STATES_COLUMNS = _SOURCE_COLUMNS + [
    ("state", ColumnType.JSONB, None, "Snapshot of the watched column, NULL after delete"),
    ("created_at", ColumnType.TIMESTAMPTZ, "NOT NULL DEFAULT clock_timestamp()", "When the state was captured"),
]

DIFFS_USER_FIELDS = ["id", "_schema", "_table", "_column", "_id", "user_id", "created_at", "diff"]
DIFFS_ADMIN_FIELDS = DIFFS_USER_FIELDS + ["updated_at", "_value", "processed"]
STATES_FIELDS = ["id", "_schema", "_table", "_column", "_id", "user_id", "created_at", "state"]


PROTECT_DIFFS_BODY = """
BEGIN
  IF OLD._schema IS DISTINCT FROM NEW._schema OR
     OLD._table IS DISTINCT FROM NEW._table OR
     OLD._column IS DISTINCT FROM NEW._column OR
     OLD._id IS DISTINCT FROM NEW._id OR
     OLD.user_id IS DISTINCT FROM NEW.user_id OR
     OLD.created_at IS DISTINCT FROM NEW.created_at OR
     OLD._value IS DISTINCT FROM NEW._value THEN
    RAISE EXCEPTION 'Only diff, processed and updated_at may change on a diffs record.';
  END IF;
  NEW.updated_at := now();
  RETURN NEW;
END;
"""


def apply_schema(reconciler: Reconciler, schema: str) -> None:
    reconciler.define_schema(schema)
    for table, columns in (("diffs", DIFFS_COLUMNS), ("states", STATES_COLUMNS)):
        reconciler.define_table(schema, table, timestamps=False)
        for name, column_type, postfix, comment in columns:
            reconciler.define_column(schema, table, name, column_type, postfix=postfix, comment=comment)

    with reconciler.executor.transaction():
        reconciler.define_function(schema, PROTECT_FUNCTION, PROTECT_DIFFS_BODY)
        reconciler.define_trigger(
            schema,
            "diffs",
            PROTECT_TRIGGER,
            timing="BEFORE",
            event="UPDATE",
            function=(schema, PROTECT_FUNCTION),
        )


def apply_metadata(reconciler: Reconciler, schema: str) -> None:
    reconciler.track_table(schema, ["diffs", "states"])
    reconciler.define_permission(schema, "diffs", "select", "user", filter={}, columns=DIFFS_USER_FIELDS)
    reconciler.define_permission(schema, "diffs", "select", "admin", filter={}, columns=DIFFS_ADMIN_FIELDS)
    reconciler.define_permission(schema, "states", "select", ["user", "admin"], filter={}, columns=STATES_FIELDS)


def apply_event_trigger(reconciler: Reconciler, schema: str) -> None:
    settings = get_settings()
    if not settings.events_base_url:
        logger.warning("events_base_url is not set; diffs will not be materialized automatically.")
        return
    define_event_trigger(
        reconciler.metadata,
        EVENT_TRIGGER,
        schema=schema,
        table="diffs",
        webhook=webhook_url(settings, EVENT_WEBHOOK_PATH),
        insert_columns="*",
        settings=settings,
    )


def up(reconciler: Reconciler) -> None:
    schema = get_settings().audit_schema
    logger.info("Applying logs migration in schema %s", schema)
    apply_schema(reconciler, schema)
    apply_metadata(reconciler, schema)
    apply_event_trigger(reconciler, schema)


def down(reconciler: Reconciler) -> None:
    schema = get_settings().audit_schema
    logger.info("Reverting logs migration in schema %s", schema)
    delete_event_trigger(reconciler.metadata, EVENT_TRIGGER)
    for table in ("diffs", "states"):
        reconciler.delete_permission(schema, table, "select", ["user", "admin"])
    reconciler.delete_trigger(schema, "diffs", PROTECT_TRIGGER)
    reconciler.delete_function(schema, PROTECT_FUNCTION)
    reconciler.delete_table(schema, ["diffs", "states"])
    reconciler.delete_schema(schema)
