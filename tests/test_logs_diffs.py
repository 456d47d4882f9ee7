from __future__ import annotations

import pytest

from reconciler.schemas.logs import LogsDiffsConfig
from reconciler.services.audit_triggers import AuditNaming, AuditTriggerError, PrimaryKeyRegistry
from reconciler.services.logs_diffs import apply_logs_diffs, diff_function_sql, plan_logs_diffs


@pytest.fixture()
def naming(settings) -> AuditNaming:
    return AuditNaming.from_settings(settings)


def test_apply_tears_down_then_recreates_in_one_transaction(reconciler, executor, catalog, settings):
    catalog.add_table("public", "users", columns=["id", "name"], triggers=["hasyx_diffs_public_users_email"])
    catalog.add_table("billing", "invoices", triggers=["hasyx_diffs_billing_invoices_total", "other_trigger"])
    config = LogsDiffsConfig.model_validate({"diffs": [{"table": "users", "column": "name"}]})

    plan = apply_logs_diffs(reconciler, config, settings=settings)

    assert plan.dropped_triggers == [
        "billing.invoices.hasyx_diffs_billing_invoices_total",
        "public.users.hasyx_diffs_public_users_email",
    ]
    assert plan.created_triggers == ["hasyx_diffs_public_users_name"]
    assert len(executor.transactions) == 1
    statements = executor.transactions[0]
    assert statements[0] == 'DROP TRIGGER IF EXISTS "hasyx_diffs_billing_invoices_total" ON "billing"."invoices"'
    assert statements[2] == 'DROP FUNCTION IF EXISTS "logs"."hasyx_record_diff"() CASCADE'
    assert statements[3].startswith('CREATE OR REPLACE FUNCTION "logs"."hasyx_record_diff"()')
    assert statements[4] == (
        'CREATE TRIGGER "hasyx_diffs_public_users_name"\n'
        '  AFTER INSERT OR UPDATE OF "name" ON "public"."users"\n'
        "  FOR EACH ROW\n"
        '  EXECUTE FUNCTION "logs"."hasyx_record_diff"(\'name\', \'id\')'
    )
    assert not any("other_trigger" in statement for statement in statements)


def test_empty_config_only_tears_down(reconciler, executor, catalog, naming):
    catalog.add_table("public", "users", triggers=["hasyx_diffs_public_users_name"])

    plan = plan_logs_diffs(reconciler, LogsDiffsConfig(), naming=naming)

    assert plan.created_triggers == []
    assert plan.statements == [
        'DROP TRIGGER IF EXISTS "hasyx_diffs_public_users_name" ON "public"."users"',
        'DROP FUNCTION IF EXISTS "logs"."hasyx_record_diff"() CASCADE',
    ]


def test_explicit_id_column_skips_introspection(reconciler, executor, catalog, naming):
    catalog.add_table("public", "events", columns=["event_key", "payload"], primary_key=[])
    config = LogsDiffsConfig.model_validate(
        {"diffs": [{"schema": "public", "table": "events", "column": "payload", "idColumn": "event_key"}]}
    )

    plan = plan_logs_diffs(reconciler, config, naming=naming)

    assert plan.statements[-1].endswith("(\'payload\', \'event_key\')")
    assert not any("table_constraints" in statement for statement in executor.sql)


def test_missing_primary_key_fails_before_any_change(reconciler, executor, catalog, naming):
    catalog.add_table("public", "events", primary_key=[])
    config = LogsDiffsConfig.model_validate({"diffs": [{"table": "events", "column": "payload"}]})

    with pytest.raises(AuditTriggerError, match="no primary key"):
        plan_logs_diffs(reconciler, config, naming=naming)
    assert executor.transactions == []


def test_composite_primary_key_requires_override(reconciler, catalog):
    catalog.add_table("public", "memberships", primary_key=["user_id", "group_id"])
    registry = PrimaryKeyRegistry(reconciler)

    with pytest.raises(AuditTriggerError, match="composite"):
        registry.resolve("public", "memberships")

    registry.register("public", "memberships", "user_id")
    assert registry.resolve("public", "memberships") == "user_id"


def test_failed_statement_aborts_apply(reconciler, executor, catalog, settings):
    catalog.add_table("public", "users")
    executor.fail_on = "CREATE TRIGGER"
    config = LogsDiffsConfig.model_validate({"diffs": [{"table": "users", "column": "id"}]})

    with pytest.raises(Exception, match="forced failure"):
        apply_logs_diffs(reconciler, config, settings=settings)


def test_function_reads_user_from_session_claims(naming):
    sql = diff_function_sql(naming)

    assert "current_setting('hasura.user', true)" in sql
    assert "->> 'x-hasura-user-id'" in sql
    assert 'INSERT INTO "logs"."diffs" (_schema, _table, _column, _id, user_id, _value)' in sql
    assert "EXCEPTION WHEN OTHERS" in sql


def test_custom_prefix_and_schema(reconciler, catalog, settings):
    catalog.add_table("public", "users", triggers=["hasyx_diffs_public_users_name", "audit_diffs_public_users_x"])
    custom = settings.model_copy(update={"audit_trigger_prefix": "audit", "audit_schema": "history"})

    plan = plan_logs_diffs(
        reconciler,
        LogsDiffsConfig.model_validate({"diffs": [{"table": "users", "column": "name"}]}),
        naming=AuditNaming.from_settings(custom),
    )

    assert plan.dropped_triggers == ["public.users.audit_diffs_public_users_x"]
    assert plan.created_triggers == ["audit_diffs_public_users_name"]
    assert '"history"."audit_record_diff"' in plan.statements[-1]


def test_repeated_target_creates_one_trigger(reconciler, executor, catalog, settings):
    catalog.add_table("public", "users", columns=["id", "name"])
    config = LogsDiffsConfig.model_validate(
        {
            "diffs": [
                {"table": "users", "column": "name"},
                {"schema": "public", "table": "users", "column": "name"},
            ]
        }
    )

    plan = apply_logs_diffs(reconciler, config, settings=settings)

    assert plan.created_triggers == ["hasyx_diffs_public_users_name"]
    creates = [s for s in executor.transactions[0] if s.startswith("CREATE TRIGGER")]
    assert len(creates) == 1
