from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from reconciler.services.logs import process_logs
from reconciler.services.logs_config import LogsConfigError, load_logs_config, parse_logs_config


def _write(tmp_path: Path, payload) -> Path:
    path = tmp_path / "hasyx.config.json"
    path.write_text(payload if isinstance(payload, str) else json.dumps(payload), encoding="utf-8")
    return path


def test_nested_sections_are_read(tmp_path: Path):
    path = _write(
        tmp_path,
        {
            "logs-diffs": {"diffs": [{"schema": "public", "table": "users", "column": "name"}]},
            "logs-states": {"states": [{"table": "users", "columns": ["email"]}]},
        },
    )

    config = load_logs_config(path)

    assert config is not None
    assert config.diffs.diffs[0].column == "name"
    assert config.states.states[0].schema_name == "public"
    assert config.states.states[0].columns == ["email"]


def test_flat_sections_are_read():
    config = parse_logs_config({"diffs": [{"table": "users", "column": "name"}]})

    assert config.diffs is not None
    assert config.states is None


def test_missing_file_is_skipped_with_warning(tmp_path: Path, caplog: pytest.LogCaptureFixture):
    with caplog.at_level(logging.WARNING, logger="reconciler.services.logs_config"):
        assert load_logs_config(tmp_path / "absent.json") is None

    assert "not found" in caplog.text


def test_malformed_json_is_skipped(tmp_path: Path):
    assert load_logs_config(_write(tmp_path, "{not json")) is None


def test_invalid_section_is_skipped(tmp_path: Path):
    path = _write(tmp_path, {"logs-diffs": {"diffs": [{"table": "users"}]}})

    config = load_logs_config(path)

    assert config is not None
    assert config.diffs is None
    assert config.states is None


def test_invalid_states_section_keeps_valid_diffs(tmp_path: Path, caplog: pytest.LogCaptureFixture):
    path = _write(
        tmp_path,
        {
            "diffs": [{"schema": "public", "table": "users", "column": "name"}],
            "states": [{"table": "users", "columns": []}],
        },
    )

    with caplog.at_level(logging.WARNING, logger="reconciler.services.logs_config"):
        config = load_logs_config(path)

    assert config is not None
    assert config.diffs is not None
    assert config.diffs.diffs[0].column == "name"
    assert config.states is None
    assert "logs-states" in caplog.text


def test_misshapen_nested_section_only_drops_that_section():
    config = parse_logs_config(
        {"logs-diffs": ["users"], "logs-states": {"states": [{"table": "users", "columns": ["email"]}]}}
    )

    assert config.diffs is None
    assert config.states.states[0].columns == ["email"]


def test_parse_rejects_non_object_documents():
    with pytest.raises(LogsConfigError):
        parse_logs_config(["diffs"])


def test_process_logs_applies_only_the_valid_section(reconciler, executor, catalog, settings, tmp_path: Path):
    catalog.add_table("public", "users", columns=["id", "name"])
    path = _write(
        tmp_path,
        {"diffs": [{"table": "users", "column": "name"}], "states": [{"table": "users", "columns": []}]},
    )

    result = process_logs(
        reconciler, settings=settings.model_copy(update={"logs_config_path": str(path)})
    )

    assert result.diffs.created_triggers == ["hasyx_diffs_public_users_name"]
    assert result.states is None
    assert len(executor.transactions) == 1


def test_process_logs_applies_diffs_then_states(reconciler, executor, catalog, settings):
    catalog.add_table("public", "users", columns=["id", "name", "email"])
    config = parse_logs_config(
        {
            "diffs": [{"table": "users", "column": "name"}],
            "states": [{"table": "users", "columns": ["email"]}],
        }
    )

    result = process_logs(reconciler, config, settings=settings)

    assert result.diffs.created_triggers == ["hasyx_diffs_public_users_name"]
    assert result.states.created_triggers == ["hasyx_states_public_users_iu", "hasyx_states_public_users_d"]
    assert len(executor.transactions) == 2


def test_process_logs_without_config_file_does_nothing(reconciler, executor, settings, tmp_path: Path):
    missing = settings.model_copy(update={"logs_config_path": str(tmp_path / "missing.json")})

    result = process_logs(reconciler, settings=missing)

    assert result.diffs is None and result.states is None
    assert executor.statements == []
