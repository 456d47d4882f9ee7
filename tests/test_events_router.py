from __future__ import annotations

from reconciler.config import get_settings
from reconciler.main import app
from reconciler.services.event_triggers import verify_event_secret
from reconciler.services.sql_executor import SqlResult


def _event(diff_id: str | None = "d1") -> dict:
    new = {"id": diff_id, "_schema": "public", "_table": "users", "_column": "name", "_value": "Alicia"}
    return {
        "id": "evt-1",
        "created_at": "2024-01-01T00:00:00Z",
        "event": {"op": "INSERT", "data": {"old": None, "new": new}},
        "table": {"schema": "logs", "name": "diffs"},
        "trigger": {"name": "logs_diffs"},
    }


def _prime(executor) -> None:
    executor.results = [
        (
            "SELECT cur._value",
            SqlResult(header=["current_value", "previous_value", "column_name"], rows=[["Alicia", "Alice", "name"]]),
        ),
        ("UPDATE", SqlResult(header=["id"], rows=[["d1"]])),
    ]


def test_health_check(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_logs_diffs_event_materializes_patch(client, executor):
    _prime(executor)

    response = client.post("/events/logs-diffs", json=_event())

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["diffId"] == "d1"
    assert "+Alicia" in body["patch"]


def test_wrapped_payload_is_accepted(client, executor):
    _prime(executor)

    response = client.post("/events/logs-diffs", json={"payload": _event()})

    assert response.status_code == 200


def test_missing_record_id_is_rejected(client):
    response = client.post("/events/logs-diffs", json=_event(diff_id=None))

    assert response.status_code == 400


def test_invalid_payload_is_rejected(client):
    response = client.post("/events/logs-diffs", json={"event": {"op": "INSERT"}})

    assert response.status_code == 400


def test_materialization_failure_returns_500(client, executor):
    executor.results = [("SELECT cur._value", SqlResult(header=["current_value"], rows=[]))]

    response = client.post("/events/logs-diffs", json=_event())

    assert response.status_code == 500
    assert response.json()["success"] is False
    assert "not found" in response.json()["error"]


def test_event_secret_is_enforced(client, executor, settings):
    _prime(executor)
    secured = settings.model_copy(update={"hasura_event_secret": "s3cret"})
    app.dependency_overrides[get_settings] = lambda: secured

    denied = client.post("/events/logs-diffs", json=_event(), headers={"X-Hasura-Event-Secret": "wrong"})
    allowed = client.post("/events/logs-diffs", json=_event(), headers={"X-Hasura-Event-Secret": "s3cret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200


def test_missing_secret_depends_on_environment(settings):
    production = settings.model_copy(update={"environment": "production", "hasura_event_secret": None})
    development = settings.model_copy(update={"environment": "development", "hasura_event_secret": None})

    assert verify_event_secret({}, production) is False
    assert verify_event_secret({}, development) is True
    assert verify_event_secret({"x-hasura-event-secret": "abc"}, settings.model_copy(update={"hasura_event_secret": "abc"}))
