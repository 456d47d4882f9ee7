"""Register database event triggers that post to this service, and verify their calls."""
from __future__ import annotations

import hmac
import logging
from typing import Any, Iterable, Mapping

from reconciler.config import Settings, get_settings
from reconciler.services.metadata_client import MetadataClient
from reconciler.services.sql_fragments import validate_identifier

logger = logging.getLogger(__name__)

EVENT_SECRET_HEADER = "X-Hasura-Event-Secret"
EVENT_SECRET_ENV = "HASURA_EVENT_SECRET"
DEFAULT_RETRY_CONF = {"num_retries": 3, "interval_sec": 15, "timeout_sec": 60}


def webhook_url(settings: Settings, path: str) -> str:
    base = (settings.events_base_url or "").rstrip("/")
    if not base:
        raise ValueError("events_base_url must be configured to register event triggers.")
    return f"{base}/{path.lstrip('/')}"


def define_event_trigger(
    metadata: MetadataClient,
    name: str,
    *,
    schema: str,
    table: str,
    webhook: str,
    insert_columns: str | Iterable[str] | None = "*",
    update_columns: str | Iterable[str] | None = None,
    delete_columns: str | Iterable[str] | None = None,
    settings: Settings | None = None,
) -> None:
    """Create or replace a Postgres event trigger pointing at ``webhook``."""

    resolved = settings or get_settings()
    args: dict[str, Any] = {
        "name": validate_identifier(name),
        "source": metadata.source,
        "table": {"schema": validate_identifier(schema), "name": validate_identifier(table)},
        "webhook": webhook,
        "retry_conf": dict(DEFAULT_RETRY_CONF),
        "replace": True,
    }
    for operation, columns in (("insert", insert_columns), ("update", update_columns), ("delete", delete_columns)):
        if columns is None:
            continue
        args[operation] = {"columns": columns if isinstance(columns, str) else list(columns)}

    if resolved.hasura_event_secret:
        args["headers"] = [{"name": EVENT_SECRET_HEADER, "value_from_env": EVENT_SECRET_ENV}]
    else:
        logger.warning("hasura_event_secret is not set; event trigger %s is registered without a secret header.", name)

    logger.info("Defining event trigger %s on %s.%s -> %s", name, schema, table, webhook)
    metadata.metadata("pg_create_event_trigger", args)


def delete_event_trigger(metadata: MetadataClient, name: str) -> None:
    logger.info("Deleting event trigger %s", name)
    metadata.metadata("pg_delete_event_trigger", {"name": validate_identifier(name), "source": metadata.source})


def verify_event_secret(headers: Mapping[str, str], settings: Settings | None = None) -> bool:
    """Check the shared event secret sent by the GraphQL engine.

    Without a configured secret, development accepts every call and
    production rejects every call.
    """

    resolved = settings or get_settings()
    expected = resolved.hasura_event_secret
    if not expected:
        if resolved.environment == "production":
            logger.error("No event secret configured in production; request denied.")
            return False
        logger.warning("No event secret configured; accepting unauthenticated event call.")
        return True

    provided = None
    for key, value in headers.items():
        if key.lower() == EVENT_SECRET_HEADER.lower():
            provided = value
            break
    if provided is None or not hmac.compare_digest(str(provided), expected):
        logger.warning("Invalid event secret provided in request.")
        return False
    return True
