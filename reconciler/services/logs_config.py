"""Load the audit logging targets from the project JSON config file."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping, TypeVar

from pydantic import BaseModel, ValidationError

from reconciler.schemas.logs import LogsConfig, LogsDiffsConfig, LogsStatesConfig

logger = logging.getLogger(__name__)

DIFFS_SECTION = "logs-diffs"
STATES_SECTION = "logs-states"

ModelT = TypeVar("ModelT", bound=BaseModel)


class LogsConfigError(Exception):
    """Raised when the logs section of the project config cannot be used."""


def _section(document: Mapping[str, Any], nested_key: str, flat_key: str) -> Any:
    nested = document.get(nested_key)
    if isinstance(nested, Mapping):
        return nested.get(flat_key, [])
    if nested is not None:
        raise LogsConfigError(f"'{nested_key}' must be an object with a '{flat_key}' list.")
    return document.get(flat_key)


def _parse_section(
    document: Mapping[str, Any],
    nested_key: str,
    flat_key: str,
    model: type[ModelT],
) -> ModelT | None:
    try:
        entries = _section(document, nested_key, flat_key)
        if entries is None:
            return None
        return model.model_validate({flat_key: entries})
    except (LogsConfigError, ValidationError) as exc:
        logger.warning("Ignoring invalid %s section of the logs config: %s", nested_key, exc)
        return None


def parse_logs_config(document: Any) -> LogsConfig:
    """Build a ``LogsConfig`` from an already decoded JSON document.

    Both the flat ``{"diffs": [...], "states": [...]}`` layout and the nested
    ``{"logs-diffs": {"diffs": [...]}, "logs-states": {"states": [...]}}``
    layout are accepted. A section that is absent or invalid stays ``None``
    so only its own generator is skipped.
    """

    if not isinstance(document, Mapping):
        raise LogsConfigError("Logs config must be a JSON object.")

    return LogsConfig(
        diffs=_parse_section(document, DIFFS_SECTION, "diffs", LogsDiffsConfig),
        states=_parse_section(document, STATES_SECTION, "states", LogsStatesConfig),
    )


def load_logs_config(path: str | Path) -> LogsConfig | None:
    """Read the config file, returning ``None`` when it is missing or unusable."""

    config_path = Path(path)
    if not config_path.is_file():
        logger.warning("Logs config %s not found; audit logging is skipped.", config_path)
        return None

    try:
        document = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Unable to read logs config %s: %s", config_path, exc)
        return None

    try:
        config = parse_logs_config(document)
    except LogsConfigError as exc:
        logger.warning("Ignoring logs config %s: %s", config_path, exc)
        return None

    logger.info(
        "Loaded logs config from %s (%d diffs targets, %d states targets)",
        config_path,
        len(config.diffs.diffs) if config.diffs else 0,
        len(config.states.states) if config.states else 0,
    )
    return config
