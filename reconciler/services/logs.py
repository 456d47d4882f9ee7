from __future__ import annotations

import logging
from dataclasses import dataclass

from reconciler.config import Settings, get_settings
from reconciler.schemas.logs import LogsConfig
from reconciler.services.audit_triggers import TriggerPlan
from reconciler.services.logs_config import load_logs_config
from reconciler.services.logs_diffs import apply_logs_diffs
from reconciler.services.logs_states import apply_logs_states
from reconciler.services.reconciler import Reconciler

logger = logging.getLogger(__name__)


@dataclass
class LogsResult:
    diffs: TriggerPlan | None = None
    states: TriggerPlan | None = None


def process_logs(
    reconciler: Reconciler,
    config: LogsConfig | None = None,
    *,
    settings: Settings | None = None,
) -> LogsResult:
    """Apply the diffs and then the states configuration.

    When no config is passed it is loaded from ``Settings.logs_config_path``;
    a missing or unusable file skips audit logging entirely.
    """

    resolved = settings or get_settings()
    if config is None:
        config = load_logs_config(resolved.logs_config_path)
    result = LogsResult()
    if config is None:
        return result

    if config.diffs is not None:
        result.diffs = apply_logs_diffs(reconciler, config.diffs, settings=resolved)
    else:
        logger.info("No logs-diffs section configured; skipping diffs triggers.")

    if config.states is not None:
        result.states = apply_logs_states(reconciler, config.states, settings=resolved)
    else:
        logger.info("No logs-states section configured; skipping states triggers.")
    return result
