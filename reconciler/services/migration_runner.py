"""Discover migration modules and run them forward or backward."""
from __future__ import annotations

import importlib
import logging
import pkgutil
from dataclasses import dataclass
from types import ModuleType
from typing import Iterable

from reconciler.services.reconciler import Reconciler

logger = logging.getLogger(__name__)

MIGRATIONS_PACKAGE = "reconciler.migrations"


class MigrationError(Exception):
    """Raised when a migration step fails; later migrations are not run."""

    def __init__(self, name: str, direction: str, cause: BaseException) -> None:
        super().__init__(f"Migration {name} failed during {direction}: {cause}")
        self.name = name
        self.direction = direction


@dataclass(frozen=True)
class Migration:
    name: str
    module: ModuleType

    def up(self, reconciler: Reconciler) -> None:
        self.module.up(reconciler)

    def down(self, reconciler: Reconciler) -> None:
        self.module.down(reconciler)


def discover_migrations(package: str = MIGRATIONS_PACKAGE) -> list[Migration]:
    """Import every module of ``package`` that defines both ``up`` and ``down``, sorted by name."""

    root = importlib.import_module(package)
    migrations: list[Migration] = []
    for info in sorted(pkgutil.iter_modules(root.__path__), key=lambda item: item.name):
        if info.ispkg or info.name.startswith("_"):
            continue
        module = importlib.import_module(f"{package}.{info.name}")
        if not (callable(getattr(module, "up", None)) and callable(getattr(module, "down", None))):
            logger.debug("Skipping %s; it does not define up() and down()", info.name)
            continue
        migrations.append(Migration(name=info.name, module=module))
    return migrations


def _run(reconciler: Reconciler, migrations: Iterable[Migration], direction: str) -> list[str]:
    completed: list[str] = []
    for migration in migrations:
        logger.info("Running %s for migration %s", direction, migration.name)
        try:
            getattr(migration, direction)(reconciler)
        except Exception as exc:
            logger.error("Migration %s failed during %s: %s", migration.name, direction, exc)
            raise MigrationError(migration.name, direction, exc) from exc
        completed.append(migration.name)
    return completed


def migrate(reconciler: Reconciler, migrations: list[Migration] | None = None) -> list[str]:
    """Run every ``up`` in name order, stopping at the first failure."""

    ordered = migrations if migrations is not None else discover_migrations()
    completed = _run(reconciler, ordered, "up")
    reconciler.reload()
    logger.info("Applied %d migrations", len(completed))
    return completed


def unmigrate(reconciler: Reconciler, migrations: list[Migration] | None = None) -> list[str]:
    """Run every ``down`` in reverse name order, stopping at the first failure."""

    ordered = migrations if migrations is not None else discover_migrations()
    completed = _run(reconciler, list(reversed(ordered)), "down")
    reconciler.reload()
    logger.info("Reverted %d migrations", len(completed))
    return completed
