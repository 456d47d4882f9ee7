from __future__ import annotations

import logging
from threading import Lock
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import StaticPool

from reconciler.config import get_settings
from reconciler.services.sql_executor import SqlExecutor, build_sql_executor

logger = logging.getLogger(__name__)

_engine_lock = Lock()
_engine: Engine | None = None
_current_url: str | None = None


def create_engine_with_fallback(url: str) -> Engine:
    engine_kwargs: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        engine_kwargs["poolclass"] = StaticPool
        engine_kwargs.pop("pool_pre_ping")

    try:
        return create_engine(url, **engine_kwargs)
    except ModuleNotFoundError as exc:
        if "psycopg2" in str(exc) and "psycopg2" in url:
            fallback_url = url.replace("psycopg2", "psycopg")
            try:
                __import__("psycopg")
            except ModuleNotFoundError:
                raise
            return create_engine(fallback_url, **engine_kwargs)
        raise


def get_engine(url: str | None = None) -> Engine:
    """Return the shared engine, rebuilding it when the target URL changes."""

    global _engine, _current_url
    target_url = url or get_settings().database_url

    with _engine_lock:
        if _engine is not None and target_url == _current_url:
            return _engine

        logger.info("Creating database engine for %s", sanitize_url(target_url))
        new_engine = create_engine_with_fallback(target_url)
        if _engine is not None:
            _engine.dispose()

        _engine = new_engine
        _current_url = target_url
        return _engine


def reset_engine() -> None:
    global _engine, _current_url
    with _engine_lock:
        if _engine is not None:
            _engine.dispose()
        _engine = None
        _current_url = None


def sanitize_url(url: str) -> str:
    """Render the URL without exposing secrets for logging."""
    return make_url(url).render_as_string(hide_password=True)


def get_sql_executor() -> Generator[SqlExecutor, None, None]:
    executor = build_sql_executor()
    try:
        yield executor
    finally:
        executor.close()
