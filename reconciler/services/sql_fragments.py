"""Small helpers for rendering identifiers and literals into DDL text."""
from __future__ import annotations

import json
import re
from typing import Any, Iterable, Mapping

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")
_MAX_IDENTIFIER_LENGTH = 63
_REFERENTIAL_ACTIONS = ("CASCADE", "SET NULL", "RESTRICT", "NO ACTION", "SET DEFAULT")


class InvalidIdentifierError(ValueError):
    """Raised when a schema, table, column or object name fails the allow-list."""


def validate_identifier(identifier: str) -> str:
    if not isinstance(identifier, str):
        raise InvalidIdentifierError(f"Identifier must be a string, got {type(identifier).__name__}.")
    cleaned = identifier.strip()
    if not cleaned:
        raise InvalidIdentifierError("Identifier cannot be empty.")
    if not _IDENTIFIER_PATTERN.match(cleaned):
        raise InvalidIdentifierError(f"Identifier {identifier!r} contains unsupported characters.")
    return cleaned


def quote_identifier(identifier: str) -> str:
    return f'"{validate_identifier(identifier)}"'


def qualified_name(schema: str, name: str) -> str:
    return f"{quote_identifier(schema)}.{quote_identifier(name)}"


def quote_literal(value: Any) -> str:
    """Render a Python value as a PostgreSQL literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, (dict, list)):
        value = json.dumps(value)
    text = str(value)
    return "'" + text.replace("'", "''") + "'"


def render_params(statement: str, params: Mapping[str, Any] | None) -> str:
    """Inline ``:name`` placeholders for backends without parameter binding."""
    if not params:
        return statement

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in params:
            raise KeyError(f"Missing value for SQL parameter :{name}")
        return quote_literal(params[name])

    # "::" casts are left untouched.
    return re.sub(r"(?<![:\w]):([A-Za-z_][A-Za-z0-9_]*)", _replace, statement)


def referential_action(action: str) -> str:
    normalized = " ".join(action.upper().split())
    if normalized not in _REFERENTIAL_ACTIONS:
        raise ValueError(f"Unsupported referential action: {action!r}")
    return normalized


def object_name(*parts: str) -> str:
    """Join name parts and make sure the result fits in a PostgreSQL identifier."""
    name = "_".join(validate_identifier(part) for part in parts)
    if len(name) > _MAX_IDENTIFIER_LENGTH:
        raise InvalidIdentifierError(
            f"Generated name {name!r} exceeds {_MAX_IDENTIFIER_LENGTH} characters."
        )
    return name


def trigger_name(*parts: str) -> str:
    return object_name(*parts)


def create_function_sql(
    schema: str,
    name: str,
    body: str,
    *,
    returns: str = "TRIGGER",
    language: str = "plpgsql",
) -> str:
    """``CREATE OR REPLACE FUNCTION`` for an argument-less function with a dollar-quoted body."""
    return (
        f"CREATE OR REPLACE FUNCTION {qualified_name(schema, name)}()\n"
        f"RETURNS {returns} AS $$\n"
        f"{body.strip()}\n"
        f"$$ LANGUAGE {validate_identifier(language)}"
    )


def create_trigger_sql(
    name: str,
    *,
    timing: str,
    event: str,
    schema: str,
    table: str,
    function: tuple[str, str],
    args: Iterable[str] = (),
) -> str:
    # Trigger arguments are column names.
    arguments = ", ".join(quote_literal(validate_identifier(arg)) for arg in args)
    return (
        f"CREATE TRIGGER {quote_identifier(name)}\n"
        f"  {timing} {event} ON {qualified_name(schema, table)}\n"
        "  FOR EACH ROW\n"
        f"  EXECUTE FUNCTION {qualified_name(*function)}({arguments})"
    )
