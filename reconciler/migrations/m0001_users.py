"""Users and linked provider accounts."""
from __future__ import annotations

import logging

from reconciler.schemas.reconcile import ColumnRef, ColumnType
from reconciler.services.reconciler import Reconciler
from reconciler.services.sql_fragments import qualified_name, quote_identifier

logger = logging.getLogger(__name__)

SCHEMA = "public"
ACCOUNTS_UNIQUE_CONSTRAINT = "accounts_provider_provider_account_id_unique"

USER_COLUMNS = [
    ("name", ColumnType.TEXT, None, False, "User display name"),
    ("email", ColumnType.TEXT, None, True, "User email address"),
    ("email_verified", ColumnType.BIGINT, None, False, "Email verification timestamp"),
    ("image", ColumnType.TEXT, None, False, "User profile image URL"),
    ("password", ColumnType.TEXT, None, False, "User password hash"),
    ("is_admin", ColumnType.BOOLEAN, "DEFAULT FALSE", False, "Admin flag"),
    ("hasura_role", ColumnType.TEXT, "DEFAULT 'user'", False, "Role used for GraphQL permissions"),
]

ACCOUNT_COLUMNS = [
    ("user_id", ColumnType.UUID, "NOT NULL", False, "Owning user"),
    ("type", ColumnType.TEXT, "NOT NULL", False, "Account type"),
    ("provider", ColumnType.TEXT, "NOT NULL", False, "Authentication provider"),
    ("provider_account_id", ColumnType.TEXT, "NOT NULL", False, "Account id at the provider"),
    ("refresh_token", ColumnType.TEXT, None, False, None),
    ("access_token", ColumnType.TEXT, None, False, None),
    ("expires_at", ColumnType.BIGINT, None, False, None),
    ("token_type", ColumnType.TEXT, None, False, None),
    ("scope", ColumnType.TEXT, None, False, None),
    ("id_token", ColumnType.TEXT, None, False, None),
    ("session_state", ColumnType.TEXT, None, False, None),
    ("oauth_token_secret", ColumnType.TEXT, None, False, None),
    ("oauth_token", ColumnType.TEXT, None, False, None),
]

USER_PUBLIC_FIELDS = ["id", "name", "image", "created_at", "updated_at", "hasura_role"]
USER_ALL_FIELDS = [
    "id",
    "name",
    "email",
    "email_verified",
    "image",
    "created_at",
    "updated_at",
    "is_admin",
    "hasura_role",
]
ACCOUNT_ADMIN_FIELDS = ["id", "user_id", "type", "provider", "provider_account_id", "created_at"]
ACCOUNT_OWNER_FIELDS = ACCOUNT_ADMIN_FIELDS + [
    "refresh_token",
    "access_token",
    "expires_at",
    "token_type",
    "scope",
    "id_token",
    "session_state",
]
CURRENT_USER = "X-Hasura-User-Id"


def apply_schema(reconciler: Reconciler) -> None:
    reconciler.define_schema(SCHEMA)
    reconciler.define_table(SCHEMA, "users")
    for name, column_type, postfix, unique, comment in USER_COLUMNS:
        reconciler.define_column(SCHEMA, "users", name, column_type, postfix=postfix, unique=unique, comment=comment)

    reconciler.define_table(SCHEMA, "accounts")
    for name, column_type, postfix, unique, comment in ACCOUNT_COLUMNS:
        reconciler.define_column(SCHEMA, "accounts", name, column_type, postfix=postfix, unique=unique, comment=comment)

    reconciler.define_foreign_key(
        ColumnRef(SCHEMA, "accounts", "user_id"),
        ColumnRef(SCHEMA, "users", "id"),
        on_delete="CASCADE",
        on_update="CASCADE",
    )
    accounts = qualified_name(SCHEMA, "accounts")
    constraint = quote_identifier(ACCOUNTS_UNIQUE_CONSTRAINT)
    with reconciler.executor.transaction() as executor:
        executor.execute(f"ALTER TABLE {accounts} DROP CONSTRAINT IF EXISTS {constraint}")
        executor.execute(
            f"ALTER TABLE {accounts} ADD CONSTRAINT {constraint} "
            'UNIQUE ("provider", "provider_account_id")'
        )


def apply_metadata(reconciler: Reconciler) -> None:
    reconciler.track_table(SCHEMA, ["users", "accounts"])
    reconciler.define_object_relationship_foreign(SCHEMA, "accounts", "user", "user_id")
    reconciler.define_array_relationship_foreign(SCHEMA, "users", "accounts", "accounts.user_id")

    reconciler.define_permission(SCHEMA, "users", "select", "user", filter={}, columns=USER_PUBLIC_FIELDS)
    reconciler.define_permission(
        SCHEMA, "users", "select", "me", filter={"id": {"_eq": CURRENT_USER}}, columns=USER_ALL_FIELDS
    )
    reconciler.define_permission(SCHEMA, "users", "select", "admin", filter={}, columns=USER_ALL_FIELDS, aggregate=True)
    reconciler.define_permission(
        SCHEMA, "users", "select", "anonymous", filter={}, columns=["id", "name", "image"]
    )

    reconciler.define_permission(SCHEMA, "accounts", "select", "user", filter={}, columns=["id", "provider", "user_id"])
    reconciler.define_permission(
        SCHEMA, "accounts", "select", "me", filter={"user_id": {"_eq": CURRENT_USER}}, columns=ACCOUNT_OWNER_FIELDS
    )
    reconciler.define_permission(SCHEMA, "accounts", "select", "admin", filter={}, columns=ACCOUNT_ADMIN_FIELDS)


def up(reconciler: Reconciler) -> None:
    logger.info("Applying users migration")
    apply_schema(reconciler)
    apply_metadata(reconciler)


def down(reconciler: Reconciler) -> None:
    logger.info("Reverting users migration")
    for table in ("users", "accounts"):
        reconciler.delete_permission(SCHEMA, table, "select", ["user", "me", "admin", "anonymous"])
    reconciler.delete_relationship(SCHEMA, "accounts", "user")
    reconciler.delete_relationship(SCHEMA, "users", "accounts")
    reconciler.delete_table(SCHEMA, ["accounts", "users"])
