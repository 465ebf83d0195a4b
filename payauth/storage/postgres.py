from __future__ import annotations

import uuid
from typing import Any, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from payauth.logging import get_logger
from payauth.storage.errors import ConstraintViolation
from payauth.storage.models import (
    PermissionPage,
    User,
    UserPermission,
    UserStatus,
    UserType,
)

_UPDATABLE_USER_COLUMNS = (
    "name",
    "status",
    "password_hash",
    "password_algo",
    "last_login_at",
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT NOT NULL,
        type TEXT NOT NULL DEFAULT 'OWNER',
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL DEFAULT 'argon2id',
        parent_user_id TEXT REFERENCES users(id),
        token_version INTEGER NOT NULL DEFAULT 0,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CHECK ((type = 'STAFF') = (parent_user_id IS NOT NULL))
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS users_email_lower_idx ON users (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS user_permissions (
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        page TEXT NOT NULL,
        can_read BOOLEAN NOT NULL DEFAULT FALSE,
        can_create BOOLEAN NOT NULL DEFAULT FALSE,
        can_update BOOLEAN NOT NULL DEFAULT FALSE,
        can_delete BOOLEAN NOT NULL DEFAULT FALSE,
        PRIMARY KEY (user_id, page)
    )
    """,
)


class PostgresStore:
    """Postgres-backed credential store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``users`` and ``user_permissions`` tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            type=UserType(row["type"]),
            status=UserStatus(row["status"]),
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            parent_user_id=row.get("parent_user_id"),
            token_version=int(row["token_version"]),
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE lower(email) = %s",
                (email.strip().lower(),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def create_user(
        self,
        email: str,
        *,
        name: str,
        password_hash: str,
        password_algo: str,
        user_type: UserType = UserType.OWNER,
        parent_user_id: Optional[str] = None,
        status: UserStatus = UserStatus.ACTIVE,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, email, name, type, status, password_hash, password_algo, parent_user_id)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        name,
                        UserType(user_type).value,
                        UserStatus(status).value,
                        password_hash,
                        password_algo,
                        parent_user_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "parent user does not exist", {"field": "parentUserId"}
            )
        return self._user_from_row(row)

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - set(_UPDATABLE_USER_COLUMNS)
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        columns = [column for column in _UPDATABLE_USER_COLUMNS if column in fields]
        assignments = ", ".join(f"{column} = %s" for column in columns)
        params = [
            UserStatus(fields[column]).value if column == "status" else fields[column]
            for column in columns
        ]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE users SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*params, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def increment_token_version(self, user_id: str) -> Optional[int]:
        # Increment happens in the database; never read-modify-write here.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET token_version = token_version + 1, updated_at = now()
                WHERE id = %s
                RETURNING token_version
                """,
                (user_id,),
            ).fetchone()
        return int(row["token_version"]) if row else None

    def get_permission(
        self, user_id: str, page: PermissionPage | str
    ) -> Optional[UserPermission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_permissions WHERE user_id = %s AND page = %s",
                (user_id, PermissionPage(page).value),
            ).fetchone()
        if not row:
            return None
        return UserPermission(
            user_id=str(row["user_id"]),
            page=PermissionPage(row["page"]),
            can_read=row["can_read"],
            can_create=row["can_create"],
            can_update=row["can_update"],
            can_delete=row["can_delete"],
        )

    def set_permission(self, permission: UserPermission) -> UserPermission:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_permissions (user_id, page, can_read, can_create, can_update, can_delete)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, page) DO UPDATE SET
                        can_read = EXCLUDED.can_read,
                        can_create = EXCLUDED.can_create,
                        can_update = EXCLUDED.can_update,
                        can_delete = EXCLUDED.can_delete
                    """,
                    (
                        permission.user_id,
                        permission.page.value,
                        permission.can_read,
                        permission.can_create,
                        permission.can_update,
                        permission.can_delete,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "permission references unknown user", {"field": "userId"}
            )
        return permission
