from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import ApiKey, User

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        roles TEXT[] NOT NULL DEFAULT ARRAY['GUEST'],
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS api_key (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        name TEXT,
        key_hash TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ,
        expires_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS api_key_user_id_idx ON api_key (user_id)",
    "CREATE INDEX IF NOT EXISTS api_key_expires_at_idx ON api_key (expires_at)",
)


def _user_from_row(row: dict[str, Any], prefix: str = "") -> User:
    return User(
        id=str(row[f"{prefix}id"]),
        email=row[f"{prefix}email"],
        name=row.get(f"{prefix}name"),
        roles=list(row.get(f"{prefix}roles") or []),
        is_active=bool(row.get(f"{prefix}is_active", True)),
        created_at=row[f"{prefix}created_at"],
        last_login_at=row.get(f"{prefix}last_login_at"),
    )


def _api_key_from_row(row: dict[str, Any]) -> ApiKey:
    return ApiKey(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        key_hash=row["key_hash"],
        name=row.get("name"),
        created_at=row["created_at"],
        last_used_at=row.get("last_used_at"),
        expires_at=row.get("expires_at"),
    )


class PostgresStore:
    """Postgres-backed user and API-key store."""

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
        """Create the tables the authentication core needs if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        roles: Optional[Sequence[str]] = None,
        is_active: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        role_list = list(roles) if roles else ["GUEST"]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, roles, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalized, name, role_list, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM app_user WHERE id = %s", (user_id,)
                ).fetchone()
        except errors.DataError:
            # Not a UUID, so it cannot name a user
            return None
        if not row:
            return None
        return _user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        if not row:
            return None
        return _user_from_row(row)

    def update_user_roles(self, user_id: str, roles: Sequence[str]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET roles = %s WHERE id = %s RETURNING *",
                (list(roles), user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def update_last_login(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = now() WHERE id = %s", (user_id,)
            )

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # api keys
    def create_api_key(self, api_key: ApiKey) -> ApiKey:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO api_key (id, user_id, name, key_hash, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        api_key.id,
                        api_key.user_id,
                        api_key.name,
                        api_key.key_hash,
                        api_key.created_at,
                        api_key.expires_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("api key owner missing", {"user_id": api_key.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("api key hash already exists", {"field": "key_hash"})
        return _api_key_from_row(row)

    def find_active_api_key_by_hash(
        self, key_hash: str, now: datetime
    ) -> Optional[Tuple[ApiKey, User]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT k.*,
                       u.id AS owner_id, u.email AS owner_email, u.name AS owner_name,
                       u.roles AS owner_roles, u.is_active AS owner_is_active,
                       u.created_at AS owner_created_at,
                       u.last_login_at AS owner_last_login_at
                FROM api_key k
                JOIN app_user u ON u.id = k.user_id
                WHERE k.key_hash = %s
                  AND u.is_active
                  AND (k.expires_at IS NULL OR k.expires_at > %s)
                """,
                (key_hash, now),
            ).fetchone()
        if not row:
            return None
        return _api_key_from_row(row), _user_from_row(row, prefix="owner_")

    def touch_api_key(self, key_id: str, used_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE api_key SET last_used_at = %s WHERE id = %s", (used_at, key_id)
            )

    def get_api_key(self, key_id: str) -> Optional[ApiKey]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM api_key WHERE id = %s", (key_id,)
                ).fetchone()
        except errors.DataError:
            return None
        return _api_key_from_row(row) if row else None

    def list_api_keys(self, user_id: str) -> List[ApiKey]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM api_key WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [_api_key_from_row(row) for row in rows]

    def delete_api_key(self, key_id: str, user_id: str) -> bool:
        # Ownership is part of the predicate so there is no read-then-delete window
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "DELETE FROM api_key WHERE id = %s AND user_id = %s",
                    (key_id, user_id),
                )
                return cur.rowcount > 0
        except errors.DataError:
            return False

    def delete_user_api_keys(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM api_key WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def delete_expired_api_keys(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM api_key WHERE expires_at IS NOT NULL AND expires_at <= %s",
                (now,),
            )
            return cur.rowcount
