from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from eventflow_auth.logging import get_logger
from eventflow_auth.storage.errors import (
    ConstraintViolation,
    StoreUnavailable,
    TokenAlreadyRevoked,
)
from eventflow_auth.storage.memory import SEED_ROLE_IDS
from eventflow_auth.storage.models import (
    RefreshToken,
    Role,
    User,
    as_utc,
    normalize_email,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_role (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        first_name VARCHAR(100) NOT NULL,
        last_name VARCHAR(100) NOT NULL,
        role_id UUID NOT NULL REFERENCES auth_role(id),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        replaced_by TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_expiry_idx ON refresh_token (user_id, expires_at)",
)


class PostgresStore:
    """Postgres-backed store for users, roles and refresh tokens."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("store_unavailable", error=str(exc))
            raise StoreUnavailable(str(exc)) from exc

    def ensure_schema(self) -> None:
        """Create the auth tables and indexes when they are missing."""

        with self._connect() as conn, conn.transaction():
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def seed_roles(self, names: tuple[str, ...] = ("Admin", "User")) -> List[Role]:
        seeded: List[Role] = []
        with self._connect() as conn:
            for name in names:
                role_id = SEED_ROLE_IDS.get(name) or str(uuid.uuid4())
                conn.execute(
                    "INSERT INTO auth_role (id, name) VALUES (%s, %s) ON CONFLICT (name) DO NOTHING",
                    (role_id, name),
                )
                row = conn.execute(
                    "SELECT id, name FROM auth_role WHERE name = %s", (name,)
                ).fetchone()
                seeded.append(self._role_from_row(row))
        return seeded

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _parse_ts(value: Optional[Any]) -> Optional[datetime]:
        if value is None:
            return None
        if isinstance(value, datetime):
            return as_utc(value)
        return as_utc(datetime.fromisoformat(str(value)))

    # roles
    @staticmethod
    def _role_from_row(row: dict) -> Role:
        return Role(id=str(row["id"]), name=row["name"])

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name FROM auth_role WHERE name = %s", (name,)
            ).fetchone()
        return self._role_from_row(row) if row else None

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name FROM auth_role WHERE id = %s", (role_id,)
            ).fetchone()
        return self._role_from_row(row) if row else None

    # users
    def _user_from_row(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name", ""),
            last_name=row.get("last_name", ""),
            role_id=str(row["role_id"]),
            is_active=row.get("is_active", True),
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
            updated_at=self._parse_ts(row.get("updated_at")),
        )

    @staticmethod
    def _insert_user(conn: psycopg.Connection, user: User) -> None:
        conn.execute(
            """
            INSERT INTO app_user (id, email, password_hash, first_name, last_name, role_id, is_active, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                user.id,
                user.email,
                user.password_hash,
                user.first_name,
                user.last_name,
                user.role_id,
                user.is_active,
                user.created_at,
            ),
        )

    def add_user(self, user: User) -> User:
        user.email = normalize_email(user.email)
        try:
            with self._connect() as conn:
                self._insert_user(conn, user)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role does not exist", {"role_id": user.role_id})
        return user

    def add_user_with_refresh_token(self, user: User, token: RefreshToken) -> User:
        """Insert an account and its first session in one transaction."""
        user.email = normalize_email(user.email)
        try:
            with self._connect() as conn, conn.transaction():
                self._insert_user(conn, user)
                self._insert_refresh_token(conn, token)
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            if constraint.startswith("refresh_token"):
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role does not exist", {"role_id": user.role_id})
        return user

    def remove_registration(self, user_id: str) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))

    def update_password_hash(self, user_id: str, password_hash: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s RETURNING *",
                (password_hash, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # refresh tokens
    def _refresh_token_from_row(self, row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=self._parse_ts(row["expires_at"]),
            revoked=bool(row.get("revoked", False)),
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
            replaced_by=row.get("replaced_by"),
        )

    @staticmethod
    def _insert_refresh_token(conn: psycopg.Connection, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, user_id, token, expires_at, revoked, created_at, replaced_by)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.user_id,
                token.token,
                token.expires_at,
                token.revoked,
                token.created_at,
                token.replaced_by,
            ),
        )

    def add_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": token.user_id})
        return token

    def get_refresh_token(self, value: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (value,)
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._refresh_token_from_row(row) for row in rows]

    @staticmethod
    def _compare_and_revoke(
        conn: psycopg.Connection, value: str, replaced_by: Optional[str]
    ) -> Optional[dict]:
        # The revoked = FALSE guard makes this a single conditional write
        return conn.execute(
            """
            UPDATE refresh_token SET revoked = TRUE, replaced_by = %s
            WHERE token = %s AND revoked = FALSE
            RETURNING *
            """,
            (replaced_by, value),
        ).fetchone()

    def revoke_refresh_token(
        self, value: str, replaced_by: Optional[str] = None
    ) -> RefreshToken:
        with self._connect() as conn:
            row = self._compare_and_revoke(conn, value, replaced_by)
        if not row:
            raise TokenAlreadyRevoked(value)
        return self._refresh_token_from_row(row)

    def rotate_refresh_token(
        self, value: str, replacement: RefreshToken
    ) -> RefreshToken:
        try:
            with self._connect() as conn, conn.transaction():
                row = self._compare_and_revoke(conn, value, replacement.token)
                if not row:
                    raise TokenAlreadyRevoked(value)
                self._insert_refresh_token(conn, replacement)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "refresh token user missing", {"user_id": replacement.user_id}
            )
        return replacement

    def rollback_rotation(self, value: str, replacement_value: str) -> bool:
        """Reinstate ``value`` and retire its undelivered replacement."""
        with self._connect() as conn, conn.transaction():
            retired = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE
                WHERE token = %s AND revoked = FALSE
                RETURNING id
                """,
                (replacement_value,),
            ).fetchone()
            if not retired:
                return False
            conn.execute(
                """
                UPDATE refresh_token SET revoked = FALSE, replaced_by = NULL
                WHERE token = %s AND replaced_by = %s
                """,
                (value, replacement_value),
            )
        return True
