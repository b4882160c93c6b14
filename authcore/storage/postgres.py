from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Iterator, List, Optional

import psycopg
from psycopg import errors

from authcore.logging import get_logger
from authcore.service.errors import ServiceUnavailableError
from authcore.storage.errors import ConstraintViolation, PoolError
from authcore.storage.models import GOOGLE_PROVIDER, LOCAL_PROVIDER, Identity, utcnow
from authcore.storage.pool import ConnectionPool

_UNIQUE_FIELDS = ("google_id", "username", "email")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY,
        email VARCHAR(255) UNIQUE NOT NULL,
        username VARCHAR(100) UNIQUE NOT NULL,
        password_hash VARCHAR(255),
        display_name VARCHAR(255),
        avatar_url VARCHAR(500),
        auth_provider VARCHAR(50) NOT NULL DEFAULT 'local',
        google_id VARCHAR(255) UNIQUE,
        is_active BOOLEAN NOT NULL DEFAULT true,
        is_admin BOOLEAN NOT NULL DEFAULT false,
        email_verified BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        settings JSONB NOT NULL DEFAULT '{}'::jsonb,
        CONSTRAINT users_auth_method CHECK (password_hash IS NOT NULL OR google_id IS NOT NULL)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_users_email ON users(email)",
    "CREATE INDEX IF NOT EXISTS idx_users_google_id ON users(google_id)",
)


def _violated_field(exc: errors.UniqueViolation) -> str:
    constraint = (exc.diag.constraint_name or "").lower()
    for name in _UNIQUE_FIELDS:
        if name in constraint:
            return name
    return "unknown"


class PostgresCredentialStore:
    """Identity records in the ``users`` table, reached only through the pool.

    Each method borrows one connection for its own duration and gives it back
    before returning, so no connection outlives a single call.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        self.pool = pool
        self.logger = get_logger(__name__)

    @contextlib.contextmanager
    def _connect(self, operation: str) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            field = _violated_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        except PoolError as exc:
            self.logger.error("store_pool_unavailable", operation=operation, error=str(exc))
            raise ServiceUnavailableError("Database temporarily unavailable") from exc
        except psycopg.Error as exc:
            self.logger.error(
                "store_query_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServiceUnavailableError("Database temporarily unavailable") from exc

    def ensure_schema(self) -> None:
        """Create the ``users`` table and its indexes if they are missing."""

        with self._connect("ensure_schema") as conn:
            with conn.transaction():
                for statement in _SCHEMA:
                    conn.execute(statement)

    @staticmethod
    def _identity_from_row(row: dict) -> Identity:
        return Identity(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row.get("password_hash"),
            display_name=row.get("display_name"),
            avatar_url=row.get("avatar_url"),
            auth_provider=row.get("auth_provider") or LOCAL_PROVIDER,
            google_id=row.get("google_id"),
            is_active=bool(row.get("is_active", True)),
            is_admin=bool(row.get("is_admin", False)),
            email_verified=bool(row.get("email_verified", False)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
            settings=row.get("settings") or {},
        )

    def _fetch_one(self, operation: str, query: str, params: tuple) -> Optional[Identity]:
        with self._connect(operation) as conn:
            row = conn.execute(query, params).fetchone()
        if not row:
            return None
        return self._identity_from_row(row)

    def _execute(self, operation: str, query: str, params: tuple) -> int:
        with self._connect(operation) as conn:
            return conn.execute(query, params).rowcount

    # creation

    def create_local_identity(
        self,
        email: str,
        username: str,
        password_hash: str,
        display_name: Optional[str] = None,
    ) -> Identity:
        identity = self._fetch_one(
            "create_local_identity",
            """
            INSERT INTO users (id, email, username, password_hash, display_name, auth_provider)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                str(uuid.uuid4()),
                email.lower(),
                username,
                password_hash,
                display_name or username,
                LOCAL_PROVIDER,
            ),
        )
        if identity is None:
            raise ServiceUnavailableError("Failed to create account")
        return identity

    def create_federated_identity(
        self,
        email: str,
        username: str,
        google_id: str,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Identity:
        identity = self._fetch_one(
            "create_federated_identity",
            """
            INSERT INTO users
                (id, email, username, display_name, avatar_url, auth_provider, google_id, email_verified)
            VALUES (%s, %s, %s, %s, %s, %s, %s, true)
            RETURNING *
            """,
            (
                str(uuid.uuid4()),
                email.lower(),
                username,
                display_name or username,
                avatar_url,
                GOOGLE_PROVIDER,
                google_id,
            ),
        )
        if identity is None:
            raise ServiceUnavailableError("Failed to create account")
        return identity

    # lookups

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        try:
            uuid.UUID(str(identity_id))
        except ValueError:
            return None
        return self._fetch_one(
            "get_identity", "SELECT * FROM users WHERE id = %s", (identity_id,)
        )

    def get_by_email(self, email: str) -> Optional[Identity]:
        return self._fetch_one(
            "get_by_email", "SELECT * FROM users WHERE email = %s", (email.lower(),)
        )

    def get_by_username(self, username: str) -> Optional[Identity]:
        return self._fetch_one(
            "get_by_username", "SELECT * FROM users WHERE username = %s", (username,)
        )

    def get_by_identifier(self, identifier: str) -> Optional[Identity]:
        return self._fetch_one(
            "get_by_identifier",
            "SELECT * FROM users WHERE email = %s OR username = %s LIMIT 1",
            (identifier.lower(), identifier),
        )

    def get_by_google_id(self, google_id: str) -> Optional[Identity]:
        return self._fetch_one(
            "get_by_google_id", "SELECT * FROM users WHERE google_id = %s", (google_id,)
        )

    def is_email_available(self, email: str) -> bool:
        return self.get_by_email(email) is None

    def is_username_available(self, username: str) -> bool:
        return self.get_by_username(username) is None

    def list_identities(self, limit: int = 50, offset: int = 0) -> List[Identity]:
        with self._connect("list_identities") as conn:
            rows = conn.execute(
                "SELECT * FROM users ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [self._identity_from_row(row) for row in rows]

    def count_identities(self) -> int:
        with self._connect("count_identities") as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM users").fetchone()
        return int(row["total"]) if row else 0

    # mutation

    def link_google_account(
        self, identity_id: str, google_id: str, avatar_url: Optional[str] = None
    ) -> Optional[Identity]:
        return self._fetch_one(
            "link_google_account",
            """
            UPDATE users
            SET google_id = %s, avatar_url = COALESCE(avatar_url, %s), updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (google_id, avatar_url, identity_id),
        )

    def touch_last_login(self, identity_id: str) -> Optional[datetime]:
        with self._connect("touch_last_login") as conn:
            row = conn.execute(
                "UPDATE users SET last_login_at = now() WHERE id = %s RETURNING last_login_at",
                (identity_id,),
            ).fetchone()
        return row["last_login_at"] if row else None

    def update_profile(
        self, identity_id: str, display_name: Optional[str], avatar_url: Optional[str]
    ) -> Optional[Identity]:
        return self._fetch_one(
            "update_profile",
            """
            UPDATE users SET display_name = %s, avatar_url = %s, updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (display_name, avatar_url, identity_id),
        )

    def update_password(self, identity_id: str, password_hash: str) -> bool:
        return (
            self._execute(
                "update_password",
                "UPDATE users SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, identity_id),
            )
            > 0
        )

    def set_admin(self, identity_id: str, is_admin: bool) -> bool:
        return (
            self._execute(
                "set_admin",
                "UPDATE users SET is_admin = %s, updated_at = now() WHERE id = %s",
                (is_admin, identity_id),
            )
            > 0
        )

    def set_active(self, identity_id: str, is_active: bool) -> bool:
        return (
            self._execute(
                "set_active",
                "UPDATE users SET is_active = %s, updated_at = now() WHERE id = %s",
                (is_active, identity_id),
            )
            > 0
        )
