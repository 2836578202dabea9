from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Iterator, Optional

from psycopg import errors
from psycopg import OperationalError
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from validauth.logging import get_logger
from validauth.storage.errors import ConstraintViolation, StorageUnavailable
from validauth.storage.models import Identity, RefreshToken, Role, utcnow

_SCHEMA = """
CREATE TABLE IF NOT EXISTS auth_role (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE
);
CREATE TABLE IF NOT EXISTS auth_identity (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    email TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    role TEXT NOT NULL,
    active BOOLEAN NOT NULL DEFAULT FALSE,
    enabled BOOLEAN NOT NULL DEFAULT TRUE,
    failed_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_attempts >= 0),
    locked BOOLEAN NOT NULL DEFAULT FALSE,
    locked_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ,
    CHECK (NOT locked OR locked_at IS NOT NULL)
);
CREATE UNIQUE INDEX IF NOT EXISTS auth_identity_email_lower_idx
    ON auth_identity (lower(email));
CREATE TABLE IF NOT EXISTS auth_refresh_token (
    token TEXT PRIMARY KEY,
    identity_id TEXT NOT NULL REFERENCES auth_identity (id) ON DELETE CASCADE,
    expiry_date TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS auth_refresh_token_identity_idx
    ON auth_refresh_token (identity_id);
"""


class PostgresStore:
    """Postgres-backed identity, role and refresh token tables."""

    def __init__(self, dsn: str, *, timeout: float = 5.0, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.timeout = timeout
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        if ensure_schema:
            self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        """Check out a connection; the block commits on exit or rolls back on error."""
        try:
            with self.pool.connection(timeout=self.timeout) as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", timeout=self.timeout)
            raise StorageUnavailable("identity store timed out") from exc
        except errors.QueryCanceled as exc:
            self.logger.error("postgres_statement_timeout", timeout=self.timeout)
            raise StorageUnavailable("identity store timed out") from exc
        except OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("identity store unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    @staticmethod
    def _row_to_identity(row: dict) -> Identity:
        return Identity(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=row["role"],
            active=row.get("active", False),
            enabled=row.get("enabled", True),
            failed_attempts=row.get("failed_attempts", 0),
            locked=row.get("locked", False),
            locked_at=row.get("locked_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _row_to_refresh_token(row: dict) -> RefreshToken:
        return RefreshToken(
            token=row["token"],
            identity_id=str(row["identity_id"]),
            expiry_date=row["expiry_date"],
            created_at=row.get("created_at") or utcnow(),
        )

    # identities
    def find_by_email(self, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_identity WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def find_by_username(self, username: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_identity WHERE username = %s", (username,)
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def find_by_id(self, identity_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def save(self, identity: Identity) -> Identity:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_identity (
                        id, username, email, password_hash, role, active, enabled,
                        failed_attempts, locked, locked_at, created_at, updated_at
                    )
                    VALUES (%s, %s, lower(%s), %s, %s, %s, %s, %s, %s, %s, %s, now())
                    ON CONFLICT (id) DO UPDATE
                    SET username = EXCLUDED.username,
                        email = EXCLUDED.email,
                        password_hash = EXCLUDED.password_hash,
                        role = EXCLUDED.role,
                        active = EXCLUDED.active,
                        enabled = EXCLUDED.enabled,
                        failed_attempts = EXCLUDED.failed_attempts,
                        locked = EXCLUDED.locked,
                        locked_at = EXCLUDED.locked_at,
                        updated_at = now()
                    RETURNING *
                    """,
                    (
                        identity.id,
                        identity.username,
                        identity.email,
                        identity.password_hash,
                        identity.role,
                        identity.active,
                        identity.enabled,
                        identity.failed_attempts,
                        identity.locked,
                        identity.locked_at,
                        identity.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._row_to_identity(row)

    def increment_failed_attempts(
        self, identity_id: str, max_attempts: int, now: datetime
    ) -> Optional[Identity]:
        # Single statement so concurrent failures serialize on the row lock
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_identity
                SET failed_attempts = failed_attempts + 1,
                    locked = locked OR failed_attempts + 1 >= %s,
                    locked_at = CASE
                        WHEN NOT locked AND failed_attempts + 1 >= %s THEN %s
                        ELSE locked_at
                    END,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (max_attempts, max_attempts, now, identity_id),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def reset_failed_attempts(self, identity_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_identity
                SET failed_attempts = 0, locked = FALSE, locked_at = NULL, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (identity_id,),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def mark_active(self, identity_id: str) -> Optional[Identity]:
        # Only one concurrent activation can match NOT active
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_identity
                SET active = TRUE, updated_at = now()
                WHERE id = %s AND NOT active
                RETURNING *
                """,
                (identity_id,),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def set_enabled(self, identity_id: str, enabled: bool) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_identity
                SET enabled = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (enabled, identity_id),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    # roles
    def find_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name FROM auth_role WHERE name = %s", (name,)
            ).fetchone()
        return Role(id=str(row["id"]), name=row["name"]) if row else None

    def ensure_role(self, name: str) -> Role:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO auth_role (id, name) VALUES (%s, %s) ON CONFLICT (name) DO NOTHING",
                (str(uuid.uuid4()), name),
            )
            row = conn.execute(
                "SELECT id, name FROM auth_role WHERE name = %s", (name,)
            ).fetchone()
        return Role(id=str(row["id"]), name=row["name"])

    # refresh tokens
    def replace_refresh_token(
        self,
        identity_id: str,
        token: str,
        expiry_date: datetime,
        *,
        replacing: Optional[str] = None,
    ) -> Optional[RefreshToken]:
        with self._connect() as conn:
            # Lock the owner row so concurrent replacements for one identity run one at a time
            owner = conn.execute(
                "SELECT id FROM auth_identity WHERE id = %s FOR UPDATE", (identity_id,)
            ).fetchone()
            if not owner:
                raise ConstraintViolation(
                    "identity does not exist", {"identity_id": identity_id}
                )
            if replacing is not None:
                current = conn.execute(
                    "SELECT token FROM auth_refresh_token WHERE token = %s AND identity_id = %s",
                    (replacing, identity_id),
                ).fetchone()
                if not current:
                    return None
            conn.execute(
                "DELETE FROM auth_refresh_token WHERE identity_id = %s", (identity_id,)
            )
            row = conn.execute(
                """
                INSERT INTO auth_refresh_token (token, identity_id, expiry_date)
                VALUES (%s, %s, %s)
                RETURNING *
                """,
                (token, identity_id, expiry_date),
            ).fetchone()
        return self._row_to_refresh_token(row)

    def find_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def delete_refresh_token(self, token: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_refresh_token WHERE token = %s", (token,))

    def delete_refresh_tokens_for(self, identity_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_refresh_token WHERE identity_id = %s", (identity_id,)
            )
            return result.rowcount

    def close(self) -> None:
        self.pool.close()
