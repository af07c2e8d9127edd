from __future__ import annotations

import contextlib
import uuid
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from passgate.logging import get_logger, sanitize_driver_error
from passgate.storage.errors import ConstraintViolation, StorageError
from passgate.storage.models import Account, Profile, RefreshSession

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id BIGSERIAL PRIMARY KEY,
        public_id UUID NOT NULL UNIQUE,
        email TEXT NOT NULL,
        partition TEXT NOT NULL,
        name TEXT NOT NULL,
        surname TEXT NOT NULL,
        patronymic TEXT,
        role TEXT NOT NULL DEFAULT 'default',
        password TEXT,
        secret_code TEXT,
        secret_active BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (email, partition)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_sessions (
        id BIGSERIAL PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users (public_id) ON DELETE CASCADE,
        refresh_token TEXT NOT NULL UNIQUE,
        fingerprint TEXT NOT NULL,
        user_agent TEXT,
        expires_in BIGINT NOT NULL,
        created_at BIGINT NOT NULL,
        UNIQUE (user_id, fingerprint)
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_sessions_user_idx ON refresh_sessions (user_id)",
)


class PostgresStore:
    """Postgres-backed account and refresh-session store.

    Every query is parameterized. Driver errors are re-raised as
    :class:`StorageError`; unique violations as :class:`ConstraintViolation`.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "unique constraint violated",
                {"constraint": getattr(exc.diag, "constraint_name", None)},
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "referenced row missing",
                {"constraint": getattr(exc.diag, "constraint_name", None)},
            ) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed",
                error_type=type(exc).__name__,
                error=sanitize_driver_error(str(exc)),
            )
            raise StorageError("storage operation failed") from exc

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def ensure_schema(self) -> None:
        """Create the ``users`` and ``refresh_sessions`` tables if missing."""

        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _account_from_row(row: dict[str, Any]) -> Account:
        now = datetime.now(timezone.utc)
        return Account(
            id=int(row["id"]),
            public_id=str(row["public_id"]),
            identifier=row["email"],
            partition=row["partition"],
            name=row.get("name") or "",
            surname=row.get("surname") or "",
            patronymic=row.get("patronymic"),
            role=row.get("role") or "default",
            credential_hash=row.get("password"),
            one_time_secret=row.get("secret_code"),
            secret_active=bool(row.get("secret_active", False)),
            created_at=row.get("created_at") or now,
            updated_at=row.get("updated_at") or now,
        )

    @staticmethod
    def _session_from_row(row: dict[str, Any]) -> RefreshSession:
        return RefreshSession(
            id=int(row["id"]),
            owner=str(row["user_id"]),
            token=row["refresh_token"],
            fingerprint=row["fingerprint"],
            user_agent=row.get("user_agent"),
            expires_at=int(row["expires_in"]),
            created_at=int(row["created_at"]),
        )

    # accounts
    def get_account(self, identifier: str, partition: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s AND partition = %s",
                (identifier, partition),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_public_id(self, public_id: str) -> Optional[Account]:
        try:
            uuid.UUID(public_id)
        except (TypeError, ValueError):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE public_id = %s", (public_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def create_active_account(
        self,
        profile: Profile,
        identifier: str,
        partition: str,
        credential_hash: str,
        *,
        role: str = "default",
    ) -> Account:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO users (public_id, email, partition, name, surname, patronymic, role, password)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    identifier,
                    partition,
                    profile.name,
                    profile.surname,
                    profile.patronymic,
                    role,
                    credential_hash,
                ),
            ).fetchone()
        return self._account_from_row(row)

    def create_invited_account(
        self,
        profile: Profile,
        identifier: str,
        partition: str,
        role: str,
        secret: str,
    ) -> Account:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO users (public_id, email, partition, name, surname, patronymic, role, secret_code, secret_active)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, TRUE)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    identifier,
                    partition,
                    profile.name,
                    profile.surname,
                    profile.patronymic,
                    role,
                    secret,
                ),
            ).fetchone()
        return self._account_from_row(row)

    def activate_invited_account(self, account_id: int, credential_hash: str) -> bool:
        # Single UPDATE: readers never see a hash with an active secret
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE users
                SET password = %s, secret_active = FALSE, updated_at = now()
                WHERE id = %s AND password IS NULL
                """,
                (credential_hash, account_id),
            )
            return result.rowcount > 0

    def set_one_time_secret(self, public_id: str, secret: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE users
                SET secret_code = %s, secret_active = TRUE, updated_at = now()
                WHERE public_id = %s
                """,
                (secret, public_id),
            )
            return result.rowcount > 0

    def consume_reset_secret(
        self, public_id: str, secret: str, credential_hash: str
    ) -> bool:
        # Check and consume in one UPDATE so a secret completes at most one reset
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE users
                SET password = %s, secret_active = FALSE, updated_at = now()
                WHERE public_id = %s AND secret_active AND secret_code = %s
                """,
                (credential_hash, public_id, secret),
            )
            return result.rowcount > 0

    def update_account_role(self, public_id: str, role: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE users SET role = %s, updated_at = now() WHERE public_id = %s",
                (role, public_id),
            )
            return result.rowcount > 0

    def list_account_ids(
        self, role: str, partition: str, text_filter: Optional[str] = None
    ) -> List[str]:
        with self._connect() as conn:
            if text_filter:
                pattern = f"%{text_filter}%"
                rows = conn.execute(
                    """
                    SELECT public_id FROM users
                    WHERE role = %s AND partition = %s
                      AND (email ILIKE %s OR name ILIKE %s OR surname ILIKE %s)
                    ORDER BY id
                    """,
                    (role, partition, pattern, pattern, pattern),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT public_id FROM users WHERE role = %s AND partition = %s ORDER BY id",
                    (role, partition),
                ).fetchall()
        return [str(row["public_id"]) for row in rows]

    # refresh sessions
    def list_sessions(self, owner: str) -> List[RefreshSession]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_sessions WHERE user_id = %s ORDER BY id",
                (owner,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def create_session(
        self,
        owner: str,
        fingerprint: str,
        user_agent: Optional[str],
        token: str,
        ttl_ms: int,
        now_ms: int,
    ) -> RefreshSession:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO refresh_sessions (user_id, user_agent, fingerprint, expires_in, refresh_token, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (owner, user_agent, fingerprint, now_ms + ttl_ms, token, now_ms),
            ).fetchone()
        return self._session_from_row(row)

    def find_session(self, token: str, fingerprint: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_sessions WHERE refresh_token = %s AND fingerprint = %s",
                (token, fingerprint),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session(self, owner: str, fingerprint: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM refresh_sessions WHERE user_id = %s AND fingerprint = %s",
                (owner, fingerprint),
            )

    def delete_owner_sessions(self, owner: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_sessions WHERE user_id = %s", (owner,)
            )
            return result.rowcount

    def rotate_session(
        self,
        token: str,
        fingerprint: str,
        new_token: str,
        user_agent: Optional[str],
        ttl_ms: int,
        now_ms: int,
    ) -> Optional[RefreshSession]:
        with self._connect() as conn:
            with conn.transaction():
                deleted = conn.execute(
                    """
                    DELETE FROM refresh_sessions
                    WHERE refresh_token = %s AND fingerprint = %s
                    RETURNING user_id
                    """,
                    (token, fingerprint),
                ).fetchone()
                if not deleted:
                    return None
                row = conn.execute(
                    """
                    INSERT INTO refresh_sessions (user_id, user_agent, fingerprint, expires_in, refresh_token, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        deleted["user_id"],
                        user_agent,
                        fingerprint,
                        now_ms + ttl_ms,
                        new_token,
                        now_ms,
                    ),
                ).fetchone()
        return self._session_from_row(row)
