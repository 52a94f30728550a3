from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from credgate.logging import get_logger
from credgate.storage.errors import ConstraintViolation, StoreUnavailable
from credgate.storage.models import (
    TOKEN_TYPES,
    LinkedAccount,
    OneTimeToken,
    TokenKind,
    TwoFactorConfirmation,
    User,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        password_hash TEXT,
        email_verified_at TIMESTAMPTZ,
        role TEXT NOT NULL DEFAULT 'USER' CHECK (role IN ('ADMIN', 'USER')),
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS linked_account (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_account_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, provider_account_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS one_time_token (
        id UUID PRIMARY KEY,
        kind TEXT NOT NULL,
        token TEXT NOT NULL,
        email TEXT NOT NULL,
        user_id UUID REFERENCES app_user(id) ON DELETE CASCADE,
        identity TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (kind, token),
        UNIQUE (kind, identity)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS two_factor_confirmation (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL UNIQUE REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS one_time_token_expires_idx ON one_time_token (expires_at)",
)

_USER_COLUMNS = {
    "name",
    "email",
    "password_hash",
    "email_verified_at",
    "role",
    "two_factor_enabled",
}


class PostgresStore:
    """Postgres-backed user and token store.

    Replace-on-issue is a single upsert against the ``(kind, identity)`` unique
    index and every consume is a ``DELETE ... RETURNING``, so concurrent callers
    can never both observe the same token as live.
    """

    def __init__(self, dsn: str, *, connect_timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.connect_timeout = connect_timeout
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection(timeout=self.connect_timeout) as conn:
                yield conn
        except (errors.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    # Row mapping -----------------------------------------------------------------

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            password_hash=row.get("password_hash"),
            email_verified_at=row.get("email_verified_at"),
            role=row.get("role") or "USER",
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> OneTimeToken:
        token_cls = TOKEN_TYPES[TokenKind(row["kind"])]
        user_id = row.get("user_id")
        return token_cls(
            id=str(row["id"]),
            token=row["token"],
            email=row["email"],
            user_id=str(user_id) if user_id else None,
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_account(row: Dict[str, Any]) -> LinkedAccount:
        return LinkedAccount(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            provider=row["provider"],
            provider_account_id=row["provider_account_id"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_confirmation(row: Dict[str, Any]) -> TwoFactorConfirmation:
        return TwoFactorConfirmation(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
        )

    # Users -----------------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
        role: str = "USER",
        two_factor_enabled: bool = False,
        email_verified_at: Optional[datetime] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, password_hash, role, two_factor_enabled, email_verified_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        email,
                        name,
                        password_hash,
                        role,
                        two_factor_enabled,
                        email_verified_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    @staticmethod
    def _update_clause(updates: Dict[str, Any]) -> tuple[str, list]:
        unknown = set(updates) - _USER_COLUMNS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        columns = sorted(updates)
        assignments = ", ".join(f"{column} = %s" for column in columns)
        return assignments, [updates[column] for column in columns]

    def update_user(self, user_id: str, **updates: Any) -> Optional[User]:
        if not updates:
            return self.get_user(user_id)
        assignments, values = self._update_clause(updates)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                    (*values, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row) if row else None

    # Linked provider accounts ------------------------------------------------------

    def link_account(
        self,
        user_id: str,
        provider: str,
        provider_account_id: str,
        *,
        verified_at: datetime,
    ) -> LinkedAccount:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        INSERT INTO linked_account (id, user_id, provider, provider_account_id)
                        VALUES (%s, %s, %s, %s)
                        ON CONFLICT (provider, provider_account_id)
                        DO UPDATE SET provider = EXCLUDED.provider
                        WHERE linked_account.user_id = EXCLUDED.user_id
                        RETURNING *
                        """,
                        (str(uuid.uuid4()), user_id, provider, provider_account_id),
                    ).fetchone()
                    if not row:
                        raise ConstraintViolation(
                            "provider account already linked", {"provider": provider}
                        )
                    conn.execute(
                        """
                        UPDATE app_user SET email_verified_at = %s
                        WHERE id = %s AND email_verified_at IS NULL
                        """,
                        (verified_at, user_id),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for account", {"user_id": user_id})
        return self._row_to_account(row)

    def get_account_by_user_id(self, user_id: str) -> Optional[LinkedAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM linked_account WHERE user_id = %s ORDER BY created_at LIMIT 1",
                (user_id,),
            ).fetchone()
        return self._row_to_account(row) if row else None

    # One-time tokens ----------------------------------------------------------------

    def replace_token(self, token: OneTimeToken) -> OneTimeToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO one_time_token (id, kind, token, email, user_id, identity, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (kind, identity) DO UPDATE SET
                        id = EXCLUDED.id,
                        token = EXCLUDED.token,
                        email = EXCLUDED.email,
                        user_id = EXCLUDED.user_id,
                        expires_at = EXCLUDED.expires_at,
                        created_at = EXCLUDED.created_at
                    RETURNING *
                    """,
                    (
                        token.id,
                        token.kind.value,
                        token.token,
                        token.email,
                        token.user_id,
                        token.identity_key,
                        token.expires_at,
                        token.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token value collision", {"kind": token.kind.value})
        return self._row_to_token(row)

    def find_token_by_value(self, kind: TokenKind, value: str) -> Optional[OneTimeToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM one_time_token WHERE kind = %s AND token = %s",
                (kind.value, value),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def find_token_by_email(self, kind: TokenKind, email: str) -> Optional[OneTimeToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM one_time_token WHERE kind = %s AND identity = %s",
                (kind.value, f"email:{email}"),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def find_token_by_user_id(self, kind: TokenKind, user_id: str) -> Optional[OneTimeToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM one_time_token WHERE kind = %s AND user_id = %s ORDER BY created_at DESC LIMIT 1",
                (kind.value, user_id),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def list_tokens(self, kind: TokenKind) -> List[OneTimeToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM one_time_token WHERE kind = %s ORDER BY created_at",
                (kind.value,),
            ).fetchall()
        return [self._row_to_token(row) for row in rows]

    def purge_expired_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM one_time_token WHERE expires_at <= %s", (now,)
            )
            return cursor.rowcount or 0

    # Compound transitions -----------------------------------------------------------

    def confirm_two_factor(
        self, token_id: str, user_id: str
    ) -> Optional[TwoFactorConfirmation]:
        with self._connect() as conn:
            with conn.transaction():
                consumed = conn.execute(
                    "DELETE FROM one_time_token WHERE kind = %s AND id = %s RETURNING id",
                    (TokenKind.TWO_FACTOR.value, token_id),
                ).fetchone()
                if not consumed:
                    return None
                row = conn.execute(
                    """
                    INSERT INTO two_factor_confirmation (id, user_id)
                    VALUES (%s, %s)
                    ON CONFLICT (user_id) DO UPDATE SET
                        id = EXCLUDED.id,
                        created_at = now()
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id),
                ).fetchone()
        return self._row_to_confirmation(row)

    def get_two_factor_confirmation(self, user_id: str) -> Optional[TwoFactorConfirmation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_confirmation WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._row_to_confirmation(row) if row else None

    def consume_two_factor_confirmation(
        self, user_id: str
    ) -> Optional[TwoFactorConfirmation]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM two_factor_confirmation WHERE user_id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._row_to_confirmation(row) if row else None

    def apply_email_verification(
        self, token_id: str, user_id: str, email: str, verified_at: datetime
    ) -> Optional[User]:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    consumed = conn.execute(
                        "DELETE FROM one_time_token WHERE kind = %s AND id = %s RETURNING id",
                        (TokenKind.VERIFICATION.value, token_id),
                    ).fetchone()
                    if not consumed:
                        return None
                    row = conn.execute(
                        """
                        UPDATE app_user SET email = %s, email_verified_at = %s
                        WHERE id = %s
                        RETURNING *
                        """,
                        (email, verified_at, user_id),
                    ).fetchone()
                    if not row:
                        # Roll back the token delete; the owner vanished mid-flight
                        raise _Rollback()
        except _Rollback:
            return None
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def apply_password_reset(
        self, token_id: str, user_id: str, password_hash: str
    ) -> Optional[User]:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    consumed = conn.execute(
                        "DELETE FROM one_time_token WHERE kind = %s AND id = %s RETURNING id",
                        (TokenKind.PASSWORD_RESET.value, token_id),
                    ).fetchone()
                    if not consumed:
                        return None
                    row = conn.execute(
                        "UPDATE app_user SET password_hash = %s WHERE id = %s RETURNING *",
                        (password_hash, user_id),
                    ).fetchone()
                    if not row:
                        raise _Rollback()
        except _Rollback:
            return None
        return self._row_to_user(row)

    def close(self) -> None:
        self.pool.close()


class _Rollback(Exception):
    """Abort the enclosing transaction block."""
