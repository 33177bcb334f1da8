from __future__ import annotations

import json
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from passgate.logging import get_logger
from passgate.storage.errors import ConstraintViolation
from passgate.storage.models import (
    ACCOUNT_ACTIVE,
    ACCOUNT_DELETED,
    ACCOUNT_GUEST,
    ACCOUNT_PENDING_DELETE,
    CHANNEL_EMAIL,
    CHANNEL_SMS,
    Account,
    Credential,
)

_IDENTITY_COLUMNS = {CHANNEL_EMAIL: "email", CHANNEL_SMS: "phone"}

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL DEFAULT 'guest',
        email TEXT,
        phone TEXT,
        verified BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ,
        deletion_scheduled_at TIMESTAMPTZ,
        deleted_at TIMESTAMPTZ,
        meta JSONB
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS account_email_live_idx
        ON account (email) WHERE email IS NOT NULL AND status <> 'deleted'
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS account_phone_live_idx
        ON account (phone) WHERE phone IS NOT NULL AND status <> 'deleted'
    """,
    """
    CREATE INDEX IF NOT EXISTS account_pending_delete_idx
        ON account (deletion_scheduled_at) WHERE status = 'pending_delete'
    """,
    """
    CREATE TABLE IF NOT EXISTS login_credential (
        id TEXT PRIMARY KEY,
        target TEXT NOT NULL,
        channel TEXT NOT NULL,
        purpose TEXT NOT NULL,
        digest TEXT NOT NULL,
        salt TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT false,
        used_at TIMESTAMPTZ,
        attempts INTEGER NOT NULL DEFAULT 0,
        meta JSONB,
        seq BIGSERIAL NOT NULL
    )
    """,
    """
    ALTER TABLE login_credential ADD COLUMN IF NOT EXISTS seq BIGSERIAL NOT NULL
    """,
    """
    CREATE INDEX IF NOT EXISTS login_credential_latest_idx
        ON login_credential (target, purpose, created_at DESC, seq DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS login_credential_digest_idx
        ON login_credential (digest)
    """,
)


class PostgresStore:
    """Postgres-backed store for accounts and one-time credentials.

    State transitions are single conditional statements; the number of rows
    affected decides whether a transition happened, so concurrent callers on
    different instances cannot both win.
    """

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        # Pool checkout, connect and every statement share one bound
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(2, math.ceil(timeout_seconds)),
                "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            },
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``account`` and ``login_credential`` tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _identity_column(channel: str) -> str:
        try:
            return _IDENTITY_COLUMNS[channel]
        except KeyError:
            raise ValueError(f"unknown channel: {channel}") from None

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            status=row.get("status", ACCOUNT_GUEST),
            email=row.get("email"),
            phone=row.get("phone"),
            verified=bool(row.get("verified", False)),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
            deletion_scheduled_at=row.get("deletion_scheduled_at"),
            deleted_at=row.get("deleted_at"),
            meta=row.get("meta"),
        )

    @staticmethod
    def _credential_from_row(row: Dict[str, Any]) -> Credential:
        return Credential(
            id=str(row["id"]),
            target=row["target"],
            channel=row["channel"],
            purpose=row["purpose"],
            digest=row["digest"],
            salt=row.get("salt"),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            used=bool(row.get("used", False)),
            used_at=row.get("used_at"),
            attempts=int(row.get("attempts") or 0),
            meta=row.get("meta"),
        )

    # accounts
    def create_account(
        self,
        status: str = ACCOUNT_GUEST,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        verified: bool = False,
        now: Optional[datetime] = None,
    ) -> Account:
        account = Account.new(status, email=email, phone=phone, now=now)
        account.verified = verified
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, status, email, phone, verified, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.status,
                        account.email,
                        account.phone,
                        account.verified,
                        account.created_at,
                        account.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            field_name = "email" if email else "phone"
            raise ConstraintViolation(f"{field_name} already exists", {"field": field_name})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_identity(self, channel: str, value: str) -> Optional[Account]:
        column = self._identity_column(channel)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM account WHERE {column} = %s AND status <> %s",
                (value, ACCOUNT_DELETED),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def attach_account_identity(
        self, account_id: str, channel: str, value: str, now: datetime
    ) -> Optional[Account]:
        column = self._identity_column(channel)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE account SET {column} = %s, updated_at = %s
                    WHERE id = %s AND status <> %s
                    RETURNING *
                    """,
                    (value, now, account_id, ACCOUNT_DELETED),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(f"{column} already exists", {"field": column})
        return self._account_from_row(row) if row else None

    def activate_account(self, account_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE account SET status = %s, updated_at = %s WHERE id = %s AND status = %s",
                (ACCOUNT_ACTIVE, now, account_id, ACCOUNT_GUEST),
            )
            return result.rowcount > 0

    def mark_account_verified(self, account_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE account SET verified = true, updated_at = %s WHERE id = %s AND status <> %s",
                (now, account_id, ACCOUNT_DELETED),
            )
            return result.rowcount > 0

    def schedule_account_deletion(
        self, account_id: str, scheduled_at: datetime, now: datetime
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE account
                SET status = %s, deletion_scheduled_at = %s, updated_at = %s
                WHERE id = %s AND status = %s
                """,
                (ACCOUNT_PENDING_DELETE, scheduled_at, now, account_id, ACCOUNT_ACTIVE),
            )
            return result.rowcount > 0

    def cancel_account_deletion(self, account_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE account
                SET status = %s, deletion_scheduled_at = NULL, updated_at = %s
                WHERE id = %s AND status = %s AND deletion_scheduled_at > %s
                """,
                (ACCOUNT_ACTIVE, now, account_id, ACCOUNT_PENDING_DELETE, now),
            )
            return result.rowcount > 0

    def list_due_deletions(self, now: datetime) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM account
                WHERE status = %s AND deletion_scheduled_at <= %s
                ORDER BY deletion_scheduled_at
                """,
                (ACCOUNT_PENDING_DELETE, now),
            ).fetchall()
        return [self._account_from_row(row) for row in rows]

    def sweep_account_deletions(self, now: datetime) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE account
                SET status = %s, deleted_at = %s, updated_at = %s, email = NULL, phone = NULL
                WHERE status = %s AND deletion_scheduled_at <= %s
                RETURNING id
                """,
                (ACCOUNT_DELETED, now, now, ACCOUNT_PENDING_DELETE, now),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    # credentials
    def create_credential(self, credential: Credential) -> Credential:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO login_credential
                        (id, target, channel, purpose, digest, salt, created_at, expires_at, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        credential.id,
                        credential.target,
                        credential.channel,
                        credential.purpose,
                        credential.digest,
                        credential.salt,
                        credential.created_at,
                        credential.expires_at,
                        json.dumps(credential.meta) if credential.meta else None,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("credential already exists", {"field": "id"})
        return credential

    def get_latest_credential(self, target: str, purpose: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM login_credential
                WHERE target = %s AND purpose = %s
                ORDER BY created_at DESC, seq DESC
                LIMIT 1
                """,
                (target, purpose),
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def get_credential_by_digest(self, digest: str, purpose: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM login_credential WHERE digest = %s AND purpose = %s LIMIT 1",
                (digest, purpose),
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def reserve_credential_attempt(self, credential_id: str, max_attempts: int) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE login_credential SET attempts = attempts + 1
                WHERE id = %s AND used = false AND attempts < %s
                RETURNING attempts
                """,
                (credential_id, max_attempts),
            ).fetchone()
        return int(row["attempts"]) if row else None

    def consume_credential(self, credential_id: str, used_at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE login_credential SET used = true, used_at = %s WHERE id = %s AND used = false",
                (used_at, credential_id),
            )
            return result.rowcount > 0

    def purge_credentials(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM login_credential WHERE expires_at < %s OR used_at < %s",
                (before, before),
            )
            return result.rowcount
