from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

ACCOUNT_GUEST = "guest"
ACCOUNT_ACTIVE = "active"
ACCOUNT_PENDING_DELETE = "pending_delete"
ACCOUNT_DELETED = "deleted"
ACCOUNT_STATUSES = frozenset(
    {ACCOUNT_GUEST, ACCOUNT_ACTIVE, ACCOUNT_PENDING_DELETE, ACCOUNT_DELETED}
)

PURPOSE_VERIFY_IDENTITY = "verify-identity"
PURPOSE_LOGIN = "login"
PURPOSE_VERIFY_SECONDARY_CHANNEL = "verify-secondary-channel"
CREDENTIAL_PURPOSES = frozenset(
    {PURPOSE_VERIFY_IDENTITY, PURPOSE_LOGIN, PURPOSE_VERIFY_SECONDARY_CHANNEL}
)

CHANNEL_EMAIL = "email"
CHANNEL_SMS = "sms"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Credential:
    """A one-time secret record. Only the digest of the secret is kept."""

    id: str
    target: str
    channel: str
    purpose: str
    digest: str
    expires_at: datetime
    salt: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    used: bool = False
    used_at: Optional[datetime] = None
    attempts: int = 0
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        target: str,
        channel: str,
        purpose: str,
        digest: str,
        *,
        ttl: timedelta,
        salt: str | None = None,
        now: datetime | None = None,
        meta: Dict | None = None,
    ) -> "Credential":
        created = now or _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            target=target,
            channel=channel,
            purpose=purpose,
            digest=digest,
            salt=salt,
            created_at=created,
            expires_at=created + ttl,
            meta=meta,
        )


@dataclass
class Account:
    id: str
    status: str = ACCOUNT_GUEST
    email: Optional[str] = None
    phone: Optional[str] = None
    verified: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None
    deletion_scheduled_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        status: str = ACCOUNT_GUEST,
        *,
        email: str | None = None,
        phone: str | None = None,
        now: datetime | None = None,
    ) -> "Account":
        created = now or _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            status=status,
            email=email,
            phone=phone,
            created_at=created,
            updated_at=created,
        )

    @property
    def is_guest(self) -> bool:
        return self.status == ACCOUNT_GUEST
