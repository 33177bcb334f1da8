from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

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

_IDENTITY_FIELDS = {CHANNEL_EMAIL: "email", CHANNEL_SMS: "phone"}


def _identity_field(channel: str) -> str:
    try:
        return _IDENTITY_FIELDS[channel]
    except KeyError:
        raise ValueError(f"unknown channel: {channel}") from None


class MemoryStore:
    """Single-instance backing store for development and tests.

    Every public method holds ``_data_lock`` for its whole read-check-write
    sequence, so conditional transitions (credential consumption, deletion
    scheduling) behave like the single-statement updates in ``PostgresStore``.
    State is written to ``fs_root/state/passgate_store.json`` after each
    mutation and reloaded on start.
    """

    def __init__(self, fs_root: str = "/tmp/passgate") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, Credential] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "passgate_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def ping(self) -> bool:
        with self._data_lock:
            return True

    # -- accounts -----------------------------------------------------------

    def _find_by_identity(self, channel: str, value: str) -> Optional[Account]:
        field_name = _identity_field(channel)
        return next(
            (
                acct
                for acct in self.accounts.values()
                if getattr(acct, field_name) == value and acct.status != ACCOUNT_DELETED
            ),
            None,
        )

    def create_account(
        self,
        status: str = ACCOUNT_GUEST,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        verified: bool = False,
        now: Optional[datetime] = None,
    ) -> Account:
        with self._data_lock:
            if email and self._find_by_identity(CHANNEL_EMAIL, email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if phone and self._find_by_identity(CHANNEL_SMS, phone):
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            account = Account.new(status, email=email, phone=phone, now=now)
            account.verified = verified
            self.accounts[account.id] = account
            self._persist_state()
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_identity(self, channel: str, value: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_by_identity(channel, value)
            return replace(account) if account else None

    def attach_account_identity(
        self, account_id: str, channel: str, value: str, now: datetime
    ) -> Optional[Account]:
        field_name = _identity_field(channel)
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.status == ACCOUNT_DELETED:
                return None
            owner = self._find_by_identity(channel, value)
            if owner and owner.id != account_id:
                raise ConstraintViolation(
                    f"{field_name} already exists", {"field": field_name}
                )
            setattr(account, field_name, value)
            account.updated_at = now
            self._persist_state()
            return replace(account)

    def activate_account(self, account_id: str, now: datetime) -> bool:
        """Promote a guest to active. Returns False unless the account was a guest."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.status != ACCOUNT_GUEST:
                return False
            account.status = ACCOUNT_ACTIVE
            account.updated_at = now
            self._persist_state()
            return True

    def mark_account_verified(self, account_id: str, now: datetime) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.status == ACCOUNT_DELETED:
                return False
            account.verified = True
            account.updated_at = now
            self._persist_state()
            return True

    def schedule_account_deletion(
        self, account_id: str, scheduled_at: datetime, now: datetime
    ) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.status != ACCOUNT_ACTIVE:
                return False
            account.status = ACCOUNT_PENDING_DELETE
            account.deletion_scheduled_at = scheduled_at
            account.updated_at = now
            self._persist_state()
            return True

    def cancel_account_deletion(self, account_id: str, now: datetime) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if (
                not account
                or account.status != ACCOUNT_PENDING_DELETE
                or account.deletion_scheduled_at is None
                or account.deletion_scheduled_at <= now
            ):
                return False
            account.status = ACCOUNT_ACTIVE
            account.deletion_scheduled_at = None
            account.updated_at = now
            self._persist_state()
            return True

    def list_due_deletions(self, now: datetime) -> List[Account]:
        with self._data_lock:
            return [
                replace(acct)
                for acct in self.accounts.values()
                if acct.status == ACCOUNT_PENDING_DELETE
                and acct.deletion_scheduled_at is not None
                and acct.deletion_scheduled_at <= now
            ]

    def sweep_account_deletions(self, now: datetime) -> List[str]:
        with self._data_lock:
            swept: List[str] = []
            for account in self.accounts.values():
                if (
                    account.status == ACCOUNT_PENDING_DELETE
                    and account.deletion_scheduled_at is not None
                    and account.deletion_scheduled_at <= now
                ):
                    account.status = ACCOUNT_DELETED
                    account.deleted_at = now
                    account.updated_at = now
                    account.email = None
                    account.phone = None
                    swept.append(account.id)
            if swept:
                self._persist_state()
            return swept

    # -- credentials --------------------------------------------------------

    def create_credential(self, credential: Credential) -> Credential:
        with self._data_lock:
            if credential.id in self.credentials:
                raise ConstraintViolation("credential already exists", {"field": "id"})
            self.credentials[credential.id] = replace(credential)
            self._persist_state()
            return replace(credential)

    def get_latest_credential(self, target: str, purpose: str) -> Optional[Credential]:
        with self._data_lock:
            matches = [
                cred
                for cred in self.credentials.values()
                if cred.target == target and cred.purpose == purpose
            ]
            if not matches:
                return None
            # Insertion order breaks created_at ties
            _, latest = max(enumerate(matches), key=lambda item: (item[1].created_at, item[0]))
            return replace(latest)

    def get_credential_by_digest(self, digest: str, purpose: str) -> Optional[Credential]:
        with self._data_lock:
            found = next(
                (
                    cred
                    for cred in self.credentials.values()
                    if cred.digest == digest and cred.purpose == purpose
                ),
                None,
            )
            return replace(found) if found else None

    def reserve_credential_attempt(self, credential_id: str, max_attempts: int) -> Optional[int]:
        """Count one redemption attempt, or return None once used or exhausted."""
        with self._data_lock:
            cred = self.credentials.get(credential_id)
            if not cred or cred.used or cred.attempts >= max_attempts:
                return None
            cred.attempts += 1
            self._persist_state()
            return cred.attempts

    def consume_credential(self, credential_id: str, used_at: datetime) -> bool:
        """Flip ``used`` from false to true. Only one caller ever sees True."""
        with self._data_lock:
            cred = self.credentials.get(credential_id)
            if not cred or cred.used:
                return False
            cred.used = True
            cred.used_at = used_at
            self._persist_state()
            return True

    def purge_credentials(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                cred_id
                for cred_id, cred in self.credentials.items()
                if cred.expires_at < before or (cred.used_at and cred.used_at < before)
            ]
            for cred_id in stale:
                del self.credentials[cred_id]
            if stale:
                self._persist_state()
            return len(stale)

    # -- persistence --------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "credentials": [
                self._serialize_credential(c) for c in self.credentials.values()
            ],
        }
        path = self._state_path()
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=".passgate_store_", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as handle:
                handle.write(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # try/except instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.credentials = {
            c["id"]: self._deserialize_credential(c) for c in data.get("credentials", [])
        }
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            credentials=len(self.credentials),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "status": account.status,
            "email": account.email,
            "phone": account.phone,
            "verified": account.verified,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
            "deletion_scheduled_at": self._serialize_datetime(
                account.deletion_scheduled_at
            ),
            "deleted_at": self._serialize_datetime(account.deleted_at),
            "meta": account.meta,
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            status=data.get("status", ACCOUNT_GUEST),
            email=data.get("email"),
            phone=data.get("phone"),
            verified=bool(data.get("verified", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
            deletion_scheduled_at=self._deserialize_datetime(
                data.get("deletion_scheduled_at")
            ),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
            meta=data.get("meta"),
        )

    def _serialize_credential(self, cred: Credential) -> dict:
        return {
            "id": cred.id,
            "target": cred.target,
            "channel": cred.channel,
            "purpose": cred.purpose,
            "digest": cred.digest,
            "salt": cred.salt,
            "created_at": self._serialize_datetime(cred.created_at),
            "expires_at": self._serialize_datetime(cred.expires_at),
            "used": cred.used,
            "used_at": self._serialize_datetime(cred.used_at),
            "attempts": cred.attempts,
            "meta": cred.meta,
        }

    def _deserialize_credential(self, data: dict) -> Credential:
        return Credential(
            id=str(data["id"]),
            target=data["target"],
            channel=data["channel"],
            purpose=data["purpose"],
            digest=data["digest"],
            salt=data.get("salt"),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used=bool(data.get("used", False)),
            used_at=self._deserialize_datetime(data.get("used_at")),
            attempts=int(data.get("attempts", 0)),
            meta=data.get("meta"),
        )
