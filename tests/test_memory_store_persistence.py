from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from passgate.storage.errors import ConstraintViolation
from passgate.storage.memory import MemoryStore
from passgate.storage.models import (
    ACCOUNT_ACTIVE,
    ACCOUNT_PENDING_DELETE,
    CHANNEL_EMAIL,
    CHANNEL_SMS,
    PURPOSE_LOGIN,
    Credential,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_accounts_and_credentials_survive_restart(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    account = store.create_account(ACCOUNT_ACTIVE, email="user@example.com", verified=True, now=NOW)
    store.schedule_account_deletion(account.id, NOW + timedelta(days=7), NOW)
    credential = store.create_credential(
        Credential.new(
            "user@example.com", CHANNEL_EMAIL, PURPOSE_LOGIN, "d" * 64, ttl=timedelta(minutes=15), now=NOW
        )
    )
    assert store.reserve_credential_attempt(credential.id, 5) == 1

    reloaded = MemoryStore(fs_root=str(tmp_path))
    restored = reloaded.get_account(account.id)
    assert restored.status == ACCOUNT_PENDING_DELETE
    assert restored.deletion_scheduled_at == NOW + timedelta(days=7)
    assert restored.verified is True
    restored_cred = reloaded.get_credential_by_digest("d" * 64, PURPOSE_LOGIN)
    assert restored_cred.attempts == 1
    assert restored_cred.expires_at == NOW + timedelta(minutes=15)


def test_live_identities_are_unique(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_account(ACCOUNT_ACTIVE, phone="+15555550123", now=NOW)
    with pytest.raises(ConstraintViolation):
        store.create_account(ACCOUNT_ACTIVE, phone="+15555550123", now=NOW)
    assert store.get_account_by_identity(CHANNEL_SMS, "+15555550123") is not None


def test_returned_records_are_copies(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    account = store.create_account(ACCOUNT_ACTIVE, email="user@example.com", now=NOW)
    account.status = "deleted"
    assert store.get_account(account.id).status == ACCOUNT_ACTIVE


def test_latest_credential_breaks_timestamp_ties_by_insertion(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    for digest in ("a" * 64, "b" * 64, "c" * 64):
        store.create_credential(
            Credential.new(
                "+15555550123", CHANNEL_SMS, PURPOSE_LOGIN, digest, ttl=timedelta(minutes=10), now=NOW
            )
        )
    assert store.get_latest_credential("+15555550123", PURPOSE_LOGIN).digest == "c" * 64
    reloaded = MemoryStore(fs_root=str(tmp_path))
    assert reloaded.get_latest_credential("+15555550123", PURPOSE_LOGIN).digest == "c" * 64


def test_reserve_attempt_stops_at_limit_and_after_use(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    credential = store.create_credential(
        Credential.new(
            "+15555550123", CHANNEL_SMS, PURPOSE_LOGIN, "d" * 64, ttl=timedelta(minutes=10), now=NOW
        )
    )
    assert [store.reserve_credential_attempt(credential.id, 2) for _ in range(3)] == [1, 2, None]

    other = store.create_credential(
        Credential.new(
            "+15555550124", CHANNEL_SMS, PURPOSE_LOGIN, "e" * 64, ttl=timedelta(minutes=10), now=NOW
        )
    )
    assert store.consume_credential(other.id, NOW)
    assert store.reserve_credential_attempt(other.id, 5) is None


def test_state_file_written_without_leftover_temp_files(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_account(ACCOUNT_ACTIVE, email="user@example.com", now=NOW)
    state_dir = tmp_path / "state"
    assert sorted(p.name for p in state_dir.iterdir()) == ["passgate_store.json"]
