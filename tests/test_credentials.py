"""Tests for credential issuance and at-most-once redemption."""

import asyncio
import time
from datetime import timedelta

import pytest

from passgate.service.credentials import CredentialStore
from passgate.service.errors import (
    AlreadyUsedCredentialError,
    CredentialError,
    ExpiredCredentialError,
    InvalidCredentialError,
    ServerError,
)
from passgate.service.tokens import TokenIssuer
from passgate.storage.memory import MemoryStore
from passgate.storage.models import CHANNEL_EMAIL, CHANNEL_SMS, PURPOSE_LOGIN, PURPOSE_VERIFY_IDENTITY

PHONE = "+15555550123"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "creds"))


@pytest.fixture
def issuer():
    return TokenIssuer(kdf_time_cost=1, kdf_memory_kib=1024)


@pytest.fixture
def credentials(store, issuer, clock):
    return CredentialStore(store, issuer, clock=clock, max_attempts=3)


async def _issue_code(credentials, issuer, target=PHONE, ttl=timedelta(minutes=10)):
    code = issuer.issue_code(6)
    salt = issuer.new_salt()
    digest = issuer.digest_code(code, salt)
    await credentials.create(
        target, CHANNEL_SMS, PURPOSE_VERIFY_IDENTITY, digest, ttl=ttl, salt=salt
    )
    return code


async def _issue_link(credentials, issuer, target="user@example.com"):
    secret = issuer.issue()
    await credentials.create(
        target, CHANNEL_EMAIL, PURPOSE_LOGIN, issuer.digest(secret), ttl=timedelta(minutes=15)
    )
    return secret


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestConsumeCode:
    """OTP redemption by target and purpose."""

    async def test_valid_code_is_consumed_once(self, credentials, issuer):
        code = await _issue_code(credentials, issuer)
        consumed = await credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, code)
        assert consumed.used is True
        assert consumed.target == PHONE
        with pytest.raises(AlreadyUsedCredentialError):
            await credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, code)

    async def test_code_is_bound_to_purpose(self, credentials, issuer):
        code = await _issue_code(credentials, issuer)
        with pytest.raises(InvalidCredentialError):
            await credentials.consume_if_valid(PHONE, PURPOSE_LOGIN, code)

    async def test_unknown_target_is_invalid(self, credentials):
        with pytest.raises(InvalidCredentialError):
            await credentials.consume_if_valid("+15555550999", PURPOSE_VERIFY_IDENTITY, "123456")

    async def test_expired_at_exact_expiry(self, credentials, issuer, clock):
        code = await _issue_code(credentials, issuer)
        clock.advance(minutes=10)
        with pytest.raises(ExpiredCredentialError):
            await credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, code)

    async def test_valid_one_second_before_expiry(self, credentials, issuer, clock):
        code = await _issue_code(credentials, issuer)
        clock.advance(minutes=9, seconds=59)
        consumed = await credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, code)
        assert consumed.used

    async def test_only_latest_code_counts(self, credentials, issuer, clock):
        first = await _issue_code(credentials, issuer)
        clock.advance(seconds=5)
        second = await _issue_code(credentials, issuer)
        if first != second:
            with pytest.raises(InvalidCredentialError):
                await credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, first)
        consumed = await credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, second)
        assert consumed.used

    async def test_attempts_exhausted_locks_code(self, credentials, issuer, store):
        code = await _issue_code(credentials, issuer)
        for _ in range(3):
            with pytest.raises(InvalidCredentialError):
                await credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, _wrong(code))
        latest = store.get_latest_credential(PHONE, PURPOSE_VERIFY_IDENTITY)
        assert latest.attempts == 3
        with pytest.raises(InvalidCredentialError):
            await credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, code)
        assert store.get_latest_credential(PHONE, PURPOSE_VERIFY_IDENTITY).used is False

    async def test_newest_code_wins_timestamp_tie(self, credentials, issuer):
        first = await _issue_code(credentials, issuer)
        second = await _issue_code(credentials, issuer)
        if first != second:
            with pytest.raises(InvalidCredentialError):
                await credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, first)
        consumed = await credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, second)
        assert consumed.used

    async def test_concurrent_wrong_guesses_stop_at_limit(self, credentials, issuer, store):
        code = await _issue_code(credentials, issuer)
        results = await asyncio.gather(
            *(
                credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, _wrong(code))
                for _ in range(10)
            ),
            return_exceptions=True,
        )
        assert all(isinstance(r, InvalidCredentialError) for r in results)
        assert store.get_latest_credential(PHONE, PURPOSE_VERIFY_IDENTITY).attempts == 3
        with pytest.raises(InvalidCredentialError):
            await credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, code)
        assert store.get_latest_credential(PHONE, PURPOSE_VERIFY_IDENTITY).used is False

    async def test_correct_code_in_guess_batch_respects_limit(self, credentials, issuer, store):
        code = await _issue_code(credentials, issuer)
        guesses = [_wrong(code)] * 19 + [code]
        results = await asyncio.gather(
            *(credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, g) for g in guesses),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(winners) <= 1
        assert all(
            isinstance(r, InvalidCredentialError) for r in results if isinstance(r, Exception)
        )
        latest = store.get_latest_credential(PHONE, PURPOSE_VERIFY_IDENTITY)
        # At most max_attempts guesses were ever compared
        assert latest.attempts <= 3
        assert latest.used is bool(winners)

    async def test_concurrent_correct_codes_have_one_winner(self, store, issuer, clock):
        credentials = CredentialStore(store, issuer, clock=clock, max_attempts=20)
        code = await _issue_code(credentials, issuer)
        results = await asyncio.gather(
            *(credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, code) for _ in range(10)),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert winners[0].target == PHONE
        assert len(losers) == 9
        assert all(isinstance(err, AlreadyUsedCredentialError) for err in losers)

    async def test_failures_share_one_public_message(self, credentials, issuer, clock):
        code = await _issue_code(credentials, issuer)
        messages = set()
        with pytest.raises(CredentialError) as wrong:
            await credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, _wrong(code))
        messages.add((wrong.value.message, wrong.value.error_code))
        clock.advance(minutes=11)
        with pytest.raises(CredentialError) as expired:
            await credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, code)
        messages.add((expired.value.message, expired.value.error_code))
        assert messages == {("invalid or expired code", "invalid_code")}


class TestConsumeLink:
    """Magic-link redemption by digest."""

    async def test_concurrent_redemptions_have_one_winner(self, credentials, issuer):
        secret = await _issue_link(credentials, issuer)
        results = await asyncio.gather(
            *(credentials.consume_link(secret, PURPOSE_LOGIN) for _ in range(10)),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 9
        assert all(isinstance(err, AlreadyUsedCredentialError) for err in losers)

    async def test_unknown_token_is_invalid(self, credentials):
        with pytest.raises(InvalidCredentialError):
            await credentials.consume_link(TokenIssuer.issue(), PURPOSE_LOGIN)

    async def test_expired_link(self, credentials, issuer, clock):
        secret = await _issue_link(credentials, issuer)
        clock.advance(minutes=15, seconds=1)
        with pytest.raises(ExpiredCredentialError):
            await credentials.consume_link(secret, PURPOSE_LOGIN)


class TestPersistence:
    """Only digests reach the backing store."""

    async def test_raw_secrets_never_persisted(self, credentials, issuer, store):
        secret = await _issue_link(credentials, issuer)
        code = await _issue_code(credentials, issuer)
        state = (store.fs_root / "state" / "passgate_store.json").read_text()
        assert secret not in state
        assert f'"{code}"' not in state

    async def test_purge_drops_stale_credentials(self, credentials, issuer, clock, store):
        await _issue_code(credentials, issuer)
        clock.advance(hours=25)
        fresh = await _issue_code(credentials, issuer)
        purged = await credentials.purge_expired(timedelta(hours=24))
        assert purged == 1
        consumed = await credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, fresh)
        assert consumed.used


class TestStoreTimeouts:
    """Store calls are bounded."""

    async def test_slow_store_raises_server_error(self, store, issuer, clock, monkeypatch):
        credentials = CredentialStore(store, issuer, clock=clock, store_timeout=0.05)
        monkeypatch.setattr(store, "get_latest_credential", lambda *args: time.sleep(0.5))
        with pytest.raises(ServerError):
            await credentials.consume_if_valid(PHONE, PURPOSE_VERIFY_IDENTITY, "123456")
