from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Type

from passgate.logging import get_logger, hash_identity
from passgate.service.errors import (
    AlreadyUsedCredentialError,
    CredentialError,
    ExpiredCredentialError,
    InvalidCredentialError,
)
from passgate.service.store_calls import call_store
from passgate.service.tokens import TokenIssuer
from passgate.storage.models import Credential

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialStore:
    """Durable one-time credential records with at-most-once redemption.

    Blocking store calls run in worker threads. Redemption never takes an
    application lock: the store's conditional ``used`` flip decides the single
    winner among concurrent attempts.
    """

    def __init__(
        self,
        store,
        issuer: TokenIssuer,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        max_attempts: int = 5,
        store_timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self._clock = clock or _utcnow
        self.max_attempts = max_attempts
        self.store_timeout = store_timeout
        # Salt used to spend a KDF computation when no credential exists
        self._decoy_salt = TokenIssuer.new_salt()

    async def _store(self, func, *args):
        return await call_store(func, *args, timeout=self.store_timeout)

    async def create(
        self,
        target: str,
        channel: str,
        purpose: str,
        digest: str,
        *,
        ttl: timedelta,
        salt: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> Credential:
        credential = Credential.new(
            target,
            channel,
            purpose,
            digest,
            ttl=ttl,
            salt=salt,
            now=self._clock(),
            meta=meta,
        )
        stored = await self._store(self.store.create_credential, credential)
        logger.info(
            "credential_created",
            credential_id=stored.id,
            target_hash=hash_identity(target),
            channel=channel,
            purpose=purpose,
            expires_at=stored.expires_at.isoformat(),
        )
        return stored

    def _reject(
        self,
        error_cls: Type[CredentialError],
        *,
        purpose: str,
        target: Optional[str] = None,
        credential: Optional[Credential] = None,
    ) -> CredentialError:
        # Full detail stays in the logs; callers only see the generic error
        logger.warning(
            "credential_redeem_failed",
            reason=error_cls.reason,
            purpose=purpose,
            credential_id=credential.id if credential else None,
            target_hash=hash_identity(target) if target else None,
            attempts=credential.attempts if credential else None,
        )
        return error_cls()

    async def _digest_for(self, supplied: str, salt: Optional[str]) -> str:
        if salt:
            return await asyncio.to_thread(self.issuer.digest_code, supplied, salt)
        return self.issuer.digest(supplied)

    async def _finish(self, credential: Credential, purpose: str) -> Credential:
        now = self._clock()
        if credential.used:
            raise self._reject(
                AlreadyUsedCredentialError,
                purpose=purpose,
                target=credential.target,
                credential=credential,
            )
        if now >= credential.expires_at:
            raise self._reject(
                ExpiredCredentialError,
                purpose=purpose,
                target=credential.target,
                credential=credential,
            )
        consumed = await self._store(self.store.consume_credential, credential.id, now)
        if not consumed:
            # Lost the race to a concurrent redemption
            raise self._reject(
                AlreadyUsedCredentialError,
                purpose=purpose,
                target=credential.target,
                credential=credential,
            )
        credential.used = True
        credential.used_at = now
        logger.info(
            "credential_consumed",
            credential_id=credential.id,
            target_hash=hash_identity(credential.target),
            purpose=purpose,
        )
        return credential

    async def consume_if_valid(self, target: str, purpose: str, supplied: str) -> Credential:
        """Redeem the most recent credential for ``target``/``purpose``.

        Returns the consumed credential (its ``target`` and ``channel`` are the
        verified identity).

        Raises:
            InvalidCredentialError: no credential, digest mismatch, or attempts exhausted.
            AlreadyUsedCredentialError: the credential was consumed before or concurrently.
            ExpiredCredentialError: the credential is past ``expires_at``.
        """
        credential = await self._store(self.store.get_latest_credential, target, purpose)
        if credential is None:
            await self._digest_for(supplied, self._decoy_salt)
            raise self._reject(InvalidCredentialError, purpose=purpose, target=target)

        # Claim an attempt before comparing; the store refuses past max_attempts
        exhausted = False
        if not credential.used:
            reserved = await self._store(
                self.store.reserve_credential_attempt, credential.id, self.max_attempts
            )
            if reserved is None:
                exhausted = True
            else:
                credential.attempts = reserved

        candidate = await self._digest_for(supplied, credential.salt)
        if exhausted:
            logger.warning(
                "credential_attempts_exhausted",
                credential_id=credential.id,
                max_attempts=self.max_attempts,
            )
            raise self._reject(
                InvalidCredentialError, purpose=purpose, target=target, credential=credential
            )
        if not self.issuer.matches(candidate, credential.digest):
            raise self._reject(
                InvalidCredentialError, purpose=purpose, target=target, credential=credential
            )
        return await self._finish(credential, purpose)

    async def consume_link(self, secret: str, purpose: str) -> Credential:
        """Redeem a magic-link token by its digest."""
        credential = await self._store(
            self.store.get_credential_by_digest, self.issuer.digest(secret), purpose
        )
        if credential is None:
            raise self._reject(InvalidCredentialError, purpose=purpose)
        return await self._finish(credential, purpose)

    async def purge_expired(self, retention: timedelta) -> int:
        cutoff = self._clock() - retention
        purged = await self._store(self.store.purge_credentials, cutoff)
        if purged:
            logger.info("credentials_purged", count=purged, cutoff=cutoff.isoformat())
        return purged
