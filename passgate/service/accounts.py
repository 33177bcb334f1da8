from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from passgate.logging import get_logger, hash_identity
from passgate.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenGuestReadonlyError,
    NotFoundError,
)
from passgate.service.sessions import SessionPayload
from passgate.service.store_calls import call_store
from passgate.storage.errors import ConstraintViolation
from passgate.storage.models import (
    ACCOUNT_ACTIVE,
    ACCOUNT_DELETED,
    ACCOUNT_GUEST,
    ACCOUNT_PENDING_DELETE,
    CHANNEL_EMAIL,
    PURPOSE_VERIFY_SECONDARY_CHANNEL,
    Account,
)

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountLifecycle:
    """Account status machine: guest -> active -> pending_delete -> deleted.

    Every transition is a conditional store update. ``deleted`` is only ever
    reached through ``sweep_expired_deletions`` once the grace period lapses.
    """

    def __init__(
        self,
        store,
        *,
        grace: timedelta = timedelta(days=7),
        clock: Optional[Callable[[], datetime]] = None,
        store_timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.grace = grace
        self._clock = clock or _utcnow
        self.store_timeout = store_timeout

    async def _store(self, func, *args, **kwargs):
        return await call_store(func, *args, timeout=self.store_timeout, **kwargs)

    async def create_guest(self) -> Account:
        account = await self._store(self.store.create_account, ACCOUNT_GUEST, now=self._clock())
        logger.info("guest_account_created", account_id=account.id)
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        return await self._store(self.store.get_account, account_id)

    async def _require_account(self, account_id: str) -> Account:
        account = await self.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found")
        return account

    async def _attach_and_verify(self, account_id: str, target: str, channel: str) -> Account:
        now = self._clock()
        try:
            account = await self._store(
                self.store.attach_account_identity, account_id, channel, target, now
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "identity is linked to another account", detail=exc.detail
            ) from exc
        if account is None:
            raise NotFoundError("account not found")
        await self._store(self.store.mark_account_verified, account_id, now)
        account.verified = True
        return account

    async def resolve_identity(
        self,
        target: str,
        channel: str,
        purpose: str,
        principal: Optional[SessionPayload] = None,
    ) -> Account:
        """Map a verified identity onto an account, creating or promoting as needed.

        Raises:
            AuthenticationError: secondary-channel verification without a member session.
            ConflictError: the identity already belongs to a different account.
        """
        if purpose == PURPOSE_VERIFY_SECONDARY_CHANNEL:
            if principal is None or principal.is_guest:
                raise AuthenticationError("invalid session")
            account = await self._require_account(principal.subject_id)
            if account.status == ACCOUNT_DELETED:
                raise AuthenticationError("invalid session")
            account = await self._attach_and_verify(account.id, target, channel)
            logger.info(
                "secondary_channel_verified",
                account_id=account.id,
                channel=channel,
                target_hash=hash_identity(target),
            )
            return account

        existing = await self._store(self.store.get_account_by_identity, channel, target)
        if existing is not None:
            if not existing.verified:
                await self._store(self.store.mark_account_verified, existing.id, self._clock())
                existing.verified = True
            return existing

        if principal is not None and principal.is_guest:
            guest = await self.get_account(principal.subject_id)
            if guest is not None and guest.status == ACCOUNT_GUEST:
                account = await self._attach_and_verify(guest.id, target, channel)
                if await self._store(self.store.activate_account, guest.id, self._clock()):
                    account.status = ACCOUNT_ACTIVE
                logger.info(
                    "guest_account_promoted",
                    account_id=account.id,
                    channel=channel,
                    target_hash=hash_identity(target),
                )
                return account

        identity = {"email": target} if channel == CHANNEL_EMAIL else {"phone": target}
        try:
            account = await self._store(
                self.store.create_account,
                ACCOUNT_ACTIVE,
                verified=True,
                now=self._clock(),
                **identity,
            )
        except ConstraintViolation:
            # A concurrent redemption created the account first
            account = await self._store(self.store.get_account_by_identity, channel, target)
            if account is None:
                raise
            return account
        logger.info(
            "account_created",
            account_id=account.id,
            channel=channel,
            target_hash=hash_identity(target),
        )
        return account

    async def request_deletion(self, account_id: str) -> datetime:
        """Schedule deletion after the grace period and return the scheduled time.

        Raises:
            ForbiddenGuestReadonlyError: guests have nothing to delete.
            ConflictError: the account is already deleted.
        """
        account = await self._require_account(account_id)
        if account.status == ACCOUNT_GUEST:
            raise ForbiddenGuestReadonlyError()
        if account.status == ACCOUNT_DELETED:
            raise ConflictError("account already deleted")
        if account.status == ACCOUNT_PENDING_DELETE and account.deletion_scheduled_at:
            return account.deletion_scheduled_at

        now = self._clock()
        scheduled_at = now + self.grace
        scheduled = await self._store(
            self.store.schedule_account_deletion, account_id, scheduled_at, now
        )
        if not scheduled:
            current = await self._require_account(account_id)
            if current.status == ACCOUNT_PENDING_DELETE and current.deletion_scheduled_at:
                return current.deletion_scheduled_at
            raise ConflictError("account cannot be scheduled for deletion")
        logger.info(
            "account_deletion_scheduled",
            account_id=account_id,
            deletion_scheduled_at=scheduled_at.isoformat(),
        )
        return scheduled_at

    async def cancel_deletion(self, account_id: str) -> None:
        """Return a pending_delete account to active while the grace period runs.

        Raises:
            ConflictError: the account is deleted or the grace period has lapsed.
        """
        account = await self._require_account(account_id)
        if account.status == ACCOUNT_DELETED:
            raise ConflictError("account already deleted")
        if account.status == ACCOUNT_GUEST:
            raise ForbiddenGuestReadonlyError()
        if account.status == ACCOUNT_ACTIVE:
            return
        cancelled = await self._store(self.store.cancel_account_deletion, account_id, self._clock())
        if not cancelled:
            logger.warning(
                "account_deletion_cancel_rejected",
                account_id=account_id,
                deletion_scheduled_at=(
                    account.deletion_scheduled_at.isoformat()
                    if account.deletion_scheduled_at
                    else None
                ),
            )
            raise ConflictError("deletion grace period has elapsed")
        logger.info("account_deletion_cancelled", account_id=account_id)

    async def list_due_deletions(self, now: Optional[datetime] = None) -> List[Account]:
        return await self._store(self.store.list_due_deletions, now or self._clock())

    async def sweep_expired_deletions(self, now: Optional[datetime] = None) -> int:
        cutoff = now or self._clock()
        swept = await self._store(self.store.sweep_account_deletions, cutoff)
        for account_id in swept:
            logger.info("account_deleted", account_id=account_id)
        return len(swept)
