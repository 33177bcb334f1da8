from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

from passgate.logging import get_logger, hash_identity
from passgate.service.accounts import AccountLifecycle
from passgate.service.credentials import CredentialStore
from passgate.service.delivery import DeliveryGateway
from passgate.service.errors import AuthenticationError, DeliveryError, ValidationError
from passgate.service.sessions import ROLE_GUEST, ROLE_MEMBER, SessionManager, SessionPayload
from passgate.service.tokens import TokenIssuer
from passgate.storage.models import (
    ACCOUNT_GUEST,
    CHANNEL_EMAIL,
    CHANNEL_SMS,
    PURPOSE_VERIFY_SECONDARY_CHANNEL,
    Account,
    Credential,
)

logger = get_logger(__name__)

METHOD_LINK = "link"
METHOD_CODE = "code"


def channel_for(target: str) -> str:
    """Normalized targets are either an email address or an E.164 phone number."""
    return CHANNEL_EMAIL if "@" in target else CHANNEL_SMS


@dataclass
class RedemptionResult:
    account: Account
    identity: str
    channel: str
    session_token: str
    redirect_path: Optional[str] = None


class PasswordlessService:
    """Issues one-time credentials and turns redeemed ones into sessions.

    Rate limiting happens at the HTTP call sites before these methods run, so a
    request that reaches delivery has already been counted.
    """

    def __init__(
        self,
        *,
        issuer: TokenIssuer,
        credentials: CredentialStore,
        accounts: AccountLifecycle,
        sessions: SessionManager,
        delivery: DeliveryGateway,
        base_url: str,
        magic_link_ttl: timedelta = timedelta(minutes=15),
        otp_ttl: timedelta = timedelta(minutes=10),
        otp_length: int = 6,
        delivery_timeout_seconds: float = 10.0,
    ) -> None:
        self.issuer = issuer
        self.credentials = credentials
        self.accounts = accounts
        self.sessions = sessions
        self.delivery = delivery
        self.base_url = base_url.rstrip("/")
        self.magic_link_ttl = magic_link_ttl
        self.otp_ttl = otp_ttl
        self.otp_length = otp_length
        self.delivery_timeout_seconds = delivery_timeout_seconds

    def _redeem_url(self, token: str, purpose: str, redirect_path: Optional[str]) -> str:
        params = {"token": token, "purpose": purpose}
        if redirect_path:
            params["redirect"] = redirect_path
        return f"{self.base_url}/credentials/redeem?{urlencode(params)}"

    @staticmethod
    def _require_member(principal: Optional[SessionPayload]) -> SessionPayload:
        if principal is None or principal.is_guest:
            raise AuthenticationError("invalid session")
        return principal

    async def request_credential(
        self,
        target: str,
        purpose: str,
        *,
        method: Optional[str] = None,
        redirect_path: Optional[str] = None,
        client_ip: Optional[str] = None,
        principal: Optional[SessionPayload] = None,
    ) -> Credential:
        """Mint, persist and deliver a credential for ``target``.

        The raw secret leaves this method only through the delivery gateway.

        Raises:
            ValidationError: ``method`` is neither link nor code.
            AuthenticationError: secondary-channel verification without a member session.
            DeliveryError: the gateway failed or timed out.
            ServiceUnavailableError: the channel is not configured in production.
        """
        channel = channel_for(target)
        chosen = method or (METHOD_LINK if channel == CHANNEL_EMAIL else METHOD_CODE)
        if chosen not in (METHOD_LINK, METHOD_CODE):
            raise ValidationError(f"unsupported credential method: {chosen}")
        meta: dict = {"ip": client_ip, "method": chosen}
        if redirect_path:
            meta["redirect"] = redirect_path
        if purpose == PURPOSE_VERIFY_SECONDARY_CHANNEL:
            meta["account_id"] = self._require_member(principal).subject_id

        if chosen == METHOD_LINK:
            secret = self.issuer.issue(32)
            ttl = self.magic_link_ttl
            credential = await self.credentials.create(
                target, channel, purpose, self.issuer.digest(secret), ttl=ttl, meta=meta
            )
            send = self.delivery.send_link(
                channel,
                target,
                self._redeem_url(secret, purpose, redirect_path),
                purpose=purpose,
                expires_in_minutes=int(ttl.total_seconds() // 60),
            )
        else:
            secret = self.issuer.issue_code(self.otp_length)
            salt = self.issuer.new_salt()
            digest = await asyncio.to_thread(self.issuer.digest_code, secret, salt)
            ttl = self.otp_ttl
            credential = await self.credentials.create(
                target, channel, purpose, digest, ttl=ttl, salt=salt, meta=meta
            )
            send = self.delivery.send_code(
                channel,
                target,
                secret,
                purpose=purpose,
                expires_in_minutes=int(ttl.total_seconds() // 60),
            )

        try:
            await asyncio.wait_for(send, self.delivery_timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.error(
                "credential_delivery_timeout",
                credential_id=credential.id,
                channel=channel,
                target_hash=hash_identity(target),
            )
            raise DeliveryError("credential delivery failed") from exc
        logger.info(
            "credential_issued",
            credential_id=credential.id,
            channel=channel,
            method=chosen,
            purpose=purpose,
            target_hash=hash_identity(target),
        )
        return credential

    async def _complete(
        self, credential: Credential, principal: Optional[SessionPayload]
    ) -> RedemptionResult:
        meta = credential.meta or {}
        if credential.purpose == PURPOSE_VERIFY_SECONDARY_CHANNEL:
            member = self._require_member(principal)
            if meta.get("account_id") and meta["account_id"] != member.subject_id:
                logger.warning(
                    "secondary_channel_account_mismatch",
                    credential_id=credential.id,
                    account_id=member.subject_id,
                )
                raise AuthenticationError("invalid session")
        account = await self.accounts.resolve_identity(
            credential.target, credential.channel, credential.purpose, principal
        )
        role = ROLE_GUEST if account.status == ACCOUNT_GUEST else ROLE_MEMBER
        token = self.sessions.mint(account.id, role)
        logger.info(
            "session_issued",
            account_id=account.id,
            role=role,
            purpose=credential.purpose,
        )
        return RedemptionResult(
            account=account,
            identity=credential.target,
            channel=credential.channel,
            session_token=token,
            redirect_path=meta.get("redirect"),
        )

    async def redeem_link(
        self, token: str, purpose: str, *, principal: Optional[SessionPayload] = None
    ) -> RedemptionResult:
        credential = await self.credentials.consume_link(token, purpose)
        return await self._complete(credential, principal)

    async def verify_code(
        self,
        target: str,
        purpose: str,
        code: str,
        *,
        principal: Optional[SessionPayload] = None,
    ) -> RedemptionResult:
        if purpose == PURPOSE_VERIFY_SECONDARY_CHANNEL:
            self._require_member(principal)
        credential = await self.credentials.consume_if_valid(target, purpose, code)
        return await self._complete(credential, principal)
