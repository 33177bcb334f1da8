from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import RedirectResponse

from passgate.api.schemas import (
    MAX_REDIRECT_LENGTH,
    AccountStatusResponse,
    CredentialRequest,
    CsrfResponse,
    DeletionScheduledResponse,
    GuestResponse,
    OkResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from passgate.logging import get_logger
from passgate.service.errors import (
    AlreadyUsedCredentialError,
    AuthenticationError,
    CredentialError,
    ForbiddenGuestReadonlyError,
    RateLimitedError,
    ServiceError,
)
from passgate.service.runtime import get_runtime
from passgate.service.sessions import ROLE_GUEST, SessionPayload
from passgate.storage.models import ACCOUNT_DELETED, CREDENTIAL_PURPOSES, Account

logger = get_logger(__name__)

router = APIRouter()

REDEEM_ERROR_INVALID = "invalid-or-expired"
REDEEM_ERROR_USED = "already-used"
REDEEM_ERROR_SERVER = "server-error"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        """Apply RateLimit-* headers (IETF draft-ietf-httpapi-ratelimit-headers)."""
        response.headers["RateLimit-Limit"] = str(self.limit)
        response.headers["RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    fail_open: bool,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Count one request against ``key`` and optionally apply headers to response.

    Args:
        runtime: Application runtime context
        key: Rate limit key (e.g., "credential:ip:{ip}")
        limit: Maximum requests allowed in window
        window_seconds: Rate limit window in seconds
        fail_open: Allow the request when the limiter backend errors
        response: Optional response to add rate limit headers to

    Raises:
        RateLimitedError: the window is full (429 with Retry-After)
        ServiceUnavailableError: backend failure at a fail-closed site (503)
    """
    decision = await runtime.rate_limiter.check(
        key, limit, window_seconds, fail_open=fail_open
    )
    info = RateLimitInfo(decision.limit, decision.remaining, decision.reset_in_seconds)

    if response is not None:
        info.apply_headers(response)

    if not decision.allowed:
        logger.info(
            "rate_limited",
            key_prefix=key.rsplit(":", 1)[0],
            limit=limit,
            window_seconds=window_seconds,
        )
        raise RateLimitedError(retry_after=decision.reset_in_seconds, limit=limit)

    return info


def _client_ip(request: Request, runtime) -> str:
    if runtime.settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",", 1)[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else "unknown"


def _safe_redirect(raw: Optional[str]) -> Optional[str]:
    """Return ``raw`` if it is a same-origin relative path, otherwise None."""
    if not raw or len(raw) > MAX_REDIRECT_LENGTH:
        return None
    if not raw.startswith("/") or raw.startswith("//") or "\\" in raw:
        return None
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in raw):
        return None
    parts = urlsplit(raw)
    if parts.scheme or parts.netloc:
        return None
    target = parts.path or "/"
    if parts.query:
        target += f"?{parts.query}"
    if parts.fragment:
        target += f"#{parts.fragment}"
    return target


def _error_redirect(runtime, error: str) -> RedirectResponse:
    base = _safe_redirect(runtime.settings.redirect_error_path) or "/login"
    separator = "&" if "?" in base else "?"
    response = RedirectResponse(f"{base}{separator}error={error}", status_code=303)
    response.headers["Cache-Control"] = "no-store"
    return response


@dataclass
class Principal:
    session: SessionPayload
    account: Account

    @property
    def is_guest(self) -> bool:
        return self.session.role == ROLE_GUEST


async def get_optional_session(request: Request) -> Optional[SessionPayload]:
    """Session payload if the request carries a valid one, else None."""
    runtime = get_runtime()
    token = runtime.sessions.token_from_request(request)
    if not token:
        return None
    try:
        return runtime.sessions.verify(token)
    except AuthenticationError:
        return None


async def get_principal(request: Request) -> Principal:
    runtime = get_runtime()
    token = runtime.sessions.token_from_request(request)
    try:
        session = runtime.sessions.verify(token)
    except AuthenticationError:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    account = await runtime.accounts.get_account(session.subject_id)
    # Stateless tokens outlive their account; deleted accounts are rejected here
    if account is None or account.status == ACCOUNT_DELETED:
        logger.warning("session_account_unavailable", account_id=session.subject_id)
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return Principal(session=session, account=account)


async def require_member(principal: Principal = Depends(get_principal)) -> Principal:
    if principal.is_guest:
        raise ForbiddenGuestReadonlyError()
    return principal


@router.get("/csrf", response_model=CsrfResponse, tags=["security"])
async def issue_csrf_token(request: Request, response: Response):
    runtime = get_runtime()
    # Best-effort limiter: fail open
    await _enforce_rate_limit(
        runtime,
        f"csrf:ip:{_client_ip(request, runtime)}",
        runtime.settings.csrf_rate_limit,
        runtime.settings.csrf_rate_limit_window_seconds,
        fail_open=True,
        response=response,
    )
    token = runtime.csrf.issue()
    runtime.csrf.set_cookie(response, token)
    response.headers["Cache-Control"] = "no-store"
    return CsrfResponse(csrf_token=token)


@router.post(
    "/credentials", status_code=202, response_model=OkResponse, tags=["credentials"]
)
async def request_credential(
    body: CredentialRequest,
    request: Request,
    response: Response,
    session: Optional[SessionPayload] = Depends(get_optional_session),
):
    """Issue a one-time credential and deliver it out-of-band.

    The response is identical whether or not an account exists for the target.

    Raises:
        RateLimitedError: per-IP or per-recipient window is full.
        ServiceUnavailableError: the limiter backend or delivery channel is down.
        DeliveryError: the gateway failed to send.
    """
    runtime = get_runtime()
    client_ip = _client_ip(request, runtime)
    # Issuance limiters fail closed
    await _enforce_rate_limit(
        runtime,
        f"credential:ip:{client_ip}",
        runtime.settings.credential_ip_rate_limit,
        runtime.settings.credential_ip_rate_limit_window_seconds,
        fail_open=False,
    )
    await _enforce_rate_limit(
        runtime,
        f"credential:recipient:{body.target_identity}",
        runtime.settings.credential_recipient_rate_limit,
        runtime.settings.credential_recipient_rate_limit_window_seconds,
        fail_open=False,
        response=response,
    )
    await runtime.passwordless.request_credential(
        body.target_identity,
        body.purpose,
        method=body.method,
        redirect_path=_safe_redirect(body.redirect_path),
        client_ip=client_ip,
        principal=session,
    )
    response.headers["Cache-Control"] = "no-store"
    return OkResponse()


@router.get("/credentials/redeem", tags=["credentials"])
async def redeem_credential(
    request: Request,
    token: str = Query(..., min_length=1, max_length=512),
    purpose: str = Query(...),
    redirect: Optional[str] = Query(default=None, max_length=MAX_REDIRECT_LENGTH),
    session: Optional[SessionPayload] = Depends(get_optional_session),
):
    """Redeem a magic link, set the session cookie and redirect.

    Failures redirect to the configured error page with a coarse reason.

    Raises:
        RateLimitedError: the per-IP redeem window is full.
    """
    runtime = get_runtime()
    # Fail open
    await _enforce_rate_limit(
        runtime,
        f"redeem:ip:{_client_ip(request, runtime)}",
        runtime.settings.redeem_rate_limit,
        runtime.settings.redeem_rate_limit_window_seconds,
        fail_open=True,
    )
    if purpose not in CREDENTIAL_PURPOSES:
        return _error_redirect(runtime, REDEEM_ERROR_INVALID)
    try:
        result = await runtime.passwordless.redeem_link(token, purpose, principal=session)
    except AlreadyUsedCredentialError:
        return _error_redirect(runtime, REDEEM_ERROR_USED)
    except (CredentialError, AuthenticationError):
        return _error_redirect(runtime, REDEEM_ERROR_INVALID)
    except ServiceError as exc:
        logger.error(
            "credential_redeem_server_error",
            error_type=type(exc).__name__,
            error=exc.message,
        )
        return _error_redirect(runtime, REDEEM_ERROR_SERVER)
    except Exception as exc:
        logger.exception("credential_redeem_unexpected_error", exc_info=exc)
        return _error_redirect(runtime, REDEEM_ERROR_SERVER)

    destination = _safe_redirect(redirect) or _safe_redirect(result.redirect_path) or "/"
    response = RedirectResponse(destination, status_code=303)
    runtime.sessions.set_cookie(response, result.session_token)
    return response


@router.post(
    "/credentials/verify-code", response_model=VerifyCodeResponse, tags=["credentials"]
)
async def verify_code(
    body: VerifyCodeRequest,
    request: Request,
    response: Response,
    session: Optional[SessionPayload] = Depends(get_optional_session),
):
    """Redeem an OTP code and set the session cookie.

    Raises:
        CredentialError: wrong, expired, reused or locked code (400 invalid_code).
        RateLimitedError: the per-IP or per-target window is full.
    """
    runtime = get_runtime()
    client_ip = _client_ip(request, runtime)
    # Fail open; the per-credential attempt counter still applies
    await _enforce_rate_limit(
        runtime,
        f"verify:ip:{client_ip}",
        runtime.settings.verify_code_rate_limit,
        runtime.settings.verify_code_rate_limit_window_seconds,
        fail_open=True,
    )
    await _enforce_rate_limit(
        runtime,
        f"verify:target:{body.target_identity}",
        runtime.settings.verify_code_rate_limit,
        runtime.settings.verify_code_rate_limit_window_seconds,
        fail_open=True,
        response=response,
    )
    result = await runtime.passwordless.verify_code(
        body.target_identity, body.purpose, body.code, principal=session
    )
    runtime.sessions.set_cookie(response, result.session_token)
    return VerifyCodeResponse(identity=result.identity)


@router.post("/account/guest", response_model=GuestResponse, tags=["account"])
async def create_guest(request: Request, response: Response):
    runtime = get_runtime()
    # Account creation fails closed
    await _enforce_rate_limit(
        runtime,
        f"guest:ip:{_client_ip(request, runtime)}",
        runtime.settings.guest_rate_limit,
        runtime.settings.guest_rate_limit_window_seconds,
        fail_open=False,
        response=response,
    )
    account = await runtime.accounts.create_guest()
    token = runtime.sessions.mint(account.id, ROLE_GUEST)
    runtime.sessions.set_cookie(response, token)
    return GuestResponse(account_id=account.id)


@router.get("/account/status", response_model=AccountStatusResponse, tags=["account"])
async def account_status(response: Response, principal: Principal = Depends(get_principal)):
    account = principal.account
    response.headers["Cache-Control"] = "no-store"
    return AccountStatusResponse(
        account_id=account.id,
        status=account.status,
        role=principal.session.role,
        verified=account.verified,
        email=account.email,
        phone=account.phone,
        deletion_scheduled_at=account.deletion_scheduled_at,
    )


@router.post(
    "/account/delete", response_model=DeletionScheduledResponse, tags=["account"]
)
async def request_account_deletion(
    response: Response, principal: Principal = Depends(require_member)
):
    """Schedule account deletion after the grace period and end the session.

    Raises:
        ForbiddenGuestReadonlyError: guest sessions cannot delete.
        ConflictError: the account is already deleted.
    """
    runtime = get_runtime()
    scheduled_at = await runtime.accounts.request_deletion(principal.account.id)
    runtime.sessions.clear_cookie(response)
    return DeletionScheduledResponse(deletion_scheduled_at=scheduled_at)


@router.post("/account/cancel-delete", response_model=OkResponse, tags=["account"])
async def cancel_account_deletion(principal: Principal = Depends(require_member)):
    """Return a pending_delete account to active.

    Raises:
        ConflictError: the grace period has lapsed or the account is deleted.
    """
    runtime = get_runtime()
    await runtime.accounts.cancel_deletion(principal.account.id)
    return OkResponse()


@router.post("/logout", response_model=OkResponse, tags=["account"])
async def logout(response: Response):
    # Tokens are stateless: only the client's copy is removed
    runtime = get_runtime()
    runtime.sessions.clear_cookie(response)
    return OkResponse()
