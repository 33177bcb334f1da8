from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from fastapi import Request, Response

from passgate.config import Settings
from passgate.logging import get_logger
from passgate.service.errors import AuthenticationError

logger = get_logger(__name__)

ROLE_GUEST = "guest"
ROLE_MEMBER = "member"
SESSION_ROLES = frozenset({ROLE_GUEST, ROLE_MEMBER})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionPayload:
    subject_id: str
    role: str
    issued_at: datetime
    expires_at: datetime
    issuer: str
    audience: str

    @property
    def is_guest(self) -> bool:
        return self.role == ROLE_GUEST

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "SessionPayload":
        """Build a payload from verified claims; any missing or malformed field is fatal."""
        subject = claims.get("sub")
        role = claims.get("role")
        issuer = claims.get("iss")
        audience = claims.get("aud")
        if not isinstance(subject, str) or not subject:
            raise ValueError("missing sub")
        if role not in SESSION_ROLES:
            raise ValueError("invalid role")
        if not isinstance(issuer, str) or not isinstance(audience, str):
            raise ValueError("missing iss/aud")
        try:
            issued_at = datetime.fromtimestamp(float(claims["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(float(claims["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError) as exc:
            raise ValueError("invalid iat/exp") from exc
        return cls(
            subject_id=subject,
            role=role,
            issued_at=issued_at,
            expires_at=expires_at,
            issuer=issuer,
            audience=audience,
        )


class SessionManager:
    """Stateless HS256 session tokens carried in an httpOnly cookie.

    Nothing is stored server side. Logout only deletes the client's cookie, so a
    copied token stays valid until it expires.
    """

    def __init__(self, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._secret = settings.jwt_secret.encode()
        self.issuer = settings.session_issuer
        self.audience = settings.session_audience
        self.default_ttl = timedelta(minutes=settings.session_ttl_minutes)
        self.cookie_name = settings.resolved_session_cookie_name
        self.cookie_secure = settings.cookies_secure
        self._clock_skew_leeway = timedelta(seconds=settings.session_clock_skew_seconds)
        self._clock = clock or _utcnow

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm to prevent algorithm confusion (e.g. "none")
        try:
            header = json.loads(self._decode_segment(header_b64))
            if not isinstance(header, dict) or header.get("alg") != "HS256":
                logger.warning(
                    "jwt_invalid_algorithm",
                    alg=header.get("alg") if isinstance(header, dict) else None,
                )
                return None
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        now_ts = self._clock().timestamp()
        if exp_ts <= now_ts - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def mint(self, subject_id: str, role: str, ttl: Optional[timedelta] = None) -> str:
        if role not in SESSION_ROLES:
            raise ValueError(f"unknown session role: {role}")
        now = self._clock()
        lifetime = ttl or self.default_ttl
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject_id,
            "role": role,
            "iat": int(now.timestamp()),
            "exp": int((now + lifetime).timestamp()),
        }
        return self._encode_jwt(payload)

    def verify(self, token: Optional[str]) -> SessionPayload:
        """Return the session payload or raise a single generic ``AuthenticationError``."""
        if not token:
            raise AuthenticationError("invalid session")
        claims = self._decode_jwt(token)
        if claims is None:
            raise AuthenticationError("invalid session")
        try:
            aud = claims.get("aud")
            if isinstance(aud, list):
                claims = {**claims, "aud": self.audience}
            return SessionPayload.from_claims(claims)
        except ValueError as exc:
            logger.warning("session_claims_invalid", error=str(exc))
            raise AuthenticationError("invalid session") from exc

    def token_from_request(self, request: Request) -> Optional[str]:
        auth_header = request.headers.get("authorization")
        if auth_header and auth_header.lower().startswith("bearer "):
            return auth_header.split(" ", 1)[1].strip() or None
        return request.cookies.get(self.cookie_name)

    def set_cookie(self, response: Response, token: str, ttl: Optional[timedelta] = None) -> None:
        lifetime = ttl or self.default_ttl
        response.set_cookie(
            self.cookie_name,
            token,
            httponly=True,
            secure=self.cookie_secure,
            samesite="lax",
            max_age=int(lifetime.total_seconds()),
            path="/",
        )
        response.headers["Cache-Control"] = "no-store"

    def clear_cookie(self, response: Response) -> None:
        response.set_cookie(
            self.cookie_name,
            "",
            httponly=True,
            secure=self.cookie_secure,
            samesite="lax",
            max_age=0,
            path="/",
        )
        response.headers["Cache-Control"] = "no-store"
