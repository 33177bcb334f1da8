from __future__ import annotations

import hmac
import secrets
from typing import Optional

from fastapi import Response

from passgate.config import Settings

CSRF_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


class CSRFGuard:
    """Stateless double-submit token: a script-readable cookie echoed in a header."""

    def __init__(self, settings: Settings) -> None:
        self.cookie_name = settings.csrf_cookie_name
        self.header_name = settings.csrf_header_name
        self.max_age = settings.csrf_cookie_max_age_seconds
        self.secure = settings.cookies_secure

    @staticmethod
    def issue() -> str:
        return secrets.token_urlsafe(32)

    @staticmethod
    def verify(echoed: Optional[str], cookie_value: Optional[str]) -> bool:
        if not echoed or not cookie_value:
            return False
        return hmac.compare_digest(echoed.encode(), cookie_value.encode())

    @staticmethod
    def is_exempt(method: str) -> bool:
        return method.upper() in CSRF_SAFE_METHODS

    def set_cookie(self, response: Response, token: str) -> None:
        # Not httponly: the client reads it and echoes it in the header
        response.set_cookie(
            self.cookie_name,
            token,
            httponly=False,
            secure=self.secure,
            samesite="lax",
            max_age=self.max_age,
            path="/",
        )
