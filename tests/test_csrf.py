"""Tests for the double-submit CSRF guard."""

from fastapi import Response

from passgate.config import Settings
from passgate.service.csrf import CSRFGuard


class TestCSRFGuard:
    """Token issue and verification."""

    def test_matching_values_pass(self):
        token = CSRFGuard.issue()
        assert CSRFGuard.verify(token, token)

    def test_mismatch_and_missing_fail(self):
        token = CSRFGuard.issue()
        assert not CSRFGuard.verify(token, CSRFGuard.issue())
        assert not CSRFGuard.verify(None, token)
        assert not CSRFGuard.verify(token, None)
        assert not CSRFGuard.verify("", "")

    def test_safe_methods_exempt(self):
        for method in ("GET", "head", "OPTIONS", "TRACE"):
            assert CSRFGuard.is_exempt(method)
        for method in ("POST", "PUT", "PATCH", "DELETE"):
            assert not CSRFGuard.is_exempt(method)

    def test_cookie_is_script_readable(self):
        guard = CSRFGuard(Settings(jwt_secret="unit-test-secret-value-that-is-long-enough"))
        response = Response()
        guard.set_cookie(response, "abc")
        cookie = response.headers["set-cookie"]
        assert cookie.startswith("csrf_token=abc")
        assert "HttpOnly" not in cookie
        assert "SameSite=lax" in cookie
