from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from passgate.storage.models import CREDENTIAL_PURPOSES

MAX_REDIRECT_LENGTH = 2048


def _normalize_unicode(value: str) -> str:
    """Normalize a string with NFKC after stripping spoofing characters.

    Zero-width characters and bidi overrides are removed first so that
    visually identical identities map to one stored value.
    """
    # U+200B, U+200C, U+200D, U+FEFF
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    # U+202A-U+202E, U+2066-U+2069
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "invalid_code",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API error envelope."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_E164 = re.compile(r"^\+[1-9][0-9]{7,14}$")
_PHONE_SEPARATORS = re.compile(r"[\s().-]")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_phone(value: str) -> str:
    """Normalize a phone number to E.164 (``+`` followed by 8 to 15 digits)."""
    normalized = _PHONE_SEPARATORS.sub("", _normalize_unicode(value.strip()))
    if normalized.startswith("00"):
        normalized = "+" + normalized[2:]
    if not _E164.match(normalized):
        raise ValueError("phone number must be in E.164 format")
    return normalized


def normalize_target_identity(value: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("targetIdentity is required")
    if "@" in value:
        return _validate_email(value)
    return _validate_phone(value)


def _validate_purpose(value: str) -> str:
    if value not in CREDENTIAL_PURPOSES:
        raise ValueError(
            f"purpose must be one of: {', '.join(sorted(CREDENTIAL_PURPOSES))}"
        )
    return value


class CredentialRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_identity: str = Field(..., alias="targetIdentity", max_length=320)
    purpose: str
    redirect_path: Optional[str] = Field(
        default=None, alias="redirectPath", max_length=MAX_REDIRECT_LENGTH
    )
    method: Optional[Literal["link", "code"]] = None

    @field_validator("target_identity")
    @classmethod
    def _normalize_target(cls, value: str) -> str:
        return normalize_target_identity(value)

    @field_validator("purpose")
    @classmethod
    def _check_purpose(cls, value: str) -> str:
        return _validate_purpose(value)


class VerifyCodeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_identity: str = Field(..., alias="targetIdentity", max_length=320)
    purpose: str
    # Not pattern-checked: malformed codes fail like any other wrong code
    code: str = Field(..., min_length=1, max_length=32)

    @field_validator("target_identity")
    @classmethod
    def _normalize_target(cls, value: str) -> str:
        return normalize_target_identity(value)

    @field_validator("purpose")
    @classmethod
    def _check_purpose(cls, value: str) -> str:
        return _validate_purpose(value)

    @field_validator("code")
    @classmethod
    def _strip_code(cls, value: str) -> str:
        return _normalize_unicode(value).strip().replace(" ", "")


class OkResponse(BaseModel):
    ok: bool = True


class VerifyCodeResponse(BaseModel):
    ok: bool = True
    identity: str


class CsrfResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    csrf_token: str = Field(..., serialization_alias="csrfToken")


class DeletionScheduledResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    deletion_scheduled_at: datetime = Field(..., serialization_alias="deletionScheduledAt")


class AccountStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    account_id: str = Field(..., serialization_alias="accountId")
    status: str
    role: str
    verified: bool
    email: Optional[str] = None
    phone: Optional[str] = None
    deletion_scheduled_at: Optional[datetime] = Field(
        default=None, serialization_alias="deletionScheduledAt"
    )


class GuestResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    account_id: str = Field(..., serialization_alias="accountId")
    role: str = "guest"
