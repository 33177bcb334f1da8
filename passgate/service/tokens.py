from __future__ import annotations

import hashlib
import hmac
import secrets

from argon2.low_level import Type, hash_secret_raw


class TokenIssuer:
    """Generates one-time secrets and the digests stored in their place.

    Magic-link tokens carry 256 bits of entropy, so a plain SHA-256 digest is
    enough to make the stored value useless. OTP codes have a tiny keyspace and
    are stretched with salted argon2id instead. Raw secrets are only ever
    returned to the caller; nothing here logs or stores them.
    """

    def __init__(
        self,
        *,
        kdf_time_cost: int = 2,
        kdf_memory_kib: int = 19 * 1024,
        kdf_parallelism: int = 1,
        kdf_hash_len: int = 32,
    ) -> None:
        self.kdf_time_cost = kdf_time_cost
        self.kdf_memory_kib = kdf_memory_kib
        self.kdf_parallelism = kdf_parallelism
        self.kdf_hash_len = kdf_hash_len

    @staticmethod
    def issue(byte_length: int = 32) -> str:
        """Return a URL-safe random secret built from ``byte_length`` random bytes."""
        if byte_length < 16:
            raise ValueError("byte_length must be at least 16")
        return secrets.token_urlsafe(byte_length)

    @staticmethod
    def issue_code(digits: int = 6) -> str:
        """Return a zero-padded numeric code drawn uniformly from ``10**digits``."""
        if digits <= 0:
            raise ValueError("digits must be positive")
        return str(secrets.randbelow(10**digits)).zfill(digits)

    @staticmethod
    def new_salt() -> str:
        return secrets.token_hex(16)

    @staticmethod
    def digest(secret: str) -> str:
        return hashlib.sha256(secret.encode("utf-8")).hexdigest()

    def digest_code(self, code: str, salt: str) -> str:
        raw = hash_secret_raw(
            secret=code.encode("utf-8"),
            salt=bytes.fromhex(salt),
            time_cost=self.kdf_time_cost,
            memory_cost=self.kdf_memory_kib,
            parallelism=self.kdf_parallelism,
            hash_len=self.kdf_hash_len,
            type=Type.ID,
        )
        return raw.hex()

    @staticmethod
    def matches(candidate_digest: str, stored_digest: str) -> bool:
        # Constant-time comparison so response timing does not leak prefixes
        return hmac.compare_digest(candidate_digest, stored_digest)
