from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from passgate.config import Settings, get_settings, reset_settings_cache
from passgate.logging import get_logger
from passgate.service.accounts import AccountLifecycle
from passgate.service.credentials import CredentialStore
from passgate.service.csrf import CSRFGuard
from passgate.service.delivery import EmailGateway, MultiChannelGateway, SmsGateway
from passgate.service.passwordless import PasswordlessService
from passgate.service.rate_limit import RateLimiter
from passgate.service.sessions import SessionManager
from passgate.service.tokens import TokenIssuer
from passgate.storage.memory import MemoryStore
from passgate.storage.postgres import PostgresStore
from passgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the wired component instances for the FastAPI app.

    Components receive their collaborators through constructor arguments and
    read time through ``Runtime.now`` so tests can swap ``clock``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or _utcnow
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            app_env=self.settings.app_env.value,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to pytest event loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.store_timeout_seconds,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.store_timeout_seconds,
                    )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits are "
                    "per-process only."
                ),
                mode=fallback_mode,
            )

        self.issuer = TokenIssuer(
            kdf_time_cost=self.settings.otp_kdf_time_cost,
            kdf_memory_kib=self.settings.otp_kdf_memory_kib,
        )
        self.credentials = CredentialStore(
            self.store,
            self.issuer,
            clock=self.now,
            max_attempts=self.settings.otp_max_attempts,
            store_timeout=self.settings.store_timeout_seconds,
        )
        self.rate_limiter = RateLimiter(
            self.cache,
            clock=self.now,
            timeout_seconds=self.settings.store_timeout_seconds,
        )
        self.csrf = CSRFGuard(self.settings)
        self.sessions = SessionManager(self.settings, clock=self.now)
        self.accounts = AccountLifecycle(
            self.store,
            grace=timedelta(days=self.settings.deletion_grace_days),
            clock=self.now,
            store_timeout=self.settings.store_timeout_seconds,
        )
        # Unconfigured channels only log outside production
        allow_unconfigured = not self.settings.is_production
        self.email = EmailGateway(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            timeout_seconds=self.settings.delivery_timeout_seconds,
            allow_unconfigured=allow_unconfigured,
        )
        self.sms = SmsGateway(
            account_sid=self.settings.twilio_account_sid,
            auth_token=self.settings.twilio_auth_token,
            from_number=self.settings.twilio_from_number,
            api_base_url=self.settings.twilio_api_base_url,
            timeout_seconds=self.settings.delivery_timeout_seconds,
            allow_unconfigured=allow_unconfigured,
        )
        self.passwordless = PasswordlessService(
            issuer=self.issuer,
            credentials=self.credentials,
            accounts=self.accounts,
            sessions=self.sessions,
            delivery=MultiChannelGateway(email=self.email, sms=self.sms),
            base_url=self.settings.app_base_url,
            magic_link_ttl=timedelta(minutes=self.settings.magic_link_ttl_minutes),
            otp_ttl=timedelta(minutes=self.settings.otp_ttl_minutes),
            otp_length=self.settings.otp_length,
            delivery_timeout_seconds=self.settings.delivery_timeout_seconds,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
            session_cookie=self.sessions.cookie_name,
        )

    def now(self) -> datetime:
        return self.clock()

    async def run_maintenance(self) -> dict[str, int]:
        """Sweep due account deletions and purge stale credentials once."""
        deleted = await self.accounts.sweep_expired_deletions()
        purged = await self.credentials.purge_expired(
            timedelta(hours=self.settings.credential_retention_hours)
        )
        return {"accounts_deleted": deleted, "credentials_purged": purged}

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once a runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    # Sync client underneath, close it directly
                    runtime.cache._sync_client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                # Connection may already be closed
                logger.debug("runtime_reset_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
