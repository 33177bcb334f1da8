from __future__ import annotations

import asyncio
import math
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Optional

from passgate.logging import get_logger
from passgate.service.errors import ServiceUnavailableError

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_in_seconds: int


class RateLimiter:
    """Sliding-window limiter keyed by ``purpose:subject`` strings.

    With a Redis cache the evict/add/count/expire sequence runs as one script.
    Without one, a per-process window is kept instead; that fallback only
    holds for a single instance and is meant for development and tests.

    Every call site states its failure policy through ``fail_open``: when the
    backend errors, fail-open sites allow the request with a warning and
    fail-closed sites raise ``ServiceUnavailableError``.
    """

    def __init__(
        self,
        cache=None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        timeout_seconds: float = 2.0,
    ) -> None:
        self.cache = cache
        self._clock = clock or _utcnow
        self.timeout_seconds = timeout_seconds
        self._local_windows: Dict[str, Deque[float]] = {}
        self._local_lock = threading.Lock()

    def _check_local(self, key: str, limit: int, window_seconds: int, now: float):
        with self._local_lock:
            events = self._local_windows.setdefault(key, deque())
            cutoff = now - window_seconds
            while events and events[0] < cutoff:
                events.popleft()
            allowed = len(events) < limit
            if allowed:
                events.append(now)
            count = len(events)
            idx = max(0, count - limit)
            if events:
                reset_after = max(0, math.ceil(events[idx] + window_seconds - now))
            else:
                reset_after = window_seconds
            return allowed, count, reset_after

    async def check(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        fail_open: bool,
    ) -> RateLimitDecision:
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                default=DEFAULT_WINDOW_SECONDS,
            )
            window_seconds = DEFAULT_WINDOW_SECONDS
        if limit <= 0:
            # A non-positive limit disables the limiter for this call site
            return RateLimitDecision(True, limit, 0, 0)

        now = self._clock().timestamp()
        try:
            if self.cache is not None:
                allowed, count, reset_after = await asyncio.wait_for(
                    self.cache.check_sliding_window(key, limit, window_seconds, now=now),
                    self.timeout_seconds,
                )
            else:
                allowed, count, reset_after = self._check_local(
                    key, limit, window_seconds, now
                )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "rate_limit_backend_error",
                key_prefix=key.split(":", 1)[0],
                fail_open=fail_open,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if fail_open:
                return RateLimitDecision(True, limit, limit, window_seconds)
            raise ServiceUnavailableError(
                "rate limiter unavailable", detail={"retry": True}
            ) from exc

        return RateLimitDecision(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_in_seconds=reset_after,
        )
