from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from passgate.logging import get_logger
from passgate.service.errors import ServerError

logger = get_logger(__name__)


async def call_store(
    func: Callable[..., Any], *args: Any, timeout: Optional[float] = None, **kwargs: Any
) -> Any:
    """Run a blocking store method in a worker thread, bounded by ``timeout`` seconds.

    Raises:
        ServerError: the call did not finish in time.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout)
    except asyncio.TimeoutError as exc:
        logger.error(
            "store_call_timeout",
            operation=getattr(func, "__name__", "store_call"),
            timeout=timeout,
        )
        raise ServerError("store unavailable") from exc
