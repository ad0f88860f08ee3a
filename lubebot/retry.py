from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger("lubebot.retry")

T = TypeVar("T")


async def async_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    backoff: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: str = "call",
) -> T:
    """Purpose: Await an idempotent upstream call with bounded, fixed-backoff retries.
    Inputs/Outputs: Input is a zero-arg coroutine factory; returns its first success.
    Side Effects / State: Sleeps `backoff` seconds between attempts; logs each failure.
    Dependencies: asyncio.sleep; used by CatalogProvider and GeminiClient.
    Failure Modes: Re-raises the last exception once `attempts` are exhausted.
        Exceptions outside `retry_on` propagate immediately.
    If Removed: A single transient catalog or LLM failure triggers the fallback path.
    Testing Notes: Use a factory failing N-1 times and backoff=0.
    """
    # Retry only the listed exception types; everything else is a caller bug.
    attempts = max(1, attempts)
    last_error: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except retry_on as exc:
            last_error = exc
            logger.warning(
                "[RETRY] %s attempt=%s/%s error=%s", label, attempt, attempts, exc
            )
            if attempt < attempts and backoff > 0:
                await asyncio.sleep(backoff)
    assert last_error is not None
    raise last_error
