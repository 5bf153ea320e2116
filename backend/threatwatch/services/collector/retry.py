# backend/threatwatch/services/collector/retry.py
import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

T = TypeVar("T")


def is_transient(exc: Exception) -> bool:
    """Connection-level failures are worth another try; HTTP status errors are not."""
    return isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError))


async def async_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    jitter: float = 0.25,
    retry_if: Callable[[Exception], bool] = is_transient,
) -> T:
    last_exc: Optional[Exception] = None

    for i in range(attempts):
        try:
            return await fn()
        except Exception as e:
            last_exc = e
            if i == attempts - 1 or not retry_if(e):
                raise

            # exponential backoff + jitter
            delay = min(max_delay, base_delay * (2 ** i))
            delay = delay * (1.0 + random.uniform(-jitter, jitter))
            await asyncio.sleep(max(0.0, delay))

    raise last_exc or RuntimeError("async_retry called with attempts < 1")
