import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from scribe.errors import is_retryable

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int = 3,
    backoff_seconds: float = 1.0,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    label: str = "call",
) -> T:
    """Await fn() with exponential backoff while ``should_retry`` says the error is transient.

    ``retries`` counts extra attempts after the first one. Errors that are not
    retryable propagate immediately.
    """
    sleeper = sleep or asyncio.sleep
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            if attempt >= retries or not should_retry(e):
                raise
            delay = backoff_seconds * (2 ** attempt)
            attempt += 1
            logger.warning("%s failed (%s); retry %d/%d in %.1fs", label, e, attempt, retries, delay)
            await sleeper(delay)
