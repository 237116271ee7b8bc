import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from relock._src.exceptions import ArtifactFetchError, IndexFetchError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Exponential backoff with up to 30% jitter for the given 1-based attempt."""
    delay = min(base * (2 ** (attempt - 1)), maximum)
    return delay + random.uniform(0, delay * 0.3)


def is_retryable(err: BaseException) -> bool:
    if isinstance(err, IndexFetchError):
        return err.retryable
    return isinstance(err, ArtifactFetchError)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base: float,
    maximum: float,
    describe: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``func()`` until it succeeds or a non-retryable error occurs.

    Retryable errors (see ``is_retryable``) are retried up to ``attempts``
    times in total; the last one propagates.
    """
    attempt = 1
    while True:
        try:
            return await func()
        except (IndexFetchError, ArtifactFetchError) as err:
            if not is_retryable(err) or attempt >= attempts:
                raise
            delay = backoff_delay(attempt, base, maximum)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                describe, attempt, attempts, delay, err,
            )
            attempt += 1
            await sleep(delay)
