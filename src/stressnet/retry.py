import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from stressnet.errors import RetryExhausted, TransientNetworkError

log = logging.getLogger("stressnet.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with jitter, bounded by attempts and total elapsed time."""

    base: float = 0.25
    cap: float = 8.0
    jitter: float = 0.2
    max_attempts: int = 8
    max_elapsed: float = 30.0

    def delay(self, attempt: int) -> float:
        """Sleep before retry number ``attempt`` (1-based)."""
        d = min(self.cap, self.base * 2 ** (attempt - 1))
        if self.jitter:
            d *= random.uniform(1 - self.jitter, 1 + self.jitter)
        return min(self.cap, d)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    *,
    label: str = "rpc",
) -> T:
    """Await ``fn()``, retrying only ``TransientNetworkError``.

    Anything else propagates on the first failure. Raises ``RetryExhausted``
    once the attempt budget or the elapsed-time ceiling would be exceeded.
    """
    loop = asyncio.get_running_loop()
    started = loop.time()
    attempt = 0
    maybe_sent = False
    while True:
        attempt += 1
        try:
            return await fn()
        except TransientNetworkError as e:
            maybe_sent = maybe_sent or e.maybe_sent
            delay = policy.delay(attempt)
            elapsed = loop.time() - started
            if attempt >= policy.max_attempts or elapsed + delay > policy.max_elapsed:
                log.warning("%s: giving up after %d attempts (%.2fs): %s", label, attempt, elapsed, e)
                raise RetryExhausted(
                    f"{label}: {attempt} attempts in {elapsed:.2f}s, last error: {e}",
                    attempts=attempt,
                    maybe_sent=maybe_sent,
                    last_error=e,
                ) from e
            log.debug("%s: transient failure (attempt %d), retrying in %.2fs: %s", label, attempt, delay, e)
            await asyncio.sleep(delay)
