import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .config import settings

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Bounded retry schedule

    max_attempts counts calls in total, so max_attempts=2 means one retry.
    The wait before attempt n+1 is delay * backoff ** (n - 1), plus up to
    `jitter` seconds of random spread.
    """
    max_attempts: int = 2
    delay: float = 2.0
    backoff: float = 1.0
    jitter: float = 0.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, **overrides) -> "RetryPolicy":
        values = {
            "max_attempts": settings.PREDICTION_MAX_RETRIES,
            "delay": settings.PREDICTION_RETRY_DELAY,
            "backoff": settings.PREDICTION_RETRY_BACKOFF,
        }
        values.update(overrides)
        return cls(**values)

    def wait_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt"""
        wait = self.delay * (self.backoff ** (attempt - 1))
        if self.jitter:
            wait += random.uniform(0, self.jitter)
        return max(wait, 0.0)

    async def run(self, operation: Callable[[], Awaitable[T]],
                  on_failure: Optional[Callable[[int, BaseException], None]] = None) -> T:
        """
        Await operation() until it succeeds or attempts run out

        on_failure(attempt, error) is called after every failed attempt.
        The last error is re-raised once max_attempts is reached.
        """
        attempts = max(self.max_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except self.retry_on as e:
                if on_failure is not None:
                    on_failure(attempt, e)
                if attempt >= attempts:
                    raise
                await self.sleep(self.wait_for(attempt))
        raise RuntimeError("unreachable")  # pragma: no cover
