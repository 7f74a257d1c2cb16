from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed delay schedule with a bounded number of attempts.

    Each attempt waits for its delay first, so ``delays=(0.2, 0.45, 0.9)``
    means three attempts spread over roughly 1.5 seconds.
    """

    name: str
    delays: tuple[float, ...] = (0.2, 0.45, 0.9)

    @classmethod
    def from_delays(cls, name: str, delays: Sequence[float]) -> "RetryPolicy":
        return cls(name=name, delays=tuple(float(d) for d in delays))

    @property
    def attempts(self) -> int:
        return len(self.delays)

    def delay_for(self, attempt: int) -> float:
        """Delay before ``attempt`` (1-based)."""
        return self.delays[attempt - 1]

    async def poll(self, fetch: Callable[[], Awaitable[Optional[T]]]) -> Optional[T]:
        """Call ``fetch`` after each delay until it returns something.

        Returns ``None`` once the schedule is exhausted.
        """
        for attempt in range(1, self.attempts + 1):
            await schedule_retry(attempt, self)
            result = await fetch()
            if result is not None:
                logger.debug(f"{self.name}: resolved on attempt {attempt}")
                return result
        logger.warning(
            f"{self.name}: gave up after {self.attempts} attempts"
        )
        return None


async def schedule_retry(attempt: int, policy: RetryPolicy) -> None:
    """Sleep for the policy's delay before retrying."""
    delay = policy.delay_for(attempt)
    if delay > 0:
        await asyncio.sleep(delay)
