from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar
import logging
import time

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Attempts(Generic[T]):
    """The last value produced by a repeated call and how many calls it took."""

    value: T
    count: int
    succeeded: bool


class RetryCoordinator:
    """Bounded, blocking repetition with a fixed delay between attempts.

    Exhaustion is never an error here; callers decide what a final failed
    attempt means. ``sleep`` is injectable so tests can run without waiting.
    """

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self.sleep = sleep

    def poll(
        self,
        predicate: Callable[[], object],
        attempts: int,
        delay: float,
        *,
        description: Optional[str] = None,
    ) -> bool:
        result = self.repeat(predicate, attempts, delay, done=bool, description=description)
        return result.succeeded

    def repeat(
        self,
        call: Callable[[], T],
        attempts: int,
        delay: float,
        *,
        done: Callable[[T], bool],
        description: Optional[str] = None,
    ) -> Attempts[T]:
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        if delay < 0:
            raise ValueError("delay must not be negative")
        label = description or getattr(call, "__name__", "call")
        count = 0
        while True:
            count += 1
            value = call()
            if done(value):
                logger.debug("Waiting until %s: succeeded after %d attempt(s)", label, count)
                return Attempts(value, count, True)
            if count >= attempts:
                logger.warning("Gave up waiting until %s: %d attempt(s)", label, count)
                return Attempts(value, count, False)
            logger.debug(
                "Continue waiting until %s: attempt %d/%d, delay %.1f sec",
                label,
                count,
                attempts,
                delay,
            )
            self.sleep(delay)
