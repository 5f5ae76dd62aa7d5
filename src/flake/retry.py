"""Bounded exponential backoff shared by the push path and the watcher supervisor."""

import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


@dataclass
class RetryPolicy:
    """Retry schedule with exponential backoff.

    Attributes:
        max_attempts (int): Total attempts, including the first one.
        initial_backoff (float): Delay in seconds after the first failure.
        multiplier (float): Growth factor applied to each following delay.
        max_backoff (float): Upper bound on any single delay.
        sleep (Callable[[float], None]): Sleep function, injectable for tests.
    """

    max_attempts: int = 3
    initial_backoff: float = 2.0
    multiplier: float = 2.0
    max_backoff: float = 60.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delays(self) -> Iterator[float]:
        """Yields the delay to wait after each failed attempt but the last."""
        backoff = self.initial_backoff
        for _ in range(max(self.max_attempts - 1, 0)):
            yield backoff
            backoff = min(backoff * self.multiplier, self.max_backoff)

    def call(
        self,
        func: Callable[[], Any],
        retry_on: tuple[type[BaseException], ...] = (Exception,),
    ) -> Any:
        """Executes `func`, retrying on the given exceptions.

        Args:
            func (Callable[[], Any]): The operation to attempt.
            retry_on (tuple[type[BaseException], ...]): Exception types that
                are retried. Anything else propagates immediately.

        Returns:
            Any: The return value of the first successful attempt.

        Raises:
            The last retryable exception once every attempt has failed.
        """
        delays = self.delays()
        attempt = 1
        while True:
            try:
                return func()
            except retry_on as e:
                delay = next(delays, None)
                if delay is None:
                    logger.error(f"All {self.max_attempts} attempts failed: {e}")
                    raise
                logger.warning(
                    f"Attempt {attempt}/{self.max_attempts} failed: {e}. "
                    f"Retrying in {delay:.1f}s..."
                )
                self.sleep(delay)
                attempt += 1
