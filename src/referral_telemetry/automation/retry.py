"""Bounded retry with exponential backoff.

Usage:
    task = RetryTask(send, RetryPolicy(max_attempts=3), scheduler,
                     on_success=remember_id)
    task.start()

The first attempt runs immediately; later attempts are handed to the
scheduler, so the caller never waits on a backoff.  Exhaustion is silent.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..core.errors import ConfigurationAbsent
from .scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """How many attempts and how far apart."""

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds before the second attempt
    factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Backoff after failed attempt number ``attempt`` (1-based)."""
        return self.base_delay * (self.factor ** (attempt - 1))


class RetryTask:
    """One operation retried on failure until it succeeds or runs out of attempts."""

    def __init__(
        self,
        operation: Callable[[], Any],
        policy: RetryPolicy,
        scheduler: Scheduler,
        on_success: Optional[Callable[[Any], None]] = None,
        name: str = "request",
    ):
        self.operation = operation
        self.policy = policy
        self.scheduler = scheduler
        self.on_success = on_success
        self.name = name

        self.attempts = 0
        self.done = False
        self.succeeded = False
        self.result: Any = None
        self.last_error: Optional[Exception] = None
        self._pending: Optional[TimerHandle] = None

    def start(self) -> "RetryTask":
        self._attempt()
        return self

    def _attempt(self):
        self._pending = None
        self.attempts += 1
        try:
            self.result = self.operation()
        except ConfigurationAbsent as e:
            logger.debug(f"{self.name} skipped: {e}")
            self.done = True
            return
        except Exception as e:
            self.last_error = e
            self._on_failure(e)
            return

        self.done = True
        self.succeeded = True
        if self.on_success is not None:
            try:
                self.on_success(self.result)
            except Exception as e:
                logger.error(f"{self.name} success handler failed: {e}")

    def _on_failure(self, error: Exception):
        if self.attempts >= self.policy.max_attempts:
            self.done = True
            logger.debug(
                f"{self.name} abandoned after {self.attempts} attempt(s): {error}"
            )
            return

        delay = self.policy.delay_for(self.attempts)
        logger.debug(
            f"{self.name} failed (attempt {self.attempts}): {error}; retrying in {delay:g}s"
        )
        self._pending = self.scheduler.call_later(delay, self._attempt)
