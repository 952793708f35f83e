from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from discovery_worker.errors import ExternalServiceError, ExternalServiceUnavailable, ProcessingError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a fixed attempt ceiling.

    The n-th retry waits ``base_seconds * multiplier ** (n - 1)`` seconds, capped at ``max_seconds``.
    """

    attempts: int = 4
    base_seconds: float = 0.5
    multiplier: float = 2.0
    max_seconds: float = 30.0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    @classmethod
    def from_config(cls, config, sleep: Callable[[float], None] = time.sleep) -> "RetryPolicy":
        return cls(
            attempts=config.retry_attempts,
            base_seconds=config.backoff_base_seconds,
            multiplier=config.backoff_multiplier,
            max_seconds=config.backoff_max_seconds,
            sleep=sleep,
        )

    def _retrying(self, retry_on: tuple[type[BaseException], ...]) -> Retrying:
        return Retrying(
            retry=retry_if_exception_type(retry_on),
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(
                multiplier=self.base_seconds,
                exp_base=self.multiplier,
                max=self.max_seconds,
            ),
            sleep=self.sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )

    def call(
        self,
        fn: Callable[..., T],
        *args: Any,
        retry_on: tuple[type[BaseException], ...] = (ExternalServiceError,),
        exhausted: type[ProcessingError] = ExternalServiceUnavailable,
        **kwargs: Any,
    ) -> T:
        """Run ``fn`` retrying ``retry_on`` errors; other errors propagate on first occurrence."""

        try:
            return self._retrying(retry_on)(fn, *args, **kwargs)
        except RetryError as exc:
            last_error = exc.last_attempt.exception()
            raise exhausted(
                f"Gave up after {self.attempts} attempts: {last_error}",
                {"attempts": self.attempts, "last_error": type(last_error).__name__},
            ) from last_error
