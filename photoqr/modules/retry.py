"""
Retry Module - School Photo QR Pipeline

Exponential backoff for calls to external services. The policy is a plain
value object; the executor runs an operation under a policy and reports each
failed attempt to the caller so the caller can persist it.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from photoqr.modules.errors import ExternalServiceError, RetryExhaustedError, ValidationError


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt limit and backoff schedule."""
    max_attempts: int = 3
    base_delay: float = 2.0
    backoff_factor: float = 2.0

    def __post_init__(self):
        errors = []
        if self.max_attempts < 1:
            errors.append("max_attempts must be at least 1")
        if self.base_delay < 0:
            errors.append("base_delay must not be negative")
        if self.backoff_factor < 1:
            errors.append("backoff_factor must be at least 1")
        if errors:
            raise ValidationError(errors)

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""
        return self.base_delay * self.backoff_factor ** (attempt - 1)

    def has_attempts_left(self, attempt: int) -> bool:
        return attempt < self.max_attempts


class RetryExecutor:
    """
    Runs an async operation until it succeeds or the policy is exhausted.
    Only ExternalServiceError is retried; any other exception propagates at once.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.logger = logging.getLogger(__name__)

    async def run(self, operation: Callable[[int], Awaitable], on_failure=None, start_attempt: int = 1):
        """
        Execute the operation with retries.

        Args:
            operation: Coroutine function called with the attempt number
            on_failure: Optional coroutine function called as
                        ``on_failure(attempt, error, next_delay)``; next_delay is
                        None after the last attempt
            start_attempt (int): Attempt number to resume from

        Returns:
            Whatever the operation returns on success

        Raises:
            RetryExhaustedError: Every attempt failed
        """
        if start_attempt > self.policy.max_attempts:
            raise RetryExhaustedError(start_attempt - 1, None)

        last_error = None
        for attempt in range(start_attempt, self.policy.max_attempts + 1):
            try:
                return await operation(attempt)
            except ExternalServiceError as e:
                last_error = e
                next_delay = self.policy.delay_for(attempt) if self.policy.has_attempts_left(attempt) else None
                self.logger.warning(
                    f"Attempt {attempt}/{self.policy.max_attempts} failed: {str(e)}"
                    + (f", retrying in {next_delay:.1f}s" if next_delay is not None else "")
                )
                if on_failure is not None:
                    await on_failure(attempt, e, next_delay)
                if next_delay is not None:
                    await self.sleep(next_delay)

        raise RetryExhaustedError(self.policy.max_attempts, last_error)
