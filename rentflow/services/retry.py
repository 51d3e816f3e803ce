"""
Retry Service - exponential backoff around outbound provider calls.

Used identically for payment sends, status polls and balance checks.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from rentflow.config import Settings
from rentflow.errors import ProviderTransientError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (
    ProviderTransientError,
    httpx.TimeoutException,
    httpx.TransportError,
    asyncio.TimeoutError,
    ConnectionError,
)


class RetryPolicy(BaseModel):
    """Immutable backoff parameters."""
    
    model_config = ConfigDict(frozen=True)
    
    max_attempts: int = Field(default=5, ge=1)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    
    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            multiplier=settings.retry_backoff_multiplier,
        )
    
    def wait_strategy(self) -> wait_exponential:
        """initial_delay * multiplier ** (attempt - 1), capped at max_delay."""
        return wait_exponential(
            multiplier=self.initial_delay,
            exp_base=self.multiplier,
            max=self.max_delay,
        )


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, RETRYABLE_ERRORS)


class RetryExecutor:
    """
    Runs an async operation under a RetryPolicy.
    
    Transient errors are retried with backoff. Anything else (validation,
    4xx rejection, programming errors) is re-raised after the first attempt.
    Sleeping only suspends the calling task.
    """
    
    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
    
    async def _pause(self, delay: float) -> None:
        await self._sleep(float(delay))
    
    def _retrying(self, label: str) -> AsyncRetrying:
        max_attempts = self.policy.max_attempts
        
        def log_retry(state: RetryCallState) -> None:
            logger.warning(
                f"{label} attempt {state.attempt_number}/{max_attempts} failed: "
                f"{state.outcome.exception()}. Retrying in {state.next_action.sleep:.2f}s"
            )
        
        return AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=self.policy.wait_strategy(),
            retry=retry_if_exception(is_retryable),
            sleep=self._pause,
            before_sleep=log_retry,
        )
    
    async def run(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        """
        Execute `operation` (a zero-argument coroutine factory).
        
        Raises:
            RetryExhaustedError: every attempt failed with a retryable error
            Exception: the original error when it is not retryable
        """
        retrying = self._retrying(label)
        try:
            result = await retrying(operation)
        except RetryError as e:
            attempts = e.last_attempt.attempt_number
            last_error = e.last_attempt.exception()
            logger.error(f"{label} failed after {attempts} attempts: {last_error}")
            raise RetryExhaustedError(label, attempts, last_error) from last_error
        
        attempts = retrying.statistics.get("attempt_number", 1)
        if attempts > 1:
            logger.info(f"{label} succeeded on attempt {attempts}")
        return result
