"""
Timeouts and read retries for collaborator calls

Every external call (inventory read, payment request) goes through
``call_with_timeout`` so nothing blocks indefinitely. Only idempotent reads
may be wrapped in ``retry_read``; mutations are never retried blindly.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from storefront.core.config import settings
from storefront.core.exceptions import UpstreamUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 0.1           # Base delay in seconds
    max_delay: float = 2.0            # Maximum delay cap
    exponential_base: float = 2.0     # Exponential backoff multiplier
    jitter_factor: float = 0.5        # Random jitter (0-1)

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        return cls(
            max_retries=settings.READ_RETRY_ATTEMPTS,
            base_delay=settings.READ_RETRY_BASE_DELAY,
        )


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Calculate delay with exponential backoff and jitter."""
    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)
    jitter = delay * config.jitter_factor * random.random()
    return delay + jitter


async def call_with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    collaborator: str,
) -> T:
    """Await a collaborator call, converting a timeout to UpstreamUnavailable."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"[UPSTREAM] {collaborator} timed out after {timeout}s")
        raise UpstreamUnavailableError(
            collaborator,
            f"{collaborator} did not respond within {timeout}s",
        )


async def retry_read(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    **kwargs: Any,
) -> T:
    """
    Run an idempotent read, retrying only UpstreamUnavailableError.

    Any other error propagates on the first occurrence.
    """
    config = config or RetryConfig.from_settings()
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except UpstreamUnavailableError as e:
            if attempt >= config.max_retries:
                logger.warning(
                    f"[UPSTREAM] {e.collaborator} still unavailable after "
                    f"{attempt + 1} attempts"
                )
                raise
            delay = calculate_backoff(attempt, config)
            logger.info(
                f"[UPSTREAM] {e.collaborator} unavailable, retry {attempt + 1}/"
                f"{config.max_retries} in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
            attempt += 1
