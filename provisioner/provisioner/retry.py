"""Bounded retry with exponential backoff and optional jitter.

Only provider creation calls and baseline schema application are retried,
and only on :class:`~provisioner.errors.ProviderUnavailable`.  Permanent
rejections, timeouts, and build failures propagate on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field

from provisioner.errors import ProviderUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_retries: int = Field(
        default=2,
        ge=0,
        description="Maximum number of retry attempts before re-raising.",
    )
    base_delay: float = Field(
        default=2.0,
        gt=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_delay: float = Field(
        default=30.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=True,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )


def _compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay for *attempt* given *config*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


async def retry_provider_call(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    *,
    operation: str,
    retryable_exceptions: tuple[type[Exception], ...] = (ProviderUnavailable,),
) -> T:
    """Await *fn* with retry and exponential backoff.

    Parameters
    ----------
    fn:
        A zero-argument callable returning an awaitable.  It is invoked from
        scratch on every attempt, so it must be safe to call repeatedly.
    config:
        Retry parameters (see :class:`RetryConfig`).
    operation:
        Short label used in log messages, e.g. ``"compute.create_instance"``.
    retryable_exceptions:
        Only exceptions whose type appears in this tuple trigger a retry.
        All other exceptions propagate immediately.

    Returns
    -------
    T
        The result of the first successful call.

    Raises
    ------
    Exception
        The last exception raised by *fn* once retries are exhausted.
    """
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return await fn()
        except retryable_exceptions as exc:
            last_exception = exc
            if attempt >= config.max_retries:
                break
            delay = _compute_delay(attempt, config)
            logger.warning(
                "%s: retry %d/%d after %.1fs (%r)",
                operation,
                attempt + 1,
                config.max_retries,
                delay,
                exc,
            )
            await asyncio.sleep(delay)

    assert last_exception is not None  # noqa: S101
    logger.error("%s: giving up after %d attempts", operation, config.max_retries + 1)
    raise last_exception
