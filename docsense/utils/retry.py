"""Bounded retry for model calls.

Only ``TransientProviderError`` is retried; everything else propagates on the
first failure. The attempt count is always finite.
"""

import random
import time
from collections.abc import Callable
from typing import TypeVar

from docsense.errors import TransientProviderError
from docsense.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def call_with_retry(
    func: Callable[[], T],
    *,
    max_retries: int = 1,
    backoff_base: float = 0.5,
    jitter_max: float = 0.1,
    description: str = "call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Invoke ``func`` and retry transient failures with exponential backoff.

    Args:
        func: Zero-argument callable to invoke.
        max_retries: Retries after the first attempt.
        backoff_base: Delay before the first retry; doubles each retry.
        jitter_max: Maximum random jitter added to each delay.
        description: Label used in log messages.
        sleep: Sleep function, injectable for tests.

    Returns:
        The value returned by ``func``.

    Raises:
        TransientProviderError: If every attempt failed transiently.
    """
    attempts = max_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except TransientProviderError as exc:
            if attempt == attempts:
                logger.error(
                    "%s failed after %d attempt(s): %s", description, attempts, exc
                )
                raise
            delay = backoff_base * (2 ** (attempt - 1)) + random.uniform(0, jitter_max)
            logger.warning(
                "%s failed transiently (%s), retrying in %.2fs (attempt %d/%d)",
                description,
                exc,
                delay,
                attempt,
                attempts,
            )
            sleep(delay)
    raise AssertionError("unreachable")
