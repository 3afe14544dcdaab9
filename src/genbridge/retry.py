"""Bounded async retry for calls that have not yet produced output.

Retry decisions use exception types and provider status codes only. Once a
stream has delivered its first event it is never retried; callers enforce
that by retrying only the opening of a stream.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import time
from typing import TYPE_CHECKING, TypeVar

from genbridge._http import RETRYABLE_STATUS_CODES
from genbridge.errors import ContinuationError, ProviderError, TransportError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try, and how long to wait in between.

    Waits grow by ``backoff_multiplier`` from ``initial_delay_s`` up to
    ``max_delay_s``. With ``jitter`` the wait is drawn uniformly from
    ``[0, wait]``. ``max_elapsed_s`` caps the total time spent, waits
    included; ``None`` disables the cap.
    """

    max_attempts: int = 2
    initial_delay_s: float = 0.5
    backoff_multiplier: float = 2.0
    max_delay_s: float = 5.0
    jitter: bool = True
    max_elapsed_s: float | None = 15.0

    def __post_init__(self) -> None:
        problems = []
        if self.max_attempts < 1:
            problems.append("max_attempts must be >= 1")
        if self.initial_delay_s < 0 or self.max_delay_s < 0:
            problems.append("delays must be >= 0")
        if self.backoff_multiplier <= 0:
            problems.append("backoff_multiplier must be > 0")
        if self.max_elapsed_s is not None and self.max_elapsed_s < 0:
            problems.append("max_elapsed_s must be >= 0 or None")
        if problems:
            raise ValueError("Invalid RetryPolicy: " + "; ".join(problems))

    def backoff(self, retry_number: int) -> float:
        """Return the wait before retry *retry_number* (1 for the first retry)."""
        wait = self.initial_delay_s * self.backoff_multiplier ** max(0, retry_number - 1)
        wait = min(wait, self.max_delay_s)
        if wait <= 0:
            return 0.0
        return random.uniform(0.0, wait) if self.jitter else wait  # noqa: S311


def should_retry(exc: BaseException) -> bool:
    """Whether *exc* is worth another attempt.

    ``TransportError`` always is. A ``ProviderError`` is when the provider
    marked it retryable or its status is transient. ``ContinuationError``
    and cancellation never are, and neither is anything unrecognized.
    """
    if isinstance(exc, (asyncio.CancelledError, ContinuationError)):
        return False
    if isinstance(exc, TransportError):
        return True
    if isinstance(exc, ProviderError):
        return exc.retryable is True or exc.status_code in RETRYABLE_STATUS_CODES
    return False


def _server_delay(exc: BaseException) -> float | None:
    if not isinstance(exc, ProviderError):
        return None
    value = exc.retry_after_s
    if isinstance(value, (int, float)) and value >= 0:
        return float(value)
    return None


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = should_retry,
) -> T:
    """Await ``factory()`` until it succeeds or *policy* gives up.

    The last failure propagates unchanged. A server-requested delay
    (``retry_after_s``) lengthens the wait but never past the elapsed cap.
    """
    deadline = None
    if policy.max_elapsed_s is not None:
        deadline = time.monotonic() + policy.max_elapsed_s

    attempt = 1
    while True:
        try:
            return await factory()
        except Exception as exc:
            if attempt >= policy.max_attempts or not should_retry(exc):
                raise
            wait = policy.backoff(attempt)
            server_wait = _server_delay(exc)
            if server_wait is not None:
                wait = max(wait, server_wait)
            if deadline is not None:
                left = deadline - time.monotonic()
                if left <= 0:
                    raise
                wait = min(wait, left)
            logger.debug(
                "Attempt %d/%d failed with %s; retrying in %.2fs",
                attempt,
                policy.max_attempts,
                type(exc).__name__,
                wait,
            )
        if wait > 0:
            await asyncio.sleep(wait)
        attempt += 1
