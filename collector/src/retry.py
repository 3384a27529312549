"""
Fixed-delay retry policy shared by the device reader and the upload client.

A RetryPolicy runs an async callable up to ``max_attempts`` times, sleeping
``delay_s`` between attempts, and only retries exceptions accepted by its
``retry_on`` predicate. Anything else propagates immediately. When all
attempts fail the last exception is re-raised unchanged.

CHANGELOG:
- 2026-10-19: Optional stop event ends retry pauses early (STORY-114)
- 2026-10-13: Initial creation (STORY-104)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _always(_exc: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with a fixed delay between attempts.

    Attributes:
        max_attempts: Total number of attempts (not retries). Must be >= 1.
        delay_s: Seconds to wait between two attempts.
        retry_on: Predicate deciding whether an exception is transient.
        name: Label used in log messages.
    """

    max_attempts: int
    delay_s: float
    retry_on: Callable[[BaseException], bool] = _always
    name: str = "operation"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    async def run(
        self,
        func: Callable[[], Awaitable[T]],
        *,
        stop: asyncio.Event | None = None,
    ) -> T:
        """Call *func* until it succeeds or the policy gives up.

        Args:
            func: Zero-argument coroutine function performing one attempt.
            stop: Optional event that cuts the pause short; once it is set
                no further attempt is made and the last error is raised.

        Returns:
            Whatever the first successful attempt returns.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await func()
            except Exception as exc:
                if attempt >= self.max_attempts or not self.retry_on(exc):
                    raise
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    self.name,
                    attempt,
                    self.max_attempts,
                    exc,
                    self.delay_s,
                )
                if stop is None:
                    await asyncio.sleep(self.delay_s)
                    continue
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(stop.wait(), timeout=self.delay_s)
                if stop.is_set():
                    logger.info("%s retries abandoned, shutdown requested", self.name)
                    raise
        raise AssertionError("unreachable")  # pragma: no cover
