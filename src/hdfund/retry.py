"""
Retry policy and bounded RPC calls.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Iterator
from dataclasses import dataclass
from typing import TypeVar

from hdfund.chain.base import ChainTimeoutError

T = TypeVar("T")

# Timeout for a single ChainClient call (seconds)
DEFAULT_CALL_TIMEOUT = 30.0


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attempt budget with exponential backoff.

    delay(n) is the wait after the n-th failed attempt (0-based):
    base_delay * factor**n, capped at max_delay when set.
    """

    attempts: int = 5
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float | None = None

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.base_delay < 0 or self.factor < 1:
            raise ValueError("base_delay must be >= 0 and factor >= 1")

    def delay(self, attempt: int) -> float:
        delay = self.base_delay * (self.factor**attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def delays(self) -> Iterator[float]:
        """Waits between consecutive attempts (attempts - 1 values)."""
        for attempt in range(self.attempts - 1):
            yield self.delay(attempt)


async def bounded(call: Awaitable[T], timeout: float, what: str = "RPC call") -> T:
    """Await a ChainClient call, turning a timeout into ChainTimeoutError."""
    try:
        return await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError as e:
        raise ChainTimeoutError(f"{what} timed out after {timeout}s") from e


async def sleep_unless(stop: asyncio.Event | None, delay: float) -> bool:
    """
    Sleep for `delay` seconds, waking early if `stop` gets set.

    Returns True if the stop event is set.
    """
    if stop is None:
        await asyncio.sleep(delay)
        return False
    if stop.is_set():
        return True
    try:
        await asyncio.wait_for(stop.wait(), delay)
    except asyncio.TimeoutError:
        pass
    return stop.is_set()
