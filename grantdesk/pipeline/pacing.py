"""Minimum-interval pacing for rate-limited collaborators."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PaceLimiter:
    """Enforces a fixed minimum interval between successive calls.

    The interval runs from the end of one call to the start of the next,
    whether the earlier call succeeded or raised. Clock and sleep are
    injectable so tests never wait on the wall clock.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = "collaborator",
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval cannot be negative")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._name = name
        self._last_finished: Optional[float] = None
        self.calls = 0

    async def wait_turn(self) -> None:
        """Suspend until the interval since the previous call has elapsed."""
        if self._last_finished is None:
            return
        remaining = self.min_interval - (self._clock() - self._last_finished)
        if remaining > 0:
            logger.debug("Pacing %s: waiting %.2fs", self._name, remaining)
            await self._sleep(remaining)

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Run ``fn`` once its turn comes up."""
        await self.wait_turn()
        try:
            return await fn(*args, **kwargs)
        finally:
            self.calls += 1
            self._last_finished = self._clock()
