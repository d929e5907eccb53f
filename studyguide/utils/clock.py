"""Clock abstraction so polling loops can run on simulated time in tests."""

import asyncio
import time
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Source of wall time, monotonic time and cooperative sleep."""

    def now(self) -> datetime:
        """Current timezone-aware UTC time."""
        ...

    def monotonic(self) -> float:
        """Seconds on a monotonic clock, for measuring elapsed time."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the current task for ``seconds``."""
        ...


class SystemClock:
    """Real time backed by the event loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


system_clock = SystemClock()
