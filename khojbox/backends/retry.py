"""
Retry policy for Khoj chat calls with linear backoff.

Retried (transient):
- transport errors (connect, read, per-attempt timeout)
- 5xx: server errors
- 200 with a body that does not parse as a Khoj answer

Not retried (permanent):
- any other non-200 status (4xx): bad request, auth, not found

The policy only answers questions (how many attempts, how long to wait,
is this retryable); the client runs the loop. The sleep function is
injectable so tests can record delays instead of waiting for them.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable


@dataclass
class RetryPolicy:
    """Attempt budget and backoff for KhojClient.chat()."""
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def backoff(self, attempt: int) -> float:
        """Delay before attempt N (0-based): 0s, 2s, 4s, ..."""
        return attempt * self.backoff_seconds

    def is_retryable(self, status_code: int) -> bool:
        """Only server-side failures are worth another try."""
        return status_code >= 500

    async def wait(self, attempt: int) -> float:
        """Sleep before attempt N. The first attempt never waits."""
        delay = self.backoff(attempt)
        if attempt > 0:
            await self.sleep(delay)
        return delay
