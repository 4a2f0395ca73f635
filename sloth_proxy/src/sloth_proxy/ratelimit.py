"""
Process-wide request rate limiting per client.

Rolling one-minute window: a client may make `limit` requests in any
60-second span. State is process-local.
"""

import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable


@dataclass
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0


class RateLimiter:
    """Sliding-window request counter keyed by client id."""

    def __init__(
        self,
        limit: int = 60,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._hits: dict[str, deque] = {}
        self._last_sweep = clock()

    @property
    def enabled(self) -> bool:
        return self.limit > 0

    def hit(self, client_id: str) -> RateDecision:
        """Count one request for client_id and decide whether to allow it."""
        if not self.enabled:
            return RateDecision(allowed=True, limit=0, remaining=0)

        now = self._clock()
        self._sweep(now)

        hits = self._hits.setdefault(client_id, deque())
        while hits and now - hits[0] >= self.window:
            hits.popleft()

        if len(hits) >= self.limit:
            retry_after = math.ceil(self.window - (now - hits[0]))
            return RateDecision(
                allowed=False,
                limit=self.limit,
                remaining=0,
                retry_after=max(retry_after, 1),
            )

        hits.append(now)
        return RateDecision(allowed=True, limit=self.limit, remaining=self.limit - len(hits))

    def _sweep(self, now: float) -> None:
        """Forget idle clients once per window."""
        if now - self._last_sweep < self.window:
            return
        self._last_sweep = now
        idle = [k for k, q in self._hits.items() if not q or now - q[-1] >= self.window]
        for key in idle:
            del self._hits[key]

    @property
    def tracked_clients(self) -> int:
        return len(self._hits)
