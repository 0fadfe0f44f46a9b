"""In-process request rate limiting for the event collector.

Each client key gets a window that opens on its first request and lasts
``window_seconds``; the counter resets once the window has elapsed.  The
bucket map lives in this process only, so horizontally scaled instances
each enforce their own limit.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"


def client_key(headers: Mapping[str, str]) -> str:
    """Client address from proxy headers.

    First hop of ``x-forwarded-for``, then ``x-real-ip``, then ``"unknown"``
    (un-attributable clients share one bucket).
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = (headers.get("x-real-ip") or "").strip()
    return real_ip or UNKNOWN_CLIENT


@dataclass
class _Bucket:
    count: int
    window_started_at: float


class RateLimiter:
    def __init__(
        self,
        max_requests: int,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._sweeper: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._buckets)

    def _expired(self, bucket: _Bucket, now: float) -> bool:
        return now - bucket.window_started_at >= self.window_seconds

    def check(self, key: str) -> bool:
        """Count one request for ``key``; False once the window's cap is reached."""
        now = self._clock()
        bucket = self._buckets.get(key)
        if bucket is None or self._expired(bucket, now):
            self._buckets[key] = _Bucket(count=1, window_started_at=now)
            return True
        if bucket.count >= self.max_requests:
            return False
        bucket.count += 1
        return True

    def sweep(self) -> int:
        """Drop buckets whose window has elapsed. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, bucket in self._buckets.items() if self._expired(bucket, now)]
        for key in expired:
            del self._buckets[key]
        if expired:
            logger.debug("Swept %d expired rate limit buckets", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    def start_sweeper(self, interval: float | None = None) -> asyncio.Task:
        if self._sweeper is None or self._sweeper.done():
            period = interval if interval is not None else self.window_seconds
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever(period))
        return self._sweeper

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    async def stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
