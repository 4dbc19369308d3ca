"""In-memory fixed-window rate limiting per client (best-effort, per process)."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

_PRUNE_THRESHOLD = 10_000


def client_key(headers: Mapping[str, str], client_host: Optional[str]) -> str:
    """Identify a client by first forwarded hop (or peer address) plus user agent."""
    forwarded = (headers.get("x-forwarded-for") or "").split(",")[0].strip()
    ip = forwarded or headers.get("client-ip") or client_host or "0.0.0.0"
    ua = headers.get("user-agent") or "na"
    return f"{ip}::{ua[:80]}"


@dataclass
class _Bucket:
    count: int
    reset_at: float


class RateLimiter:
    def __init__(
        self,
        window_s: float,
        max_requests: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window_s = window_s
        self._max_requests = max_requests
        self._clock = clock
        self._buckets: Dict[str, _Bucket] = {}

    def check(self, key: str) -> Optional[int]:
        """Count one request. Returns None when allowed, else seconds until reset."""
        now = self._clock()
        if len(self._buckets) > _PRUNE_THRESHOLD:
            self._prune(now)
        b = self._buckets.get(key)
        if b is None or now > b.reset_at:
            self._buckets[key] = _Bucket(count=1, reset_at=now + self._window_s)
            return None
        if b.count >= self._max_requests:
            return max(1, math.ceil(b.reset_at - now))
        b.count += 1
        return None

    def _prune(self, now: float) -> None:
        for k in [k for k, b in self._buckets.items() if now > b.reset_at]:
            del self._buckets[k]

    def reset(self) -> None:
        self._buckets.clear()
