"""Per-session token buckets for the event publish endpoint (dev/staging).

Each caller gets its own bucket per listening session, so a chatty session
cannot starve another one. Callers are identified by their bearer header
when present and by client address otherwise.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from fastapi import HTTPException, Request, status

from .config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class TokenBucket:
    capacity: float
    refill_per_second: float
    tokens: float
    updated_at: float

    def take(self, now: float, amount: float = 1.0) -> bool:
        elapsed = max(0.0, now - self.updated_at)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_per_second)
        self.updated_at = now
        if self.tokens < amount:
            return False
        self.tokens -= amount
        return True


class SessionRateLimiter:
    """Bounded LRU of buckets keyed by ``(caller, session)``."""

    def __init__(self, *, max_keys: int = 10_000, clock: Callable[[], float] = time.monotonic) -> None:
        self._buckets: OrderedDict[str, TokenBucket] = OrderedDict()
        self._max_keys = max_keys
        self._clock = clock

    def __len__(self) -> int:
        return len(self._buckets)

    def clear(self) -> None:
        self._buckets.clear()

    def allow(self, key: str, *, burst: int, rps: float) -> bool:
        now = self._clock()
        bucket = self._buckets.get(key)
        if bucket is None:
            if len(self._buckets) >= self._max_keys:
                self._buckets.popitem(last=False)
            bucket = TokenBucket(capacity=float(burst), refill_per_second=rps, tokens=float(burst), updated_at=now)
            self._buckets[key] = bucket
        else:
            self._buckets.move_to_end(key)
        return bucket.take(now)


_limiter = SessionRateLimiter()


def caller_key(request: Request) -> str:
    session_id = request.path_params.get("session_id", "")
    auth = request.headers.get("authorization") or ""
    if auth:
        return f"auth:{hash(auth)}:{session_id}"
    client = request.client.host if request.client else "unknown"
    return f"ip:{client}:{session_id}"


def reset_buckets() -> None:
    _limiter.clear()


def rate_limit(request: Request) -> None:
    """FastAPI dependency; raises 429 once the caller's bucket is empty."""

    cfg = get_settings()
    if not cfg.rate_limit_enabled:
        return
    key = caller_key(request)
    if not _limiter.allow(key, burst=cfg.rate_limit_burst, rps=cfg.rate_limit_rps):
        logger.info("Rate limit hit for %s", key)
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")
