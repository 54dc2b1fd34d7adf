from __future__ import annotations

import os
import time
from collections import defaultdict, deque
from typing import Deque, Dict

from fastapi import HTTPException


def verify_api_key(provided_key: str | None) -> None:
    """Reject requests whose X-API-Key does not match API_AUTH_TOKEN; open when the token is unset."""

    expected = os.getenv("API_AUTH_TOKEN")
    if not expected:
        return
    if provided_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API token")


class RateLimiter:
    def __init__(self, limit: int, window_seconds: int) -> None:
        self.limit = limit
        self.window = window_seconds
        self.calls: Dict[str, Deque[float]] = defaultdict(deque)

    def allow(self, client_id: str) -> None:
        now = time.time()
        bucket = self.calls[client_id]
        while bucket and bucket[0] <= now - self.window:
            bucket.popleft()
        if len(bucket) >= self.limit:
            raise HTTPException(status_code=429, detail="Rate limit exceeded")
        bucket.append(now)


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        limit = int(os.getenv("API_RATE_LIMIT", "120"))
        window = int(os.getenv("API_RATE_WINDOW", "60"))
        _rate_limiter = RateLimiter(limit=limit, window_seconds=window)
    return _rate_limiter


def reset_rate_limiter() -> None:
    global _rate_limiter
    _rate_limiter = None
