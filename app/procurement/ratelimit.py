"""
Fixed-window, in-process rate limiting.

One RateLimiter per app lives in app.extensions["rate_limiter"]. Counters are
per (bucket, client key); buckets are configured as "<max>/<window seconds>".
Multiple gunicorn workers each keep their own counters.
"""
from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import wraps
from typing import Any

from flask import Flask, current_app

from app.procurement.audit import client_ip
from app.procurement.errors import RateLimitError


@dataclass(frozen=True)
class Limit:
    max_requests: int
    window_seconds: int

    @classmethod
    def parse(cls, raw: str) -> "Limit":
        max_part, _, window_part = (raw or "").partition("/")
        try:
            return cls(max(1, int(max_part)), max(1, int(window_part or 60)))
        except ValueError as e:
            raise ValueError(f"Invalid rate limit {raw!r}; expected '<max>/<seconds>'") from e


class RateLimiter:
    def __init__(self, limits: dict[str, Limit], *, enabled: bool = True, clock: Callable[[], float] = time.monotonic):
        self.limits = limits
        self.enabled = enabled
        self._clock = clock
        self._windows: dict[tuple[str, str], tuple[float, int]] = {}
        self._lock = threading.Lock()
        self._sweep_every = min((lim.window_seconds for lim in limits.values()), default=60)
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._windows)

    def _sweep(self, now: float) -> None:
        """Drop counters whose window has already closed. Caller holds the lock."""
        if now - self._last_sweep < self._sweep_every:
            return
        self._last_sweep = now
        for (bucket, key), (started, _) in list(self._windows.items()):
            if now - started >= self.limits[bucket].window_seconds:
                del self._windows[(bucket, key)]

    def hit(self, bucket: str, key: str) -> tuple[bool, int]:
        """Count one request. Returns (allowed, seconds until the window resets)."""
        limit = self.limits[bucket]
        if not self.enabled:
            return True, 0
        now = self._clock()
        with self._lock:
            self._sweep(now)
            started, count = self._windows.get((bucket, key), (now, 0))
            if now - started >= limit.window_seconds:
                started, count = now, 0
            count += 1
            self._windows[(bucket, key)] = (started, count)
        retry_after = int(limit.window_seconds - (now - started)) or 1
        return count <= limit.max_requests, retry_after

    def reset(self, bucket: str, key: str) -> None:
        with self._lock:
            self._windows.pop((bucket, key), None)


def init_rate_limiter(app: Flask) -> RateLimiter:
    limiter = RateLimiter(
        {
            "login": Limit.parse(app.config["RATELIMIT_LOGIN"]),
            "api": Limit.parse(app.config["RATELIMIT_API"]),
            "sensitive": Limit.parse(app.config["RATELIMIT_SENSITIVE"]),
        },
        enabled=bool(app.config.get("RATELIMIT_ENABLED", True)),
    )
    app.extensions["rate_limiter"] = limiter
    return limiter


def check_rate_limit(bucket: str) -> None:
    limiter: RateLimiter = current_app.extensions["rate_limiter"]
    allowed, retry_after = limiter.hit(bucket, client_ip())
    if not allowed:
        current_app.logger.warning("Rate limit exceeded bucket=%s ip=%s", bucket, client_ip())
        raise RateLimitError(retry_after)


def rate_limited(bucket: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            check_rate_limit(bucket)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
