#!/usr/bin/env python3
# MIT License
#
# Copyright (c) 2025 Recursive Companion Contributors
# Based on work by Hank Besser (https://github.com/hankbesser/recursive-companion)
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.


"""
Fixed-window rate limiting.

Requests are counted per key (client ip plus user id) in windows of fixed
length. The first request of a window creates the bucket; once the count
exceeds the ceiling, requests are rejected with 429 until the window resets.
Expired buckets are removed by a periodic sweep task.

Buckets live in process memory, so limits are per instance. A deployment
with several instances behind a load balancer multiplies the effective
ceiling by the instance count.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..core.errors import ErrorCode, Rejection
from .guards import Guard, GuardContext, client_ip, rejection_response

if TYPE_CHECKING:
    from ..config import SSOConfig

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"


def rate_limit_key(ip: str | None, user_id: str | None = None) -> str:
    return f"{ip or 'unknown'}:{user_id or ANONYMOUS}"


@dataclass(frozen=True)
class RateLimitPolicy:
    """Named window/ceiling pair."""

    name: str
    window: float
    max_requests: int


# Stricter presets for sensitive endpoints
POLICIES: dict[str, RateLimitPolicy] = {
    "default": RateLimitPolicy("default", 15 * 60, 1000),
    "auth": RateLimitPolicy("auth", 15 * 60, 5),
    "registration": RateLimitPolicy("registration", 60 * 60, 3),
    "upload": RateLimitPolicy("upload", 60, 10),
    "payment": RateLimitPolicy("payment", 60, 5),
    "content": RateLimitPolicy("content", 60, 20),
    "sensitive": RateLimitPolicy("sensitive", 5 * 60, 10),
}


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of counting one request.

    Attributes:
        allowed: Whether the request is within the ceiling
        limit: Ceiling for the window
        count: Requests counted in the current window, this one included
        remaining: Requests left before rejection
        reset_in: Whole seconds until the window resets
    """

    allowed: bool
    limit: int
    count: int
    remaining: int
    reset_in: int

    @property
    def retry_after(self) -> int:
        return 0 if self.allowed else self.reset_in

    def headers(self) -> dict[str, str]:
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_in),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers

    def rejection(self) -> Rejection:
        return Rejection(
            429,
            ErrorCode.RATE_LIMITED,
            "Rate limit exceeded",
            extra={"message": "Rate limit exceeded", "retryAfter": self.retry_after},
            headers=self.headers(),
        )


@dataclass
class _Bucket:
    count: int
    reset_at: float


class RateLimiter:
    """
    Fixed-window counter keyed by arbitrary strings.

    Counter updates happen under a lock, so concurrent requests for one key
    never lose an increment.

    Args:
        window: Window length in seconds, at least 1 so Retry-After never exceeds it
        max_requests: Requests allowed per window
        sweep_interval: Seconds between removals of expired buckets
        clock: Monotonic time source, injectable for tests
        name: Label used in logs
    """

    def __init__(
        self,
        window: float = 15 * 60,
        max_requests: int = 1000,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        name: str = "default",
    ):
        if window < 1 or max_requests < 1:
            raise ValueError("window must be at least 1s and max_requests at least 1")
        self.window = window
        self.max_requests = max_requests
        self.sweep_interval = sweep_interval
        self.name = name
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._sweep_task: asyncio.Task | None = None

    @classmethod
    def from_config(cls, config: SSOConfig, **kwargs) -> RateLimiter:
        return cls(
            window=config.rate_limit_window,
            max_requests=config.rate_limit_max,
            sweep_interval=config.rate_limit_sweep_interval,
            **kwargs,
        )

    @classmethod
    def from_policy(cls, policy: RateLimitPolicy | str, **kwargs) -> RateLimiter:
        if isinstance(policy, str):
            policy = POLICIES[policy]
        return cls(
            window=policy.window, max_requests=policy.max_requests, name=policy.name, **kwargs
        )

    def __len__(self) -> int:
        return len(self._buckets)

    def hit(self, key: str) -> RateLimitDecision:
        """Count one request for ``key`` and decide whether it may proceed."""
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None or bucket.reset_at <= now:
                bucket = _Bucket(count=1, reset_at=now + self.window)
                self._buckets[key] = bucket
            else:
                bucket.count += 1
            count = bucket.count
            reset_in = max(1, math.ceil(bucket.reset_at - now))

        allowed = count <= self.max_requests
        return RateLimitDecision(
            allowed=allowed,
            limit=self.max_requests,
            count=count,
            remaining=max(0, self.max_requests - count),
            reset_in=reset_in,
        )

    def reset(self, key: str | None = None) -> None:
        """Forget one key, or every key when none is given."""
        with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)

    def sweep(self) -> int:
        """Remove expired buckets; returns how many were dropped."""
        with self._lock:
            now = self._clock()
            expired = [key for key, bucket in self._buckets.items() if bucket.reset_at <= now]
            for key in expired:
                del self._buckets[key]
        return len(expired)

    async def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.debug(f"Rate limiter '{self.name}' sweep every {self.sweep_interval}s")

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = self.sweep()
            if removed:
                logger.debug(f"Rate limiter '{self.name}' dropped {removed} expired buckets")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """App-wide limiter applied before routing and authentication.

    Runs ahead of the auth guards, so the key is normally ``{ip}:anonymous``.
    Use ``rate_limit_guard`` after an auth guard to key on the user as well.
    """

    def __init__(  # type: ignore[no-untyped-def]
        self,
        app,
        limiter: RateLimiter,
        trust_proxy: bool = False,
        exempt_paths: frozenset[str] | set[str] = frozenset(),
    ) -> None:
        super().__init__(app)
        self.limiter = limiter
        self.trust_proxy = trust_proxy
        self.exempt_paths = frozenset(exempt_paths)

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        user = getattr(request.state, "user", None)
        key = rate_limit_key(
            client_ip(request, self.trust_proxy), user.id if user is not None else None
        )
        decision = self.limiter.hit(key)

        if not decision.allowed:
            logger.warning(
                f"Rate limit exceeded: key={key}, path={request.url.path}, "
                f"retry_after={decision.retry_after}s"
            )
            return rejection_response(decision.rejection())

        response: Response = await call_next(request)
        response.headers.update(decision.headers())
        return response


def rate_limit_guard(limiter: RateLimiter) -> Guard:
    """Guard form of the limiter; keys on the user when an auth guard ran first."""

    async def check(context: GuardContext) -> Rejection | None:
        key = rate_limit_key(context.client_ip, context.user.id if context.user else None)
        decision = limiter.hit(key)
        if decision.allowed:
            return None
        logger.warning(f"Rate limit '{limiter.name}' exceeded: key={key}, path={context.path}")
        return decision.rejection()

    return Guard(f"rate_limit({limiter.name})", check)
