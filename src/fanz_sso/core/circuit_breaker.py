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
Circuit breaker for identity service calls.

When the identity service keeps timing out, every guard chain and every
refresh cycle would otherwise wait the full timeout. The breaker opens after
consecutive connectivity failures and fails fast until a cool-down elapses,
then lets a single trial call through (half-open).
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from .errors import NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states"""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""

    failure_threshold: int = 5  # Consecutive failures before opening
    reset_timeout: float = 30.0  # Seconds before a half-open trial

    # Only connectivity failures count; rejected credentials are healthy answers
    tracked_exceptions: tuple = (NetworkError,)


class CircuitBreakerOpenError(NetworkError):
    """Raised instead of calling the identity service while the circuit is open."""


class CircuitBreaker:
    """
    Circuit breaker protecting a single upstream dependency.

    States:
    - CLOSED: calls pass through, consecutive failures are counted
    - OPEN: calls fail fast with CircuitBreakerOpenError
    - HALF_OPEN: one trial call decides between CLOSED and OPEN
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at: float | None = None
        self._clock = clock
        self._trial_lock = asyncio.Lock()

    def _change_state(self, new_state: CircuitState) -> None:
        if new_state == self.state:
            return
        logger.warning(
            f"Circuit breaker '{self.name}' state change: "
            f"{self.state.value} -> {new_state.value} "
            f"(failures: {self.consecutive_failures})"
        )
        self.state = new_state
        if new_state == CircuitState.OPEN:
            self.opened_at = self._clock()
        elif new_state == CircuitState.CLOSED:
            self.opened_at = None
            self.consecutive_failures = 0

    def _remaining_open_time(self) -> float:
        if self.opened_at is None:
            return 0.0
        return max(0.0, self.config.reset_timeout - (self._clock() - self.opened_at))

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Execute an async function through the breaker.

        Raises:
            CircuitBreakerOpenError: If the circuit is open or a trial is in flight
            Original exception: If the call itself fails
        """
        if self.state == CircuitState.OPEN:
            remaining = self._remaining_open_time()
            if remaining > 0:
                raise CircuitBreakerOpenError(
                    f"Circuit breaker '{self.name}' is OPEN. "
                    f"Identity service unavailable for {remaining:.1f}s"
                )
            self._change_state(CircuitState.HALF_OPEN)

        if self.state == CircuitState.HALF_OPEN:
            if self._trial_lock.locked():
                raise CircuitBreakerOpenError(f"Circuit breaker '{self.name}' is testing recovery")
            async with self._trial_lock:
                return await self._execute(func, *args, **kwargs)

        return await self._execute(func, *args, **kwargs)

    async def _execute(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        try:
            result = await func(*args, **kwargs)
        except self.config.tracked_exceptions:
            self._record_failure()
            raise
        self._record_success()
        return result

    def _record_success(self) -> None:
        self.consecutive_failures = 0
        if self.state == CircuitState.HALF_OPEN:
            self._change_state(CircuitState.CLOSED)

    def _record_failure(self) -> None:
        self.consecutive_failures += 1
        if self.state == CircuitState.HALF_OPEN:
            self._change_state(CircuitState.OPEN)
        elif self.consecutive_failures >= self.config.failure_threshold:
            self._change_state(CircuitState.OPEN)

    def get_stats(self) -> dict[str, Any]:
        """Get current state for health reporting."""
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "retry_in": round(self._remaining_open_time(), 1),
        }

    def reset(self) -> None:
        """Manually reset the circuit breaker to closed state."""
        self._change_state(CircuitState.CLOSED)
        self.consecutive_failures = 0
        logger.info(f"Circuit breaker '{self.name}' manually reset")
