"""
Server-side identity enforcement for Starlette apps.

Architecture:
- guards: bearer-token validation and role / age / platform / creator gates,
  composed into an order-checked GuardChain
- rate_limit: fixed-window limiter as middleware and as a guard
- app: application factory wiring both onto example routes
"""

from .app import create_app
from .guards import (
    AuthGuards,
    Guard,
    GuardChain,
    GuardContext,
    GuardOrderError,
    client_ip,
    extract_bearer,
    guarded,
    rejection_response,
)
from .rate_limit import (
    POLICIES,
    RateLimitDecision,
    RateLimiter,
    RateLimitMiddleware,
    RateLimitPolicy,
    rate_limit_guard,
    rate_limit_key,
)

__all__ = [
    "POLICIES",
    "AuthGuards",
    "Guard",
    "GuardChain",
    "GuardContext",
    "GuardOrderError",
    "RateLimitDecision",
    "RateLimitMiddleware",
    "RateLimitPolicy",
    "RateLimiter",
    "client_ip",
    "create_app",
    "extract_bearer",
    "guarded",
    "rate_limit_guard",
    "rate_limit_key",
    "rejection_response",
]
