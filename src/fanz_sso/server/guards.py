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
Server-side guard chain.

Each guard inspects a GuardContext and either passes (returns None) or
returns a terminal Rejection. Guards run in order; the first rejection ends
the request. Guards that need a user must follow an authentication guard,
which GuardChain enforces when the chain is built.
"""

from __future__ import annotations

import functools
import hashlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from cachetools import TTLCache  # type: ignore[import-untyped]
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..auth import policy
from ..auth.models import Invalid, Unreachable, User, Valid, ValidationResult
from ..core.errors import ErrorCode, Rejection, no_user
from ..core.security import TokenSanitizer

if TYPE_CHECKING:
    from ..clients.sso import SSOClient
    from ..config import SSOConfig

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


@dataclass
class GuardContext:
    """Per-request state threaded through the chain.

    Attributes:
        authorization: Raw Authorization header, if any
        client_ip: Caller address used for rate-limit keys
        path: Request path, for logging
        user: Set by an authentication guard on success
        token: Bearer token accepted alongside ``user``
    """

    authorization: str | None
    client_ip: str = "unknown"
    path: str = "/"
    user: User | None = None
    token: str | None = None

    @classmethod
    def from_request(cls, request: Request, trust_proxy: bool = False) -> GuardContext:
        return cls(
            authorization=request.headers.get("authorization"),
            client_ip=client_ip(request, trust_proxy),
            path=request.url.path,
        )


def client_ip(request: Request, trust_proxy: bool = False) -> str:
    """Caller address; the first X-Forwarded-For hop only when behind a trusted proxy."""
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def extract_bearer(authorization: str | None) -> str | None:
    """Return the token of a well-formed ``Bearer <token>`` header, else None."""
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX) :].strip()
    return token or None


GuardCheck = Callable[[GuardContext], Awaitable[Rejection | None]]


@dataclass(frozen=True)
class Guard:
    """A named check plus the ordering facts GuardChain needs."""

    name: str
    check: GuardCheck
    needs_user: bool = False
    provides_user: bool = False

    async def __call__(self, context: GuardContext) -> Rejection | None:
        return await self.check(context)


class GuardOrderError(ValueError):
    """A user-dependent guard was placed before any authentication guard."""


class GuardChain:
    """Ordered guards; building a chain validates its ordering."""

    def __init__(self, *guards: Guard):
        authenticated = False
        for guard in guards:
            if guard.needs_user and not authenticated:
                raise GuardOrderError(
                    f"Guard '{guard.name}' needs a user but no authentication guard precedes it"
                )
            authenticated = authenticated or guard.provides_user
        self.guards: tuple[Guard, ...] = guards

    def __len__(self) -> int:
        return len(self.guards)

    async def run(self, context: GuardContext) -> Rejection | None:
        for guard in self.guards:
            rejection = await guard(context)
            if rejection is not None:
                logger.info(
                    f"{context.path} rejected by {guard.name}: "
                    f"{rejection.status_code} {rejection.code.value}"
                )
                return rejection
        return None


def rejection_response(rejection: Rejection) -> JSONResponse:
    return JSONResponse(
        rejection.body(), status_code=rejection.status_code, headers=rejection.headers or None
    )


Endpoint = Callable[[Request], Awaitable[Response]]


def guarded(*guards: Guard, trust_proxy: bool = False) -> Callable[[Endpoint], Endpoint]:
    """
    Protect a Starlette endpoint with a guard chain.

    On success the endpoint sees ``request.state.user`` and
    ``request.state.token`` (None when only optional auth ran).

    Raises:
        GuardOrderError: At decoration time, if the guards are misordered
    """
    chain = GuardChain(*guards)

    def decorator(endpoint: Endpoint) -> Endpoint:
        @functools.wraps(endpoint)
        async def wrapper(request: Request) -> Response:
            context = GuardContext.from_request(request, trust_proxy)
            rejection = await chain.run(context)
            if rejection is not None:
                return rejection_response(rejection)
            request.state.user = context.user
            request.state.token = context.token
            return await endpoint(request)

        return wrapper

    return decorator


class AuthGuards:
    """Factory for guards bound to one identity service.

    Args:
        client: SSO client used for token validation
        sso_base_url: Base for the remediation links in 403 bodies
        cache_ttl: Seconds to cache Valid results per token; 0 disables caching
        cache_size: Maximum number of cached validations
    """

    def __init__(
        self,
        client: SSOClient,
        sso_base_url: str | None = None,
        cache_ttl: float = 0,
        cache_size: int = 10000,
    ):
        self.client = client
        self.sso_base_url = (sso_base_url or client.base_url).rstrip("/")
        self._cache: TTLCache | None = (
            TTLCache(maxsize=cache_size, ttl=cache_ttl) if cache_ttl > 0 else None
        )

    @classmethod
    def from_config(cls, config: SSOConfig, client: SSOClient) -> AuthGuards:
        return cls(
            client,
            sso_base_url=config.sso_base_url,
            cache_ttl=config.validation_cache_ttl,
            cache_size=config.validation_cache_size,
        )

    async def validate(self, token: str) -> ValidationResult:
        """Validate through the identity service, serving recent Valid results from cache."""
        if self._cache is None:
            return await self.client.validate_token(token)

        key = hashlib.sha256(token.encode()).hexdigest()
        cached = self._cache.get(key)
        if cached is not None:
            if cached.expires_at is None or cached.expires_at > datetime.now(timezone.utc):
                return cached
            self._cache.pop(key, None)

        result = await self.client.validate_token(token)
        if isinstance(result, Valid):
            self._cache[key] = result
        return result

    def clear_cache(self) -> None:
        if self._cache is not None:
            self._cache.clear()

    def require_auth(self) -> Guard:
        async def check(context: GuardContext) -> Rejection | None:
            token = extract_bearer(context.authorization)
            if token is None:
                return Rejection(401, ErrorCode.NO_TOKEN, "Authentication required")

            result = await self.validate(token)
            if isinstance(result, Unreachable):
                logger.warning(
                    f"Cannot validate token {TokenSanitizer.fingerprint(token)}: {result.error}"
                )
                return Rejection(
                    503, ErrorCode.IDENTITY_UNAVAILABLE, "Identity service unavailable"
                )
            if isinstance(result, Invalid):
                return Rejection(401, ErrorCode.INVALID_TOKEN, "Invalid or expired token")

            context.user = result.user
            context.token = token
            return None

        return Guard("require_auth", check, provides_user=True)

    def optional_auth(self) -> Guard:
        """Attach the user when a valid token is present; never rejects."""

        async def check(context: GuardContext) -> Rejection | None:
            token = extract_bearer(context.authorization)
            if token is None:
                return None
            result = await self.validate(token)
            if isinstance(result, Valid):
                context.user = result.user
                context.token = token
            return None

        return Guard("optional_auth", check, provides_user=True)

    def require_age_verification(self) -> Guard:
        verify_url = f"{self.sso_base_url}/verify/age"

        async def check(context: GuardContext) -> Rejection | None:
            if context.user is None:
                return no_user()
            if not policy.is_age_verified(context.user):
                return Rejection(
                    403,
                    ErrorCode.AGE_NOT_VERIFIED,
                    "Age verification required",
                    extra={"verifyUrl": verify_url},
                )
            return None

        return Guard("require_age_verification", check, needs_user=True)

    def require_role(self, *roles: str) -> Guard:
        """Pass when the user holds any of ``roles``; admin passes every role check."""
        if not roles:
            raise ValueError("require_role needs at least one role")
        required = list(roles)

        async def check(context: GuardContext) -> Rejection | None:
            if context.user is None:
                return no_user()
            if not policy.has_any_role(context.user, required):
                return Rejection(
                    403,
                    ErrorCode.FORBIDDEN,
                    "Insufficient permissions",
                    extra={"required": required},
                )
            return None

        return Guard(f"require_role({','.join(required)})", check, needs_user=True)

    def require_platform_access(self, platform_id: str) -> Guard:
        subscribe_url = f"{self.sso_base_url}/subscribe/{platform_id}"

        async def check(context: GuardContext) -> Rejection | None:
            if context.user is None:
                return no_user()
            if not policy.has_platform_access(context.user, platform_id):
                return Rejection(
                    403,
                    ErrorCode.NO_PLATFORM_ACCESS,
                    "Platform access required",
                    extra={"platform": platform_id, "subscribeUrl": subscribe_url},
                )
            return None

        return Guard(f"require_platform_access({platform_id})", check, needs_user=True)

    def require_creator(self) -> Guard:
        apply_url = f"{self.sso_base_url}/creator/apply"

        async def check(context: GuardContext) -> Rejection | None:
            if context.user is None:
                return no_user()
            if not policy.is_creator(context.user):
                return Rejection(
                    403,
                    ErrorCode.NOT_CREATOR,
                    "Creator account required",
                    extra={"applyUrl": apply_url},
                )
            return None

        return Guard("require_creator", check, needs_user=True)

    def require_verified_creator(self) -> Guard:
        verify_url = f"{self.sso_base_url}/creator/verify"

        async def check(context: GuardContext) -> Rejection | None:
            if context.user is None:
                return no_user()
            if not policy.is_verified_creator(context.user):
                return Rejection(
                    403,
                    ErrorCode.CREATOR_NOT_VERIFIED,
                    "Verified creator account required",
                    extra={"status": context.user.creator_status.value, "verifyUrl": verify_url},
                )
            return None

        return Guard("require_verified_creator", check, needs_user=True)
