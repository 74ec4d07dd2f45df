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


"""HTTP application exposing identity-protected routes.

Middleware order (outermost first): CORS, app-wide rate limiting. Route
protection is declared per endpoint with ``guarded``.
"""

import contextlib
import logging

from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ..clients.sso import SSOClient
from ..config import SSOConfig
from .guards import AuthGuards, guarded
from .rate_limit import RateLimiter, RateLimitMiddleware, rate_limit_guard

logger = logging.getLogger(__name__)


def create_app(
    config: SSOConfig | None = None,
    sso_client: SSOClient | None = None,
    limiter: RateLimiter | None = None,
) -> Starlette:
    """Create the Starlette app.

    Args:
        config: Settings; read from the environment when omitted
        sso_client: Identity service client. Built from config and closed on
            shutdown when omitted; an injected client stays owned by the caller
        limiter: App-wide rate limiter, built from config when omitted

    Returns:
        Starlette application instance
    """
    config = config or SSOConfig()
    owns_client = sso_client is None
    client = sso_client or SSOClient.from_config(config)
    limiter = limiter or RateLimiter.from_config(config)
    sensitive_limiter = RateLimiter.from_policy("sensitive")
    auth = AuthGuards.from_config(config, client)
    trust_proxy = config.trust_proxy

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        await limiter.start()
        await sensitive_limiter.start()
        logger.info(
            f"Serving platform '{config.platform_id}' against identity service "
            f"{config.sso_base_url}"
        )
        try:
            yield
        finally:
            await sensitive_limiter.stop()
            await limiter.stop()
            if owns_client:
                await client.aclose()

    async def health_check(request: Request) -> JSONResponse:
        """Health check endpoint."""
        return JSONResponse(
            {
                "status": "ok",
                "platform": config.platform_id,
                "identity_service": client.get_stats()["circuit_breaker"],
                "rate_limit_buckets": len(limiter),
            }
        )

    @guarded(auth.optional_auth(), trust_proxy=trust_proxy)
    async def session_info(request: Request) -> JSONResponse:
        user = request.state.user
        return JSONResponse(
            {"authenticated": user is not None, "user": user.to_dict() if user else None}
        )

    @guarded(auth.require_auth(), trust_proxy=trust_proxy)
    async def current_user(request: Request) -> JSONResponse:
        return JSONResponse(request.state.user.to_dict())

    @guarded(
        auth.require_auth(),
        auth.require_age_verification(),
        auth.require_platform_access(config.platform_id),
        auth.require_verified_creator(),
        trust_proxy=trust_proxy,
    )
    async def creator_dashboard(request: Request) -> JSONResponse:
        user = request.state.user
        return JSONResponse(
            {"creator": user.id, "name": user.name, "platform": config.platform_id}
        )

    @guarded(
        auth.require_auth(),
        auth.require_role("moderator"),
        rate_limit_guard(sensitive_limiter),
        trust_proxy=trust_proxy,
    )
    async def moderation_queue(request: Request) -> JSONResponse:
        return JSONResponse({"moderator": request.state.user.id, "items": []})

    app = Starlette(
        routes=[
            Route("/health", health_check, methods=["GET"]),
            Route("/auth/session", session_info, methods=["GET"]),
            Route("/auth/me", current_user, methods=["GET"]),
            Route("/creator/dashboard", creator_dashboard, methods=["GET"]),
            Route("/moderation/queue", moderation_queue, methods=["GET"]),
        ],
        lifespan=lifespan,
    )

    app.add_middleware(
        RateLimitMiddleware,
        limiter=limiter,
        trust_proxy=trust_proxy,
        exempt_paths={"/health"},
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.sso_client = client
    app.state.auth_guards = auth
    app.state.rate_limiter = limiter
    return app
