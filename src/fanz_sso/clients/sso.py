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
FanzSSO identity service client.
Stateless request/response mapping with bounded timeouts and a circuit breaker.
"""

import asyncio
import logging
import secrets
from typing import Any

import httpx

from ..auth import policy
from ..auth.models import (
    AuthResponse,
    Invalid,
    RefreshResponse,
    Unreachable,
    User,
    Valid,
    ValidationResult,
    parse_timestamp,
)
from ..config import SSOConfig
from ..core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from ..core.errors import (
    AuthenticationError,
    CallbackError,
    NetworkError,
    RefreshError,
    SSOError,
)
from ..core.security import TokenSanitizer

logger = logging.getLogger(__name__)

# Request Timeout and Too Many Requests say nothing about the credentials
TRANSIENT_STATUSES = frozenset({408, 429})


def parse_retry_after(value: str | None) -> float | None:
    """Read a delta-seconds Retry-After header; HTTP dates are ignored."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


class SSOClient:
    """Async client for the identity service shared by every platform.

    Owns its httpx.AsyncClient unless one is injected. Every call is bounded
    by ``timeout`` seconds in total; timeouts, connectivity failures, 5xx
    answers and 408/429 answers surface as NetworkError (outcome unknown),
    never as a rejection.
    """

    def __init__(
        self,
        base_url: str,
        platform_id: str,
        redirect_uri: str,
        timeout: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        breaker: CircuitBreaker | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.platform_id = platform_id
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout), transport=transport
        )
        self._breaker = breaker or CircuitBreaker("identity_service")

    @classmethod
    def from_config(cls, config: SSOConfig, **kwargs: Any) -> "SSOClient":
        """Build a client from SSOConfig; kwargs override transport/breaker wiring."""
        kwargs.setdefault(
            "breaker",
            CircuitBreaker(
                "identity_service",
                CircuitBreakerConfig(
                    failure_threshold=config.breaker_failure_threshold,
                    reset_timeout=config.breaker_reset_timeout,
                ),
            ),
        )
        return cls(
            base_url=config.sso_base_url,
            platform_id=config.platform_id,
            redirect_uri=config.redirect_uri,
            timeout=config.request_timeout,
            **kwargs,
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _request(
        self, method: str, path: str, server_errors_unknown: bool = True, **kwargs: Any
    ) -> httpx.Response:
        """Send one request through the circuit breaker.

        Raises:
            NetworkError: Timeout, connectivity failure, open circuit, or a 5xx,
                408 or 429 answer when ``server_errors_unknown`` is set
        """

        async def send() -> httpx.Response:
            try:
                response = await asyncio.wait_for(
                    self._http.request(method, self._url(path), **kwargs), timeout=self.timeout
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as e:
                raise NetworkError(
                    f"Identity service timed out after {self.timeout}s: {method} {path}"
                ) from e
            except httpx.TransportError as e:
                raise NetworkError(
                    f"Identity service unreachable: {TokenSanitizer.sanitize_error(e)}"
                ) from e

            if server_errors_unknown and response.status_code >= 500:
                raise NetworkError(
                    f"Identity service error {response.status_code} on {method} {path}",
                    status_code=response.status_code,
                )
            return response

        response = await self._breaker.call(send)

        # Not counted by the breaker; throttling is not a connectivity failure.
        if server_errors_unknown and response.status_code in TRANSIENT_STATUSES:
            retry_after = parse_retry_after(response.headers.get("retry-after"))
            raise NetworkError(
                f"Identity service deferred {method} {path} ({response.status_code})",
                status_code=response.status_code,
                retry_after=retry_after,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _bearer(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def get_authorization_url(self) -> str:
        """Get the federated login URL for this platform."""
        response = await self._request("GET", f"/auth/platforms/{self.platform_id}/authorize")
        if not response.is_success:
            raise SSOError(
                "Failed to get authorization URL", status_code=response.status_code
            )

        url = self._json(response).get("authorization_url")
        if not url:
            raise SSOError("Identity service returned no authorization_url")
        return url

    async def login(self, email: str, password: str) -> AuthResponse:
        """
        Log in with email and password.

        Raises:
            AuthenticationError: On any non-2xx answer, carrying the server's message
            NetworkError: If the identity service could not be reached
        """
        response = await self._request(
            "POST",
            "/auth/login",
            server_errors_unknown=False,
            json={"email": email, "password": password, "platform": self.platform_id},
        )

        if not response.is_success:
            message = self._json(response).get("message") or "Login failed"
            logger.info(f"Login rejected ({response.status_code}) on platform {self.platform_id}")
            raise AuthenticationError(message, status_code=response.status_code)

        try:
            auth = AuthResponse.from_dict(self._json(response))
        except (KeyError, TypeError, ValueError) as e:
            raise AuthenticationError(f"Malformed login response: {e}") from None

        logger.info(f"Login succeeded for user {auth.user.id} on platform {self.platform_id}")
        return auth

    async def validate_token(self, token: str) -> ValidationResult:
        """
        Validate an access token.

        Never raises: an invalid token is a normal Invalid result, and an
        unreachable identity service yields Unreachable.
        """
        if not token:
            return Invalid("empty token")

        try:
            response = await self._request("GET", "/auth/validate", headers=self._bearer(token))
        except NetworkError as e:
            logger.warning(f"Token validation outcome unknown: {TokenSanitizer.sanitize_error(e)}")
            return Unreachable(str(e))

        if not response.is_success:
            logger.debug(
                f"Token {TokenSanitizer.fingerprint(token)} rejected with {response.status_code}"
            )
            return Invalid(f"status {response.status_code}")

        data = self._json(response)
        if not data:
            return Unreachable("Malformed validation response")
        if not data.get("valid"):
            return Invalid(data.get("reason") or "invalid")
        if not data.get("user"):
            return Invalid("no user attached to token")

        try:
            user = User.from_dict(data["user"])
        except (TypeError, ValueError) as e:
            return Unreachable(f"Malformed user in validation response: {e}")

        return Valid(user=user, expires_at=parse_timestamp(data.get("expires_at")))

    async def refresh_token(self, refresh_token: str) -> RefreshResponse:
        """
        Exchange a refresh token for a new access token.

        Raises:
            RefreshError: If the identity service rejects the refresh token
            NetworkError: If the outcome is unknown, including 408 and 429 answers
        """
        response = await self._request(
            "POST", "/auth/refresh", json={"refresh_token": refresh_token}
        )

        if not response.is_success:
            message = self._json(response).get("message") or "Token refresh failed"
            raise RefreshError(message, status_code=response.status_code)

        try:
            return RefreshResponse.from_dict(self._json(response))
        except (KeyError, TypeError, ValueError) as e:
            raise NetworkError(f"Malformed refresh response: {e}") from None

    async def logout(self, token: str) -> None:
        """Best-effort server-side invalidation. Failures are logged, never raised."""
        try:
            response = await self._request("POST", "/auth/logout", headers=self._bearer(token))
        except SSOError as e:
            logger.warning(f"Remote logout failed: {TokenSanitizer.sanitize_error(e)}")
            return

        if not response.is_success:
            logger.warning(f"Remote logout returned {response.status_code}")

    async def get_profile(self, token: str) -> User:
        """Fetch the full user profile for an access token."""
        response = await self._request("GET", "/profile", headers=self._bearer(token))
        if not response.is_success:
            raise SSOError("Failed to fetch profile", status_code=response.status_code)
        try:
            return User.from_dict(self._json(response))
        except (TypeError, ValueError) as e:
            raise SSOError(f"Malformed profile response: {e}") from None

    async def handle_callback(
        self, code: str, state: str, expected_state: str | None = None
    ) -> AuthResponse:
        """
        Exchange an OAuth authorization code for tokens and resolve the user.

        Args:
            code: Authorization code from the redirect
            state: State parameter from the redirect
            expected_state: State issued before the redirect, checked when given

        Raises:
            CallbackError: If the state, the exchange or the validation fails
        """
        if expected_state is not None and not secrets.compare_digest(
            state or "", expected_state
        ):
            raise CallbackError("OAuth state mismatch")

        try:
            response = await self._request(
                "POST",
                "/oidc/token",
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_id": self.platform_id,
                    "redirect_uri": self.redirect_uri,
                },
            )
        except NetworkError as e:
            raise CallbackError(f"OAuth callback failed: {e.message}") from e

        if not response.is_success:
            message = self._json(response).get("message") or "OAuth callback failed"
            raise CallbackError(message, status_code=response.status_code)

        data = self._json(response)
        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        if not access_token or not refresh_token:
            raise CallbackError("Token endpoint returned no tokens")

        validation = await self.validate_token(access_token)
        if not isinstance(validation, Valid):
            raise CallbackError("Could not validate the exchanged access token")

        return AuthResponse(
            token=access_token,
            refresh_token=refresh_token,
            user=validation.user,
            expires_in=int(data.get("expires_in") or 0),
        )

    def has_platform_access(self, user: User, platform_id: str | None = None) -> bool:
        """Check access to ``platform_id``, defaulting to this client's platform."""
        return policy.has_platform_access(user, platform_id or self.platform_id)

    def has_role(self, user: User, role: str) -> bool:
        return policy.has_role(user, role)

    def is_age_verified(self, user: User) -> bool:
        return policy.is_age_verified(user)

    def get_stats(self) -> dict[str, Any]:
        """Circuit breaker state for health reporting."""
        return {"platform": self.platform_id, "circuit_breaker": self._breaker.get_stats()}

    async def aclose(self) -> None:
        """Release the HTTP connection pool if this client created it."""
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "SSOClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.aclose()
        return False
