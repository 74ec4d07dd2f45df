"""
Shared fixtures: an in-process fake identity service behind httpx.MockTransport.
"""

import asyncio
import itertools
import json
from typing import Any

import httpx
import pytest

from fanz_sso.clients.sso import SSOClient
from fanz_sso.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig

SSO_URL = "https://sso.test"
PLATFORM = "fanzdash"
REDIRECT_URI = "http://localhost:3000/auth/callback"


def user_payload(user_id: str = "u1", **overrides: Any) -> dict[str, Any]:
    payload = {
        "id": user_id,
        "email": f"{user_id}@example.com",
        "name": f"User {user_id}",
        "avatar_url": None,
        "platform_access": [PLATFORM],
        "creator_status": "none",
        "age_verified": True,
        "roles": ["fan"],
    }
    payload.update(overrides)
    return payload


class FakeIdentityService:
    """Minimal identity service: tokens, refresh tokens and a login table."""

    def __init__(self) -> None:
        self.users: dict[str, dict[str, Any]] = {}
        self.access_tokens: dict[str, str] = {}
        self.refresh_tokens: dict[str, str] = {}
        self.passwords: dict[str, tuple[str, str]] = {}
        self.auth_codes: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self.down = False
        self.delay = 0.0
        self.rotate_refresh_tokens = False
        # path -> (status, headers) answered instead of the normal response
        self.overrides: dict[str, tuple[int, dict[str, str]]] = {}
        self._counter = itertools.count(1)

    def add_user(self, user_id: str = "u1", password: str = "secret", **overrides: Any) -> dict:
        payload = user_payload(user_id, **overrides)
        self.users[user_id] = payload
        self.passwords[payload["email"]] = (password, user_id)
        return payload

    def issue(self, user_id: str) -> tuple[str, str]:
        n = next(self._counter)
        access, refresh = f"access-{user_id}-{n}", f"refresh-{user_id}-{n}"
        self.access_tokens[access] = user_id
        self.refresh_tokens[refresh] = user_id
        return access, refresh

    def calls_to(self, path: str) -> int:
        return sum(1 for _, called in self.calls if called == path)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.down:
            raise httpx.ConnectError("identity service down", request=request)
        if path in self.overrides:
            status_code, headers = self.overrides[path]
            return httpx.Response(
                status_code, json={"message": f"Status {status_code}"}, headers=headers
            )

        bearer = request.headers.get("authorization", "").removeprefix("Bearer ")

        if path == "/auth/validate":
            user_id = self.access_tokens.get(bearer)
            if user_id is None:
                return httpx.Response(401, json={"valid": False, "reason": "expired"})
            return httpx.Response(200, json={"valid": True, "user": self.users[user_id]})

        if path == "/auth/login":
            body = json.loads(request.content)
            password, user_id = self.passwords.get(body["email"], (None, None))
            if user_id is None or password != body["password"]:
                return httpx.Response(401, json={"message": "Invalid credentials"})
            access, refresh = self.issue(user_id)
            return httpx.Response(
                200,
                json={
                    "token": access,
                    "refresh_token": refresh,
                    "user": self.users[user_id],
                    "expires_in": 3600,
                },
            )

        if path == "/auth/refresh":
            body = json.loads(request.content)
            user_id = self.refresh_tokens.get(body.get("refresh_token"))
            if user_id is None:
                return httpx.Response(401, json={"message": "Refresh token expired"})
            access, refresh = self.issue(user_id)
            payload: dict[str, Any] = {"token": access, "expires_in": 3600}
            if self.rotate_refresh_tokens:
                del self.refresh_tokens[body["refresh_token"]]
                payload["refresh_token"] = refresh
            return httpx.Response(200, json=payload)

        if path == "/auth/logout":
            self.access_tokens.pop(bearer, None)
            return httpx.Response(200, json={"success": True})

        if path == f"/auth/platforms/{PLATFORM}/authorize":
            return httpx.Response(
                200, json={"authorization_url": f"{SSO_URL}/oidc/authorize?client_id={PLATFORM}"}
            )

        if path == "/oidc/token":
            form = dict(httpx.QueryParams(request.content.decode()))
            user_id = self.auth_codes.pop(form.get("code", ""), None)
            if user_id is None:
                return httpx.Response(400, json={"message": "invalid_grant"})
            access, refresh = self.issue(user_id)
            return httpx.Response(
                200,
                json={"access_token": access, "refresh_token": refresh, "expires_in": 3600},
            )

        if path == "/profile":
            user_id = self.access_tokens.get(bearer)
            if user_id is None:
                return httpx.Response(401, json={"message": "Unauthorized"})
            return httpx.Response(200, json=self.users[user_id])

        return httpx.Response(404, json={"message": "not found"})


def make_client(handler, failure_threshold: int = 5, timeout: float = 1.0) -> SSOClient:
    return SSOClient(
        base_url=SSO_URL,
        platform_id=PLATFORM,
        redirect_uri=REDIRECT_URI,
        timeout=timeout,
        transport=httpx.MockTransport(handler),
        breaker=CircuitBreaker(
            "identity_service", CircuitBreakerConfig(failure_threshold=failure_threshold)
        ),
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def identity() -> FakeIdentityService:
    return FakeIdentityService()


@pytest.fixture
def sso_client(identity: FakeIdentityService) -> SSOClient:
    return make_client(identity.handler)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
