"""
Data models for the identity layer.

Separated from __init__.py to avoid circular imports between
the policy helpers, the SSO client and the server guards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Union

import jwt

logger = logging.getLogger(__name__)


class CreatorStatus(str, Enum):
    """Creator verification tier gating monetization features."""

    NONE = "none"
    PENDING = "pending"
    VERIFIED = "verified"

    @classmethod
    def parse(cls, value: Any) -> CreatorStatus:
        """Map identity service values onto the enum; anything unknown is NONE."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.NONE


def _string_set(data: dict[str, Any], key: str) -> frozenset[str]:
    """Read a list-of-strings field; missing or null means empty.

    Raises:
        ValueError: If the field is not a list of strings
    """
    value = data.get(key)
    if value is None:
        return frozenset()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"User field {key!r} must be a list of strings")
    return frozenset(value)


@dataclass(frozen=True)
class User:
    """Identity record owned by the identity service and cached locally.

    Attributes:
        id: Identity service user id
        email: Login email
        name: Display name
        avatar_url: Optional avatar image
        platform_access: Platform ids the user is entitled to ("all" for every platform)
        creator_status: Creator verification tier
        age_verified: Whether age verification completed; missing means False
        roles: Role names (fan, creator, moderator, admin, ...)
    """

    id: str
    email: str = ""
    name: str = ""
    avatar_url: str | None = None
    platform_access: frozenset[str] = field(default_factory=frozenset)
    creator_status: CreatorStatus = CreatorStatus.NONE
    age_verified: bool = False
    roles: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> User:
        """Build a user from the identity service JSON shape.

        Raises:
            ValueError: If the payload is not an object, has no id, or carries
                roles / platform_access that are not lists of strings
        """
        if not isinstance(data, dict) or data.get("id") in (None, ""):
            raise ValueError("User payload must be an object with an id")

        return cls(
            id=str(data["id"]),
            email=data.get("email") or "",
            name=data.get("name") or data.get("display_name") or "",
            avatar_url=data.get("avatar_url"),
            platform_access=_string_set(data, "platform_access"),
            creator_status=CreatorStatus.parse(data.get("creator_status")),
            age_verified=data.get("age_verified") is True,
            roles=_string_set(data, "roles"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize back to the identity service JSON shape."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "avatar_url": self.avatar_url,
            "platform_access": sorted(self.platform_access),
            "creator_status": self.creator_status.value,
            "age_verified": self.age_verified,
            "roles": sorted(self.roles),
        }


@dataclass(frozen=True)
class AuthResponse:
    """Result of a password login or an OAuth callback exchange."""

    token: str
    refresh_token: str
    user: User
    expires_in: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuthResponse:
        return cls(
            token=data["token"],
            refresh_token=data["refresh_token"],
            user=User.from_dict(data["user"]),
            expires_in=int(data.get("expires_in") or 0),
        )


@dataclass(frozen=True)
class RefreshResponse:
    """New access token; refresh_token is set when the service rotates it."""

    token: str
    expires_in: int
    refresh_token: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RefreshResponse:
        return cls(
            token=data["token"],
            expires_in=int(data.get("expires_in") or 0),
            refresh_token=data.get("refresh_token"),
        )


@dataclass(frozen=True)
class Valid:
    """The identity service accepted the token."""

    user: User
    expires_at: datetime | None = None


@dataclass(frozen=True)
class Invalid:
    """The identity service positively rejected the token."""

    reason: str = "invalid"


@dataclass(frozen=True)
class Unreachable:
    """Validation outcome unknown: timeout, connectivity or server error."""

    error: str


ValidationResult = Union[Valid, Invalid, Unreachable]


@dataclass(frozen=True)
class Session:
    """Client-owned authenticated session.

    Replaced as a whole on every change so the access token and the user are
    always observed together.
    """

    access_token: str
    refresh_token: str | None
    user: User
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or epoch seconds into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable expiry timestamp: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def token_expiry(token: str) -> datetime | None:
    """Read the ``exp`` claim of a JWT access token without verifying it.

    Only used to estimate when a session expires; authorization decisions
    always go through the identity service. Opaque tokens return None.
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return None
    exp = claims.get("exp")
    if isinstance(exp, (int, float)):
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    return None


def resolve_expiry(
    token: str, expires_in: int | None = None, now: datetime | None = None
) -> datetime | None:
    """Expiry from ``expires_in`` when the service sent one, else from the token."""
    if expires_in:
        return (now or datetime.now(timezone.utc)) + timedelta(seconds=expires_in)
    return token_expiry(token)
