"""
Authorization policy: pure predicates over a User.

No I/O, total over every User value. Both the SSO client helpers and the
server guards delegate here so the admin rule lives in one place.
"""

from __future__ import annotations

from collections.abc import Iterable

from .models import CreatorStatus, User

ADMIN_ROLE = "admin"
ALL_PLATFORMS = "all"

# fan < creator < moderator < admin
ROLE_HIERARCHY: dict[str, int] = {
    "fan": 0,
    "creator": 1,
    "moderator": 2,
    ADMIN_ROLE: 3,
}


def is_admin(user: User) -> bool:
    """Admins satisfy every role check."""
    return ADMIN_ROLE in user.roles


def has_role(user: User, role: str) -> bool:
    return role in user.roles or is_admin(user)


def has_any_role(user: User, roles: Iterable[str]) -> bool:
    """True if the user holds at least one of ``roles`` or is an admin."""
    return is_admin(user) or not user.roles.isdisjoint(roles)


def role_level(role: str) -> int:
    """Position of a role on the ladder; unknown roles rank below fan."""
    return ROLE_HIERARCHY.get(role, -1)


def has_role_at_least(user: User, role: str) -> bool:
    """Ladder comparison: a moderator satisfies ``creator``, not ``admin``.

    An unknown required role can only be satisfied by an admin.
    """
    if is_admin(user):
        return True
    if role not in ROLE_HIERARCHY:
        return False
    required = ROLE_HIERARCHY[role]
    return any(role_level(held) >= required for held in user.roles)


def has_platform_access(user: User, platform_id: str) -> bool:
    return platform_id in user.platform_access or ALL_PLATFORMS in user.platform_access


def is_age_verified(user: User) -> bool:
    return user.age_verified is True


def is_creator(user: User) -> bool:
    """Pending and verified creators both count; verification is a separate gate."""
    return user.creator_status != CreatorStatus.NONE


def is_verified_creator(user: User) -> bool:
    return user.creator_status == CreatorStatus.VERIFIED
