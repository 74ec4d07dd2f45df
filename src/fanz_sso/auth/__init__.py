"""
Identity models and authorization policy shared by client and server.

Architecture:
- models: User, Session, AuthResponse and the ValidationResult sum type
  (Valid | Invalid | Unreachable)
- policy: pure role / platform / age / creator predicates
"""

from .models import (
    AuthResponse,
    CreatorStatus,
    Invalid,
    RefreshResponse,
    Session,
    Unreachable,
    User,
    Valid,
    ValidationResult,
    parse_timestamp,
    resolve_expiry,
    token_expiry,
)
from .policy import (
    ADMIN_ROLE,
    ALL_PLATFORMS,
    ROLE_HIERARCHY,
    has_any_role,
    has_platform_access,
    has_role,
    has_role_at_least,
    is_admin,
    is_age_verified,
    is_creator,
    is_verified_creator,
)

__all__ = [
    "ADMIN_ROLE",
    "ALL_PLATFORMS",
    "ROLE_HIERARCHY",
    "AuthResponse",
    "CreatorStatus",
    "Invalid",
    "RefreshResponse",
    "Session",
    "Unreachable",
    "User",
    "Valid",
    "ValidationResult",
    "has_any_role",
    "has_platform_access",
    "has_role",
    "has_role_at_least",
    "is_admin",
    "is_age_verified",
    "is_creator",
    "is_verified_creator",
    "parse_timestamp",
    "resolve_expiry",
    "token_expiry",
]
