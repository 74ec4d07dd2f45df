"""
Tests for the server-side guard chain.
"""

import pytest
from conftest import SSO_URL

from fanz_sso.core.errors import ErrorCode
from fanz_sso.server.guards import (
    AuthGuards,
    GuardChain,
    GuardContext,
    GuardOrderError,
    extract_bearer,
)


@pytest.fixture
def guards(sso_client):
    return AuthGuards(sso_client)


def context_for(token=None, header=None):
    authorization = header if header is not None else (f"Bearer {token}" if token else None)
    return GuardContext(authorization=authorization, client_ip="10.0.0.1", path="/test")


class TestExtractBearer:
    """Test Authorization header parsing"""

    def test_well_formed(self):
        assert extract_bearer("Bearer abc.def") == "abc.def"

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Bearer ", "Basic abc", "bearer abc"])
    def test_malformed(self, header):
        assert extract_bearer(header) is None


class TestRequireAuth:
    """Test bearer token authentication"""

    @pytest.mark.asyncio
    async def test_missing_header(self, guards):
        """Test no header is NO_TOKEN"""
        rejection = await guards.require_auth()(context_for())

        assert rejection.status_code == 401
        assert rejection.body() == {"error": "Authentication required", "code": "NO_TOKEN"}

    @pytest.mark.asyncio
    async def test_malformed_header(self, guards, identity):
        """Test a non-Bearer header is NO_TOKEN without contacting the service"""
        rejection = await guards.require_auth()(context_for(header="Basic dXNlcjpwdw=="))

        assert rejection.code == ErrorCode.NO_TOKEN
        assert identity.calls == []

    @pytest.mark.asyncio
    async def test_invalid_token(self, guards):
        """Test a rejected token is INVALID_TOKEN"""
        rejection = await guards.require_auth()(context_for("bogus"))

        assert rejection.status_code == 401
        assert rejection.body() == {"error": "Invalid or expired token", "code": "INVALID_TOKEN"}

    @pytest.mark.asyncio
    async def test_valid_token_attaches_user(self, guards, identity):
        """Test success attaches user and token to the context"""
        identity.add_user("u1")
        access, _ = identity.issue("u1")
        context = context_for(access)

        assert await guards.require_auth()(context) is None
        assert context.user.id == "u1"
        assert context.token == access

    @pytest.mark.asyncio
    async def test_unreachable_fails_closed(self, guards, identity):
        """Test an unreachable service yields 503, not 401"""
        identity.down = True

        rejection = await guards.require_auth()(context_for("tok"))

        assert rejection.status_code == 503
        assert rejection.code == ErrorCode.IDENTITY_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_garbled_user_record_fails_closed(self, guards, identity):
        """Test an unparseable user from the service yields 503 instead of an error"""
        identity.add_user("u1", roles=[{"name": "admin"}])
        access, _ = identity.issue("u1")
        context = context_for(access)

        rejection = await guards.require_auth()(context)

        assert rejection.status_code == 503
        assert context.user is None


class TestOptionalAuth:
    """Test optional authentication"""

    @pytest.mark.asyncio
    async def test_never_rejects(self, guards, identity):
        """Test missing, invalid and unreachable cases all pass without a user"""
        for context in (context_for(), context_for("bogus"), context_for(header="Basic x")):
            assert await guards.optional_auth()(context) is None
            assert context.user is None

        identity.down = True
        context = context_for("tok")
        assert await guards.optional_auth()(context) is None
        assert context.user is None

    @pytest.mark.asyncio
    async def test_attaches_user_when_valid(self, guards, identity):
        identity.add_user("u1")
        access, _ = identity.issue("u1")
        context = context_for(access)

        await guards.optional_auth()(context)

        assert context.user.id == "u1"


async def authed_context(guards, identity, **overrides):
    identity.add_user("u1", **overrides)
    access, _ = identity.issue("u1")
    context = context_for(access)
    assert await guards.require_auth()(context) is None
    return context


class TestGates:
    """Test user-dependent gates"""

    @pytest.mark.asyncio
    async def test_age_not_verified(self, guards, identity):
        """Test an unverified user gets AGE_NOT_VERIFIED with the verify URL"""
        context = await authed_context(guards, identity, age_verified=False)

        rejection = await guards.require_age_verification()(context)

        assert rejection.status_code == 403
        assert rejection.body() == {
            "error": "Age verification required",
            "code": "AGE_NOT_VERIFIED",
            "verifyUrl": f"{SSO_URL}/verify/age",
        }

    @pytest.mark.asyncio
    async def test_age_verified_passes(self, guards, identity):
        context = await authed_context(guards, identity)
        assert await guards.require_age_verification()(context) is None

    @pytest.mark.asyncio
    async def test_role_forbidden(self, guards, identity):
        """Test a missing role is FORBIDDEN with the required roles"""
        context = await authed_context(guards, identity, roles=["fan"])

        rejection = await guards.require_role("moderator", "admin")(context)

        assert rejection.status_code == 403
        assert rejection.body() == {
            "error": "Insufficient permissions",
            "code": "FORBIDDEN",
            "required": ["moderator", "admin"],
        }

    @pytest.mark.asyncio
    async def test_role_any_of(self, guards, identity):
        """Test holding any one of the roles passes"""
        context = await authed_context(guards, identity, roles=["creator"])
        assert await guards.require_role("moderator", "creator")(context) is None

    @pytest.mark.asyncio
    async def test_admin_passes_every_role(self, guards, identity):
        """Test admin satisfies any role requirement"""
        context = await authed_context(guards, identity, roles=["admin"])
        assert await guards.require_role("moderator")(context) is None

    def test_role_requires_arguments(self, guards):
        with pytest.raises(ValueError):
            guards.require_role()

    @pytest.mark.asyncio
    async def test_platform_access_denied(self, guards, identity):
        """Test a user without the platform gets the subscribe link"""
        context = await authed_context(guards, identity, platform_access=["fanzdash"])

        rejection = await guards.require_platform_access("boyfanz")(context)

        assert rejection.status_code == 403
        assert rejection.body() == {
            "error": "Platform access required",
            "code": "NO_PLATFORM_ACCESS",
            "platform": "boyfanz",
            "subscribeUrl": f"{SSO_URL}/subscribe/boyfanz",
        }

    @pytest.mark.asyncio
    async def test_platform_access_all(self, guards, identity):
        """Test the 'all' sentinel grants every platform"""
        context = await authed_context(guards, identity, platform_access=["all"])
        assert await guards.require_platform_access("boyfanz")(context) is None

    @pytest.mark.asyncio
    async def test_not_creator(self, guards, identity):
        """Test a non-creator gets the apply link"""
        context = await authed_context(guards, identity, creator_status="none")

        rejection = await guards.require_creator()(context)

        assert rejection.code == ErrorCode.NOT_CREATOR
        assert rejection.extra == {"applyUrl": f"{SSO_URL}/creator/apply"}

    @pytest.mark.asyncio
    async def test_pending_creator(self, guards, identity):
        """Test a pending creator passes the creator gate but not the verified gate"""
        context = await authed_context(guards, identity, creator_status="pending")

        assert await guards.require_creator()(context) is None
        rejection = await guards.require_verified_creator()(context)

        assert rejection.status_code == 403
        assert rejection.body() == {
            "error": "Verified creator account required",
            "code": "CREATOR_NOT_VERIFIED",
            "status": "pending",
            "verifyUrl": f"{SSO_URL}/creator/verify",
        }

    @pytest.mark.asyncio
    async def test_verified_creator(self, guards, identity):
        context = await authed_context(guards, identity, creator_status="verified")
        assert await guards.require_verified_creator()(context) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "factory",
        [
            lambda g: g.require_age_verification(),
            lambda g: g.require_role("admin"),
            lambda g: g.require_platform_access("fanzdash"),
            lambda g: g.require_creator(),
            lambda g: g.require_verified_creator(),
        ],
    )
    async def test_no_user_fails_closed(self, guards, factory):
        """Test every gate rejects with NO_USER when no user is attached"""
        rejection = await factory(guards)(context_for())

        assert rejection.status_code == 401
        assert rejection.body() == {"error": "Authentication required", "code": "NO_USER"}


class TestGuardChain:
    """Test chain ordering and execution"""

    def test_gate_without_auth_is_refused(self, guards):
        """Test a user-dependent guard first in the chain is refused"""
        with pytest.raises(GuardOrderError):
            GuardChain(guards.require_age_verification(), guards.require_auth())

    def test_gate_after_optional_auth_allowed(self, guards):
        chain = GuardChain(guards.optional_auth(), guards.require_role("fan"))
        assert len(chain) == 2

    def test_empty_chain(self):
        assert len(GuardChain()) == 0

    @pytest.mark.asyncio
    async def test_first_rejection_wins(self, guards, identity):
        """Test the chain stops at the first rejection"""
        identity.add_user("u1", age_verified=False, roles=["fan"])
        access, _ = identity.issue("u1")
        chain = GuardChain(
            guards.require_auth(),
            guards.require_age_verification(),
            guards.require_role("admin"),
        )

        rejection = await chain.run(context_for(access))

        assert rejection.code == ErrorCode.AGE_NOT_VERIFIED

    @pytest.mark.asyncio
    async def test_no_token_short_circuits(self, guards):
        """Test later guards do not run after an auth rejection"""
        chain = GuardChain(guards.require_auth(), guards.require_role("admin"))

        rejection = await chain.run(context_for())

        assert rejection.code == ErrorCode.NO_TOKEN

    @pytest.mark.asyncio
    async def test_all_pass(self, guards, identity):
        identity.add_user("u1", roles=["moderator"])
        access, _ = identity.issue("u1")
        chain = GuardChain(guards.require_auth(), guards.require_role("moderator"))

        assert await chain.run(context_for(access)) is None


class TestValidationCache:
    """Test the optional cache of successful validations"""

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, guards, identity):
        identity.add_user("u1")
        access, _ = identity.issue("u1")

        await guards.validate(access)
        await guards.validate(access)

        assert identity.calls_to("/auth/validate") == 2

    @pytest.mark.asyncio
    async def test_valid_results_cached(self, sso_client, identity):
        """Test a cached Valid result avoids a second call"""
        guards = AuthGuards(sso_client, cache_ttl=60)
        identity.add_user("u1")
        access, _ = identity.issue("u1")

        await guards.validate(access)
        await guards.validate(access)

        assert identity.calls_to("/auth/validate") == 1

    @pytest.mark.asyncio
    async def test_invalid_results_not_cached(self, sso_client, identity):
        """Test rejections are always re-checked"""
        guards = AuthGuards(sso_client, cache_ttl=60)

        await guards.validate("bogus")
        await guards.validate("bogus")

        assert identity.calls_to("/auth/validate") == 2

    @pytest.mark.asyncio
    async def test_clear_cache(self, sso_client, identity):
        guards = AuthGuards(sso_client, cache_ttl=60)
        identity.add_user("u1")
        access, _ = identity.issue("u1")

        await guards.validate(access)
        guards.clear_cache()
        await guards.validate(access)

        assert identity.calls_to("/auth/validate") == 2


class TestScenarios:
    """Test end-to-end guard behaviors for representative users"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("required", ["creator", "moderator", "admin"])
    async def test_admin_passes_fan_does_not(self, guards, identity, required):
        """Test admin passes every role requirement and a fan passes none"""
        identity.add_user("admin", roles=["admin"])
        identity.add_user("fan", roles=["fan"])
        admin_token, _ = identity.issue("admin")
        fan_token, _ = identity.issue("fan")
        chain = GuardChain(guards.require_auth(), guards.require_role(required))

        assert await chain.run(context_for(admin_token)) is None
        rejection = await chain.run(context_for(fan_token))
        assert rejection.code == ErrorCode.FORBIDDEN

    @pytest.mark.asyncio
    async def test_other_platform_subscriber(self, guards, identity):
        """Test a girlfanz-only user hitting a boyfanz route gets the subscribe link"""
        identity.add_user("u1", platform_access=["girlfanz"])
        access, _ = identity.issue("u1")
        chain = GuardChain(guards.require_auth(), guards.require_platform_access("boyfanz"))

        rejection = await chain.run(context_for(access))

        assert rejection.status_code == 403
        assert rejection.code == ErrorCode.NO_PLATFORM_ACCESS
        assert rejection.extra["subscribeUrl"] == f"{SSO_URL}/subscribe/boyfanz"
