"""Tests for the Claims Issuer and the document identity provider."""

from __future__ import annotations

import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from accesscore.claims import ClaimsIssuer, DocumentIdentityProvider, as_snapshot
from accesscore.exceptions import (
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)
from accesscore.models import Collections, RoleClaims
from accesscore.permissions import RoleSnapshot
from accesscore.tokens import IdentityToken, IdentityTokenIssuer


@pytest.fixture
def provider(store) -> DocumentIdentityProvider:
    return DocumentIdentityProvider(store, IdentityTokenIssuer(ttl_s=600))


@pytest.fixture
def issuer(provider) -> ClaimsIssuer:
    return ClaimsIssuer(provider)


class TestValidateClaims:
    """Tests for claim validation and sanitization."""

    @pytest.mark.parametrize("team_id", [None, ""])
    def test_tech_lead_requires_team(self, team_id) -> None:
        with pytest.raises(FailedPreconditionError, match="Tech Lead must be assigned"):
            ClaimsIssuer.validate_claims("u1", {"isAdmin": False, "isTechLead": True, "teamId": team_id})

    @pytest.mark.parametrize("team_id", ["t1", None])
    def test_non_lead_team_dropped(self, team_id) -> None:
        claims = ClaimsIssuer.validate_claims("u1", {"isAdmin": True, "isTechLead": False, "teamId": team_id})
        assert claims == RoleClaims(is_admin=True)

    def test_lead_keeps_team(self) -> None:
        claims = ClaimsIssuer.validate_claims("u1", {"isTechLead": True, "teamId": "t1"})
        assert claims.to_wire() == {"isAdmin": False, "isTechLead": True, "teamId": "t1"}

    @pytest.mark.parametrize("uid", [None, "", "   ", 42])
    def test_uid_must_be_string(self, uid) -> None:
        with pytest.raises(InvalidArgumentError) as exc_info:
            ClaimsIssuer.validate_claims(uid, {})
        assert exc_info.value.details["field"] == "uid"

    @pytest.mark.parametrize("claims", [None, "admin", ["isAdmin"]])
    def test_claims_must_be_object(self, claims) -> None:
        with pytest.raises(InvalidArgumentError) as exc_info:
            ClaimsIssuer.validate_claims("u1", claims)
        assert exc_info.value.details["field"] == "claims"

    def test_non_boolean_flag_rejected(self) -> None:
        with pytest.raises(InvalidArgumentError):
            ClaimsIssuer.validate_claims("u1", {"isAdmin": "yes"})


class TestSetClaims:
    """Tests for the admin-only setClaims operation."""

    @pytest.mark.asyncio
    async def test_admin_sets_claims(self, issuer, provider, admin) -> None:
        await provider.create_user("u1", email="u1@example.com")
        result = await issuer.set_claims(admin, "u1", {"isAdmin": False, "isTechLead": True, "teamId": "t1"})

        assert result == {"message": "Success! User u1 has been updated."}
        record = await provider.get_user("u1")
        assert record.custom_claims == RoleClaims(is_tech_lead=True, team_id="t1")

    @pytest.mark.asyncio
    async def test_overwrites_not_merges(self, issuer, provider, admin) -> None:
        await provider.create_user("u1")
        await issuer.set_claims(admin, "u1", {"isAdmin": True, "isTechLead": True, "teamId": "t1"})
        await issuer.set_claims(admin, "u1", {"isTechLead": False})
        assert (await provider.get_user("u1")).custom_claims == RoleClaims()

    @pytest.mark.asyncio
    async def test_sanitized_claims_persisted(self, issuer, provider, admin, store) -> None:
        await provider.create_user("u1")
        await issuer.set_claims(admin, "u1", {"isAdmin": False, "isTechLead": False, "teamId": "t1"})
        doc = await store.get(Collections.IDENTITIES, "u1")
        assert doc["customClaims"]["teamId"] is None

    @pytest.mark.asyncio
    async def test_precondition_persists_nothing(self, issuer, provider, admin) -> None:
        await provider.create_user("u1")
        with pytest.raises(FailedPreconditionError):
            await issuer.set_claims(admin, "u1", {"isTechLead": True, "teamId": None})
        assert (await provider.get_user("u1")).custom_claims == RoleClaims()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "caller",
        [
            None,
            RoleSnapshot(uid="lead", is_tech_lead=True, team_id="t1"),
            RoleSnapshot(uid="user"),
        ],
    )
    async def test_non_admin_denied(self, issuer, provider, caller) -> None:
        await provider.create_user("u1")
        with pytest.raises(PermissionDeniedError):
            await issuer.set_claims(caller, "u1", {"isAdmin": True})
        assert (await provider.get_user("u1")).custom_claims == RoleClaims()

    @pytest.mark.asyncio
    async def test_admin_token_accepted(self, issuer, provider) -> None:
        await provider.create_user("u1")
        token = IdentityToken(token_id="t", uid="root", claims=RoleClaims(is_admin=True))
        await issuer.set_claims(token, "u1", {"isAdmin": True})
        assert (await provider.get_user("u1")).custom_claims.is_admin is True

    @pytest.mark.asyncio
    async def test_provider_fault_is_internal(self, admin) -> None:
        provider = MagicMock()
        provider.set_custom_claims = AsyncMock(side_effect=RuntimeError("quota exceeded for project x"))
        issuer = ClaimsIssuer(provider)

        with pytest.raises(InternalError) as exc_info:
            await issuer.set_claims(admin, "u1", {"isAdmin": True})
        assert "quota" not in exc_info.value.message
        assert exc_info.value.details == {"target": "u1"}

    @pytest.mark.asyncio
    async def test_unknown_identity_is_internal(self, issuer, admin) -> None:
        with pytest.raises(InternalError):
            await issuer.set_claims(admin, "ghost", {"isAdmin": True})


class TestProfileMirror:
    """set_claims keeps the profile and the cached token in step with the claims."""

    @pytest.fixture
    def mirroring(self, provider, store) -> ClaimsIssuer:
        return ClaimsIssuer(provider, store)

    @pytest.mark.asyncio
    async def test_admin_grant_reaches_profile(self, mirroring, provider, seed, store, admin) -> None:
        await seed.profile("u1", team_id="t1")
        await provider.create_user("u1")

        await mirroring.set_claims(admin, "u1", {"isAdmin": True})

        profile = await store.get(Collections.USERS, "u1")
        assert profile["isAdmin"] is True
        assert profile["isTechLead"] is False
        assert profile["teamId"] == "t1"

    @pytest.mark.asyncio
    async def test_lead_team_reaches_profile(self, mirroring, provider, seed, store, admin) -> None:
        await seed.profile("u1")
        await provider.create_user("u1")

        await mirroring.set_claims(admin, "u1", {"isTechLead": True, "teamId": "t2"})

        profile = await store.get(Collections.USERS, "u1")
        assert profile["isTechLead"] is True
        assert profile["teamId"] == "t2"

    @pytest.mark.asyncio
    async def test_cached_token_replaced(self, mirroring, provider, seed, admin) -> None:
        await seed.profile("u1")
        await provider.create_user("u1")
        stale = await provider.issue_token("u1")

        await mirroring.set_claims(admin, "u1", {"isAdmin": True})

        current = await provider.issue_token("u1")
        assert current.token_id != stale.token_id
        assert current.is_admin is True

    @pytest.mark.asyncio
    async def test_missing_profile_is_internal(self, mirroring, provider, admin) -> None:
        await provider.create_user("u1")
        with pytest.raises(InternalError) as exc_info:
            await mirroring.set_claims(admin, "u1", {"isAdmin": True})
        assert exc_info.value.details == {"target": "u1"}


class TestApplyClaims:
    """Tests for the privileged write without a caller check."""

    @pytest.mark.asyncio
    async def test_apply_without_caller(self, issuer, provider) -> None:
        await provider.create_user("root")
        applied = await issuer.apply_claims("root", {"isAdmin": True, "isTechLead": False, "teamId": None})
        assert applied == RoleClaims(is_admin=True)

    @pytest.mark.asyncio
    async def test_apply_still_validates(self, issuer) -> None:
        with pytest.raises(FailedPreconditionError):
            await issuer.apply_claims("root", {"isTechLead": True})


class TestDocumentIdentityProvider:
    """Tests for the identity provider and token refresh."""

    @pytest.mark.asyncio
    async def test_missing_user(self, provider) -> None:
        with pytest.raises(NotFoundError):
            await provider.get_user("ghost")

    @pytest.mark.asyncio
    async def test_token_cached_until_refresh(self, provider) -> None:
        await provider.create_user("u1")
        first = await provider.issue_token("u1")
        assert await provider.issue_token("u1") is first

        await provider.set_custom_claims("u1", RoleClaims(is_admin=True))
        refreshed = await provider.issue_token("u1", force_refresh=True)
        assert refreshed.token_id != first.token_id
        assert refreshed.is_admin is True

    @pytest.mark.asyncio
    async def test_expired_tokens_dropped_from_cache(self, store) -> None:
        provider = DocumentIdentityProvider(store, IdentityTokenIssuer(ttl_s=60))
        for uid in ("u1", "u2", "u3"):
            await provider.create_user(uid)
        await provider.issue_token("u1")
        await provider.issue_token("u2")
        assert provider.cached_token_count == 2

        later = time.time() + 120
        with patch("accesscore.claims.time.time", return_value=later):
            await provider.issue_token("u3")
        assert provider.cached_token_count == 1

    @pytest.mark.asyncio
    async def test_refresh_token_carries_new_claims(self, issuer, provider, admin) -> None:
        await provider.create_user("u1")
        await provider.issue_token("u1")
        await issuer.set_claims(admin, "u1", {"isTechLead": True, "teamId": "t1"})

        token = await issuer.refresh_token("u1")
        assert token.is_tech_lead is True
        assert token.team_id == "t1"

    def test_as_snapshot(self) -> None:
        token = IdentityToken(token_id="t", uid="u1", claims=RoleClaims(is_admin=True))
        assert as_snapshot(token) == RoleSnapshot(uid="u1", is_admin=True)
        assert as_snapshot(None) is None
