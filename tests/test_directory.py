"""Tests for profiles, services, contacts and caller resolution."""

from __future__ import annotations

import pytest

from accesscore.directory import Directory, resolve_caller
from accesscore.exceptions import (
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
    UnauthenticatedError,
)
from accesscore.models import Collections, IdentityRecord, RoleClaims
from accesscore.permissions import RoleSnapshot
from accesscore.tokens import IdentityToken


@pytest.fixture
def directory(store) -> Directory:
    return Directory(store)


def _token(uid: str, **claims) -> IdentityToken:
    return IdentityToken(token_id=f"tok-{uid}", uid=uid, claims=RoleClaims(**claims))


class TestResolveCaller:
    """Tests for resolve_caller."""

    @pytest.mark.asyncio
    async def test_anonymous(self, store) -> None:
        with pytest.raises(UnauthenticatedError):
            await resolve_caller(store, None)

    @pytest.mark.asyncio
    async def test_snapshot_passthrough(self, store) -> None:
        snap = RoleSnapshot(uid="u1")
        assert await resolve_caller(store, snap) is snap

    @pytest.mark.asyncio
    async def test_membership_from_profile(self, store, seed) -> None:
        await seed.profile("u1", team_id="t1", is_admin=True)
        snap = await resolve_caller(store, _token("u1"))
        assert snap.team_id == "t1"
        assert snap.is_admin is False

    @pytest.mark.asyncio
    async def test_lead_collects_led_teams(self, store, seed) -> None:
        await seed.team("t1", "lead")
        await seed.team("t2", "lead")
        await seed.team("t3", "someone-else")
        snap = await resolve_caller(store, _token("lead", is_tech_lead=True, team_id="t1"))
        assert snap.led_team_ids == frozenset({"t1", "t2"})


class TestProfiles:
    """Tests for profile bootstrap and listing."""

    @pytest.mark.asyncio
    async def test_ensure_profile_creates_default(self, directory, store) -> None:
        identity = IdentityRecord(uid="u1", email="u1@example.com", display_name="U One")
        profile = await directory.ensure_profile(identity)

        assert profile.uid == "u1"
        assert profile.display_name == "U One"
        assert (profile.is_admin, profile.is_tech_lead, profile.team_id) == (False, False, None)
        assert profile.created_at is not None

    @pytest.mark.asyncio
    async def test_ensure_profile_never_overwrites(self, directory, seed) -> None:
        await seed.profile("u1", team_id="t1", is_tech_lead=True)
        profile = await directory.ensure_profile(_token("u1"))
        assert profile.is_tech_lead is True
        assert profile.team_id == "t1"

    @pytest.mark.asyncio
    async def test_get_missing_profile(self, directory) -> None:
        with pytest.raises(NotFoundError):
            await directory.get_profile("ghost")

    @pytest.mark.asyncio
    async def test_list_profiles_admin_only(self, directory, seed, admin) -> None:
        await seed.profile("bob")
        await seed.profile("alice")
        assert [p.uid for p in await directory.list_profiles(admin)] == ["alice", "bob"]
        with pytest.raises(PermissionDeniedError):
            await directory.list_profiles(RoleSnapshot(uid="bob"))

    @pytest.mark.asyncio
    async def test_list_team_members(self, directory, seed) -> None:
        await seed.profile("a", team_id="t1")
        await seed.profile("b", team_id="t2")
        assert [p.uid for p in await directory.list_team_members("t1")] == ["a"]


class TestServices:
    """Tests for the service catalog."""

    @pytest.mark.asyncio
    async def test_create_update(self, directory, admin) -> None:
        service = await directory.create_service(admin, "Jira", "Issue tracker")
        assert service.id

        updated = await directory.update_service(admin, service.id, name="Jira Cloud")
        assert updated.name == "Jira Cloud"
        assert updated.description == "Issue tracker"

    @pytest.mark.asyncio
    async def test_non_admin_denied(self, directory) -> None:
        with pytest.raises(PermissionDeniedError):
            await directory.create_service(RoleSnapshot(uid="u1", team_id="t1"), "Jira")

    @pytest.mark.asyncio
    async def test_blank_name(self, directory, admin) -> None:
        with pytest.raises(InvalidArgumentError):
            await directory.create_service(admin, "")

    @pytest.mark.asyncio
    async def test_update_missing(self, directory, admin) -> None:
        with pytest.raises(NotFoundError):
            await directory.update_service(admin, "nope", name="X")

    @pytest.mark.asyncio
    async def test_delete_removes_from_teams(self, directory, seed, store, admin) -> None:
        await seed.service("s1")
        await seed.team("t1", "lead", ("s1", "s2"))
        await seed.team("t2", "lead", ("s2",))

        touched = await directory.delete_service(admin, "s1")

        assert touched == ["t1"]
        assert await store.get(Collections.SERVICES, "s1") is None
        assert (await store.get(Collections.TEAMS, "t1"))["availableServiceIds"] == ["s2"]

    @pytest.mark.asyncio
    async def test_available_services(self, directory, seed, admin) -> None:
        for sid, name in (("s1", "Alpha"), ("s2", "Beta"), ("s3", "Gamma")):
            await seed.service(sid, name)
        await seed.team("t1", "lead", ("s3", "s1"))
        await seed.profile("u1", team_id="t1")
        await seed.profile("loner")

        member = await directory.list_available_services(_token("u1"))
        assert [s.name for s in member] == ["Alpha", "Gamma"]
        assert await directory.list_available_services(_token("loner")) == []
        assert len(await directory.list_available_services(admin)) == 3


class TestContacts:
    """Tests for contacts."""

    @pytest.mark.asyncio
    async def test_visibility(self, directory, seed, admin) -> None:
        await seed.profile("u1", team_id="t1")
        await directory.create_contact(admin, "Helpdesk", "https://help", order=2)
        await directory.create_contact(admin, "Team chat", "https://chat/t1", order=1, team_id="t1")
        await directory.create_contact(admin, "Other team", "https://chat/t2", order=0, team_id="t2")

        visible = await directory.list_contacts(_token("u1"))
        assert [c.name for c in visible] == ["Team chat", "Helpdesk"]
        assert len(await directory.list_contacts(admin)) == 3

    @pytest.mark.asyncio
    async def test_update_and_delete(self, directory, admin) -> None:
        contact = await directory.create_contact(admin, "Helpdesk", "https://help", team_id="t1")

        updated = await directory.update_contact(admin, contact.id, order=5, team_id="")
        assert updated.order == 5
        assert updated.team_id is None

        await directory.delete_contact(admin, contact.id)
        with pytest.raises(NotFoundError):
            await directory.delete_contact(admin, contact.id)

    @pytest.mark.asyncio
    async def test_unknown_field(self, directory, admin) -> None:
        contact = await directory.create_contact(admin, "Helpdesk", "https://help")
        with pytest.raises(InvalidArgumentError):
            await directory.update_contact(admin, contact.id, colour="red")
