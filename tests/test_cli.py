"""Tests for the bootstrap CLI."""

from __future__ import annotations

import asyncio
import json
import os
from unittest.mock import patch

import click
import pytest
from click.testing import CliRunner

from accesscore import __version__
from accesscore.claims import DocumentIdentityProvider
from accesscore.cli import load_entries, main
from accesscore.models import Collections

pytestmark = pytest.mark.usefixtures("restore_root_logger")


@pytest.fixture
def seeded(store, seed):
    async def _seed() -> None:
        provider = DocumentIdentityProvider(store)
        for uid in ("root", "lead"):
            await provider.create_user(uid)
            await seed.profile(uid)

    asyncio.run(_seed())
    return store


def _invoke(store, *args: str):
    with patch.dict(os.environ, {}, clear=True), patch("accesscore.cli.create_store", return_value=store):
        return CliRunner().invoke(main, list(args))


class TestApply:
    """Tests for ``apply``."""

    def test_applies_claims_and_profiles(self, seeded, tmp_path) -> None:
        path = tmp_path / "admins.yaml"
        path.write_text(
            "users:\n"
            "  - uid: root\n"
            "    claims: {isAdmin: true, isTechLead: false, teamId: null}\n"
            "  - uid: lead\n"
            "    claims: {isAdmin: false, isTechLead: true, teamId: core}\n"
        )

        result = _invoke(seeded, "apply", str(path))

        assert result.exit_code == 0, result.output
        assert "Starting to set custom claims for 2 users..." in result.output
        assert "Finished setting claims. Success: 2, Failures: 0." in result.output
        root = asyncio.run(seeded.get(Collections.USERS, "root"))
        assert root["isAdmin"] is True
        identity = asyncio.run(seeded.get(Collections.IDENTITIES, "lead"))
        assert identity["customClaims"] == {"isAdmin": False, "isTechLead": True, "teamId": "core"}

    def test_failures_reported(self, seeded, tmp_path) -> None:
        path = tmp_path / "admins.json"
        path.write_text(
            json.dumps(
                [
                    {"uid": "root", "claims": {"isAdmin": True}},
                    {"uid": "lead", "claims": {"isTechLead": True}},
                    {"uid": "ghost", "claims": {"isAdmin": True}},
                ]
            )
        )

        result = _invoke(seeded, "apply", str(path))

        assert result.exit_code == 1
        assert "Finished setting claims. Success: 1, Failures: 2." in result.output
        assert "ERROR for lead" in result.output
        lead = asyncio.run(seeded.get(Collections.USERS, "lead"))
        assert lead["isTechLead"] is False

    def test_unparseable_file(self, store, tmp_path) -> None:
        path = tmp_path / "broken.json"
        path.write_text("{not json")

        result = _invoke(store, "apply", str(path))

        assert result.exit_code == 1
        assert "Cannot parse" in result.output

    def test_version(self, store) -> None:
        result = _invoke(store, "--version")
        assert __version__ in result.output


class TestLoadEntries:
    """Tests for load_entries."""

    def test_plain_list(self, tmp_path) -> None:
        path = tmp_path / "users.yml"
        path.write_text("- uid: root\n  claims: {isAdmin: true}\n")
        assert load_entries(str(path)) == [{"uid": "root", "claims": {"isAdmin": True}}]

    def test_entry_without_uid(self, tmp_path) -> None:
        path = tmp_path / "users.yml"
        path.write_text("- claims: {isAdmin: true}\n")
        with pytest.raises(click.ClickException, match="no 'uid'"):
            load_entries(str(path))
