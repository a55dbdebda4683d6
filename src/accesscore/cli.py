"""Administrative CLI.

``accessportal-bootstrap apply FILE`` writes role claims for a static list of
identities with infrastructure credentials, bypassing the endpoint's admin
check. It exists to bootstrap the first admin.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import yaml

from . import __version__
from .claims import ClaimsIssuer, DocumentIdentityProvider
from .config import LogLevel, PortalConfig, load_config_from_env
from .exceptions import AccessCoreError
from .logging import setup_logging
from .models import Collections
from .store import DocumentStore, create_store
from .tokens import IdentityTokenIssuer

logger = logging.getLogger(__name__)


def _setup_logging(config: PortalConfig, verbose: bool) -> None:
    if verbose:
        config = config.model_copy(update={"log_level": LogLevel.DEBUG.value})
    setup_logging(config, json_format=False)


def load_entries(path: str) -> list[dict[str, Any]]:
    """Read a YAML or JSON list of ``{uid, claims}`` entries."""
    text = Path(path).read_text(encoding="utf-8")
    try:
        data = json.loads(text) if path.endswith(".json") else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise click.ClickException(f"Cannot parse {path}: {e}")

    if isinstance(data, dict) and "users" in data:
        data = data["users"]
    if not isinstance(data, list):
        raise click.ClickException(f"{path} must contain a list of {{uid, claims}} entries")
    for index, entry in enumerate(data):
        if not isinstance(entry, dict) or "uid" not in entry:
            raise click.ClickException(f"Entry #{index} has no 'uid'")
    return data


async def apply_entries(store: DocumentStore, issuer: ClaimsIssuer, entries: list[dict[str, Any]]) -> tuple[int, int]:
    """Set claims and mirror role fields onto each profile.

    Returns:
        (success count, failure count)
    """
    success = failures = 0
    for entry in entries:
        uid = entry.get("uid")
        try:
            claims = await issuer.apply_claims(uid, entry.get("claims"))
            click.echo(f"SUCCESS (claims): {json.dumps(claims.to_wire())} set for {uid}")
            await store.update(
                Collections.USERS,
                uid,
                {"isAdmin": claims.is_admin, "isTechLead": claims.is_tech_lead, "teamId": claims.team_id},
            )
            click.echo(f"SUCCESS (profile): updated {uid}")
            success += 1
        except AccessCoreError as e:
            logger.error("Bootstrap failed for %s: [%s] %s", uid, e.code, e.message)
            click.echo(f"ERROR for {uid}: {e.message}", err=True)
            failures += 1
    return success, failures


async def _run_apply(config: PortalConfig, entries: list[dict[str, Any]]) -> tuple[int, int]:
    store = create_store(config)
    provider = DocumentIdentityProvider(
        store,
        IdentityTokenIssuer(ttl_s=config.security.token_ttl_seconds, issuer=config.security.token_issuer),
    )
    try:
        return await apply_entries(store, ClaimsIssuer(provider, store), entries)
    finally:
        await store.close()


# ======================================================================
# Root group
# ======================================================================


@click.group()
@click.version_option(version=__version__, prog_name="accessportal")
def main() -> None:
    """Access portal administration."""


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--verbose", is_flag=True, help="Enable DEBUG logging.")
def apply(path: str, verbose: bool) -> None:
    """Apply role claims from a YAML/JSON list of {uid, claims}."""
    config = load_config_from_env()
    _setup_logging(config, verbose)

    entries = load_entries(path)
    click.echo(f"Starting to set custom claims for {len(entries)} users...")
    success, failures = asyncio.run(_run_apply(config, entries))
    click.echo(f"Finished setting claims. Success: {success}, Failures: {failures}.")
    if failures:
        sys.exit(1)


@main.command()
@click.option("--verbose", is_flag=True, help="Enable DEBUG logging.")
def serve(verbose: bool) -> None:
    """Run the gRPC claims endpoint."""
    from .server import serve as run_server

    config = load_config_from_env()
    _setup_logging(config, verbose)
    asyncio.run(run_server(config))


if __name__ == "__main__":
    main()
