"""Role snapshots, resources and decisions for the authorization gate.

Provides:
- ``Decision``: allow / deny.
- ``RoleSnapshot``: the actor's roles as taken from validated claims.
- ``Resource``: the facts about the target that scoped rules need.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .constants import Role


class Decision:
    """Outcome of an authorization check."""

    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class RoleSnapshot:
    """Actor roles at decision time.

    Role flags come from the verified claim set, never from a profile
    document the client could have supplied. ``team_id`` is the actor's
    team; ``led_team_ids`` lists every team whose ``techLeadId`` is the
    actor (one person may lead several teams).
    """

    uid: str
    is_admin: bool = False
    is_tech_lead: bool = False
    team_id: Optional[str] = None
    led_team_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def authenticated(self) -> bool:
        return bool(self.uid)

    @property
    def role(self) -> str:
        """Highest tier held."""
        if self.is_admin:
            return Role.ADMIN
        if self.is_tech_lead:
            return Role.TECH_LEAD
        return Role.USER

    @property
    def scoped_team_ids(self) -> frozenset[str]:
        """Teams whose members' requests this actor may act on as a tech lead."""
        if not self.is_tech_lead:
            return frozenset()
        teams = set(self.led_team_ids)
        if self.team_id:
            teams.add(self.team_id)
        return frozenset(teams)


@dataclass(frozen=True)
class Resource:
    """Target of an action.

    - owner_id / owner_team_id: owner of an access request and their team
    - service_id: service being requested
    - available_service_ids: services offered by the actor's team
    """

    owner_id: Optional[str] = None
    owner_team_id: Optional[str] = None
    service_id: Optional[str] = None
    available_service_ids: frozenset[str] = field(default_factory=frozenset)


__all__ = ["Decision", "Resource", "RoleSnapshot"]
