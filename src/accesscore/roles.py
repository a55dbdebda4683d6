"""Role Consistency Engine.

Keeps profile role flags consistent with team leadership:

- every profile named as a team's ``techLeadId`` has ``isTechLead = true``
- a profile is demoted only when it leads no remaining team

Each operation reads what it needs and stages all of its writes inside one
store transaction, so the "leads no other team" scan and the demotion it
decides are never split by a concurrent team write. Claims are resynced
after commit; a failed resync is reported in ``RoleChange.unsynced`` and
never rolls the documents back (claims may lag profiles briefly).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .claims import Caller, ClaimsIssuer
from .directory import led_team_ids, resolve_caller
from .exceptions import AccessCoreError, InvalidArgumentError, NotFoundError
from .logging import get_actor_logger
from .models import Collections, Profile, RoleClaims, Team
from .permissions import Actions, require
from .store import DocumentStore, Filter, Transaction, run_mutation
from .store.base import new_document_id

logger = logging.getLogger(__name__)


@dataclass
class RoleChange:
    """Outcome of a role-affecting operation.

    - promoted / demoted: profiles whose ``isTechLead`` flag flipped
    - retained: leads kept flagged because they still lead another team
    - unassigned: members whose ``teamId`` was cleared
    - unsynced: profiles whose claims could not be resynced
    - warnings: invariants an admin override left broken
    """

    team_id: Optional[str] = None
    promoted: list[str] = field(default_factory=list)
    demoted: list[str] = field(default_factory=list)
    retained: list[str] = field(default_factory=list)
    unassigned: list[str] = field(default_factory=list)
    unsynced: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Violation:
    """A broken leadership invariant found by ``audit()``."""

    kind: str
    subject_id: str
    detail: str


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgumentError(f"'{field_name}' must be a non-empty string.", field=field_name)
    return value.strip()


def _service_ids(values: Optional[Iterable[str]]) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        raise InvalidArgumentError("'availableServiceIds' must be a list of ids.", field="availableServiceIds")
    ids: list[str] = []
    for value in values:
        service_id = _require_text(value, "availableServiceIds")
        if service_id not in ids:
            ids.append(service_id)
    return ids


class RoleConsistencyEngine:
    """Admin operations on teams and roles."""

    def __init__(self, store: DocumentStore, claims: Optional[ClaimsIssuer] = None) -> None:
        self._store = store
        self._claims = claims

    # ── Teams ───────────────────────────────────────────

    async def create_team(
        self,
        caller: Caller,
        name: str,
        tech_lead_id: str,
        available_service_ids: Optional[Iterable[str]] = None,
    ) -> RoleChange:
        """Insert a team and flag its lead, atomically.

        Raises:
            PermissionDeniedError: caller is not an admin
            InvalidArgumentError: bad input or ``tech_lead_id`` has no profile
        """
        actor = require(await resolve_caller(self._store, caller), Actions.MANAGE_TEAM)
        log = get_actor_logger(__name__, actor_id=actor.uid)
        team = Team(
            name=_require_text(name, "name"),
            tech_lead_id=_require_text(tech_lead_id, "techLeadId"),
            available_service_ids=_service_ids(available_service_ids),
        )
        team.id = new_document_id()
        data = team.to_document()

        async def _create(txn: Transaction) -> RoleChange:
            profile = await txn.get(Collections.USERS, team.tech_lead_id)
            if profile is None:
                raise InvalidArgumentError(
                    f"Tech lead {team.tech_lead_id} has no profile.", field="techLeadId"
                )
            result = RoleChange(team_id=team.id)
            txn.create(Collections.TEAMS, data, doc_id=team.id)
            txn.update(Collections.USERS, team.tech_lead_id, self._promotion(profile, team.id))
            if not profile.get("isTechLead"):
                result.promoted.append(team.tech_lead_id)
            return result

        change = await run_mutation(
            self._store,
            _create,
            path=f"{Collections.TEAMS}/{team.id}",
            operation="create",
            actor=actor.uid,
            request_data=data,
        )
        log.info("Team %s created with tech lead %s", team.id, team.tech_lead_id)
        self._log_change(log, change)

        await self._resync(change, {team.tech_lead_id: team.id})
        return change

    async def update_team(
        self,
        caller: Caller,
        team_id: str,
        *,
        name: Optional[str] = None,
        tech_lead_id: Optional[str] = None,
        available_service_ids: Optional[Iterable[str]] = None,
    ) -> RoleChange:
        """Edit a team; on a lead change promote the new lead and demote the
        previous one unless they still lead another team. One transaction.

        ``None`` leaves a field unchanged.
        """
        actor = require(await resolve_caller(self._store, caller), Actions.MANAGE_TEAM)
        log = get_actor_logger(__name__, actor_id=actor.uid)
        team_id = _require_text(team_id, "teamId")

        changes: dict[str, Any] = {}
        if name is not None:
            changes["name"] = _require_text(name, "name")
        if available_service_ids is not None:
            changes["availableServiceIds"] = _service_ids(available_service_ids)
        new_lead = _require_text(tech_lead_id, "techLeadId") if tech_lead_id is not None else None

        async def _update(txn: Transaction) -> RoleChange:
            current = await txn.get(Collections.TEAMS, team_id)
            if current is None:
                raise NotFoundError(f"No team {team_id}", team_id=team_id)
            result = RoleChange(team_id=team_id)
            previous = current.get("techLeadId")

            if new_lead is None or new_lead == previous:
                txn.update(Collections.TEAMS, team_id, changes)
                return result

            new_profile = await txn.get(Collections.USERS, new_lead)
            if new_profile is None:
                raise InvalidArgumentError(f"Tech lead {new_lead} has no profile.", field="techLeadId")

            other_teams: list[str] = []
            previous_profile = None
            if previous:
                led = await txn.query(Collections.TEAMS, [Filter("techLeadId", "==", previous)])
                other_teams = [t["id"] for t in led if t["id"] != team_id]
                previous_profile = await txn.get(Collections.USERS, previous)

            txn.update(Collections.TEAMS, team_id, {**changes, "techLeadId": new_lead})
            txn.update(Collections.USERS, new_lead, self._promotion(new_profile, team_id))
            if not new_profile.get("isTechLead"):
                result.promoted.append(new_lead)

            if previous and previous_profile is None:
                result.warnings.append(f"Previous tech lead {previous} has no profile")
            elif previous and other_teams:
                result.retained.append(previous)
            elif previous:
                txn.update(Collections.USERS, previous, {"isTechLead": False})
                result.demoted.append(previous)
            return result

        change = await run_mutation(
            self._store,
            _update,
            path=f"{Collections.TEAMS}/{team_id}",
            operation="update",
            actor=actor.uid,
            request_data={**changes, **({"techLeadId": new_lead} if new_lead else {})},
        )
        self._log_change(log, change)

        resync: dict[str, Optional[str]] = {uid: team_id for uid in change.promoted}
        if new_lead:
            resync.setdefault(new_lead, team_id)
        resync.update({uid: None for uid in change.demoted + change.retained})
        await self._resync(change, resync)
        return change

    async def delete_team(self, caller: Caller, team_id: str) -> RoleChange:
        """Delete a team, clear its members' membership and demote its lead
        unless they still lead another team. One transaction.
        """
        actor = require(await resolve_caller(self._store, caller), Actions.MANAGE_TEAM)
        log = get_actor_logger(__name__, actor_id=actor.uid)
        team_id = _require_text(team_id, "teamId")

        async def _delete(txn: Transaction) -> RoleChange:
            current = await txn.get(Collections.TEAMS, team_id)
            if current is None:
                raise NotFoundError(f"No team {team_id}", team_id=team_id)
            result = RoleChange(team_id=team_id)
            lead = current.get("techLeadId")

            remaining: list[str] = []
            lead_profile = None
            if lead:
                led = await txn.query(Collections.TEAMS, [Filter("techLeadId", "==", lead)])
                remaining = sorted(t["id"] for t in led if t["id"] != team_id)
                lead_profile = await txn.get(Collections.USERS, lead)
            members = await txn.query(Collections.USERS, [Filter("teamId", "==", team_id)])

            txn.delete(Collections.TEAMS, team_id)

            lead_update: dict[str, Any] = {}
            for member in members:
                if member["id"] == lead and remaining:
                    lead_update["teamId"] = remaining[0]
                    continue
                if member["id"] == lead:
                    lead_update["teamId"] = None
                else:
                    txn.update(Collections.USERS, member["id"], {"teamId": None})
                result.unassigned.append(member["id"])

            if lead and lead_profile is None:
                result.warnings.append(f"Tech lead {lead} has no profile")
            elif lead and remaining:
                result.retained.append(lead)
            elif lead:
                lead_update["isTechLead"] = False
                result.demoted.append(lead)
            if lead_update:
                txn.update(Collections.USERS, lead, lead_update)
            return result

        change = await run_mutation(
            self._store,
            _delete,
            path=f"{Collections.TEAMS}/{team_id}",
            operation="delete",
            actor=actor.uid,
        )
        self._log_change(log, change)
        if change.unassigned:
            log.info("Cleared team %s from %d members", team_id, len(change.unassigned))

        await self._resync(change, {uid: None for uid in change.demoted + change.retained})
        return change

    # ── Direct role edits ───────────────────────────────

    async def edit_user_role(
        self,
        caller: Caller,
        uid: str,
        *,
        is_admin: bool,
        is_tech_lead: bool,
        team_id: Optional[str] = None,
    ) -> RoleChange:
        """Admin override of a profile's role fields.

        Team ``techLeadId`` references are not rewritten. Invariants the edit
        leaves broken are logged and returned as warnings; ``audit()`` lists
        them until fixed.
        """
        actor = require(await resolve_caller(self._store, caller), Actions.EDIT_USER_ROLE)
        log = get_actor_logger(__name__, actor_id=actor.uid)
        uid = _require_text(uid, "uid")
        team_id = team_id or None
        ClaimsIssuer.validate_claims(
            uid, RoleClaims(is_admin=bool(is_admin), is_tech_lead=bool(is_tech_lead), team_id=team_id)
        )
        data = {"isAdmin": bool(is_admin), "isTechLead": bool(is_tech_lead), "teamId": team_id}

        async def _edit(txn: Transaction) -> RoleChange:
            profile = await txn.get(Collections.USERS, uid)
            if profile is None:
                raise NotFoundError(f"No profile {uid}", uid=uid)
            if team_id and await txn.get(Collections.TEAMS, team_id) is None:
                raise InvalidArgumentError(f"No team {team_id}", field="teamId")
            led = sorted(
                t["id"] for t in await txn.query(Collections.TEAMS, [Filter("techLeadId", "==", uid)])
            )

            result = RoleChange(team_id=team_id)
            if led and not is_tech_lead:
                result.warnings.append(f"{uid} is still techLeadId of {led} but is no longer a tech lead")
            if is_tech_lead and team_id not in led:
                result.warnings.append(f"{uid} is a tech lead of {team_id}, which names another techLeadId")

            txn.update(Collections.USERS, uid, data)
            was_lead = bool(profile.get("isTechLead"))
            if is_tech_lead and not was_lead:
                result.promoted.append(uid)
            elif was_lead and not is_tech_lead:
                result.demoted.append(uid)
            return result

        change = await run_mutation(
            self._store,
            _edit,
            path=f"{Collections.USERS}/{uid}",
            operation="update",
            actor=actor.uid,
            request_data=data,
        )
        self._log_change(log, change)

        await self._resync(change, {uid: team_id})
        return change

    async def resync_claims(self, caller: Caller, uid: str) -> RoleClaims:
        """Re-derive claims from the profile and write them."""
        require(await resolve_caller(self._store, caller), Actions.SET_CLAIMS)
        if self._claims is None:
            raise InvalidArgumentError("No claims issuer configured", field="claims")
        claims = await self.derive_claims(_require_text(uid, "uid"))
        applied = await self._claims.apply_claims(uid, claims)
        await self._claims.refresh_token(uid)
        return applied

    async def derive_claims(self, uid: str, preferred_team: Optional[str] = None) -> RoleClaims:
        """Claims that mirror the profile.

        A lead's claim ``teamId`` is ``preferred_team`` when they lead it,
        else their membership team when they lead it, else any team they lead.
        """
        doc = await self._store.get(Collections.USERS, uid)
        if doc is None:
            raise NotFoundError(f"No profile {uid}", uid=uid)
        profile = Profile.from_document(doc)
        if not profile.is_tech_lead:
            return RoleClaims(is_admin=profile.is_admin)

        led = await led_team_ids(self._store, uid)
        if preferred_team and preferred_team in led:
            team = preferred_team
        elif profile.team_id in led:
            team = profile.team_id
        elif led:
            team = min(led)
        else:
            team = profile.team_id
        return RoleClaims(is_admin=profile.is_admin, is_tech_lead=True, team_id=team)

    # ── Audit ───────────────────────────────────────────

    async def audit(self, caller: Caller) -> list[Violation]:
        """List leadership invariants that currently do not hold."""
        require(await resolve_caller(self._store, caller), Actions.MANAGE_TEAM)
        teams = [Team.from_document(d) for d in await self._store.query(Collections.TEAMS)]
        profiles = {
            p.id: p for p in (Profile.from_document(d) for d in await self._store.query(Collections.USERS))
        }
        team_ids = {t.id for t in teams}
        leads = {t.tech_lead_id for t in teams}

        violations: list[Violation] = []
        for team in teams:
            profile = profiles.get(team.tech_lead_id)
            if profile is None:
                violations.append(
                    Violation("missing-lead-profile", team.id, f"techLeadId {team.tech_lead_id} has no profile")
                )
            elif not profile.is_tech_lead:
                violations.append(
                    Violation("lead-not-flagged", profile.id, f"leads {team.id} but isTechLead is false")
                )
        for profile in profiles.values():
            if profile.is_tech_lead and profile.id not in leads:
                violations.append(Violation("lead-without-team", profile.id, "isTechLead but leads no team"))
            if profile.team_id and profile.team_id not in team_ids:
                violations.append(
                    Violation("dangling-team", profile.id, f"teamId {profile.team_id} does not exist")
                )
        return violations

    # ── Internals ───────────────────────────────────────

    @staticmethod
    def _promotion(profile: dict[str, Any], team_id: str) -> dict[str, Any]:
        update: dict[str, Any] = {"isTechLead": True}
        if not profile.get("teamId"):
            update["teamId"] = team_id
        return update

    @staticmethod
    def _log_change(log: Any, change: RoleChange) -> None:
        for uid in change.promoted:
            log.info("Promoted %s to tech lead", uid)
        for uid in change.demoted:
            log.info("Demoted %s from tech lead", uid)
        for uid in change.retained:
            log.info("Kept %s as tech lead: still leads another team", uid)
        for warning in change.warnings:
            log.warning("Role invariant not enforced: %s", warning)

    async def _resync(self, change: RoleChange, targets: dict[str, Optional[str]]) -> None:
        if self._claims is None:
            return
        for uid, preferred in targets.items():
            try:
                claims = await self.derive_claims(uid, preferred)
                await self._claims.apply_claims(uid, claims)
                await self._claims.refresh_token(uid)
            except AccessCoreError as e:
                logger.error(
                    "Claims resync failed for %s: [%s] %s",
                    uid,
                    e.code,
                    e.message,
                    extra={"target_uid": uid},
                )
                change.unsynced.append(uid)


__all__ = ["RoleChange", "RoleConsistencyEngine", "Violation"]
