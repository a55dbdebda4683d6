"""Profiles, services and contacts.

Also hosts ``resolve_caller``, which turns a verified identity token into
the role snapshot the gate needs. Role flags always come from the token's
claims; the profile is read only for team membership, which sanitized
claims do not carry for plain users.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Union

from .claims import Caller
from .exceptions import InvalidArgumentError, NotFoundError, UnauthenticatedError
from .models import Collections, Contact, IdentityRecord, Profile, Service, Team
from .permissions import Actions, RoleSnapshot, require
from .store import DOCUMENT_ID, SERVER_TIMESTAMP, DocumentStore, Filter, Transaction, run_mutation
from .tokens import IdentityToken

logger = logging.getLogger(__name__)


async def led_team_ids(store: DocumentStore, uid: str) -> frozenset[str]:
    teams = await store.query(Collections.TEAMS, [Filter("techLeadId", "==", uid)])
    return frozenset(t["id"] for t in teams)


async def resolve_caller(store: DocumentStore, caller: Caller) -> RoleSnapshot:
    """Role snapshot for ``caller``.

    Raises:
        UnauthenticatedError: no caller
    """
    if isinstance(caller, RoleSnapshot):
        return caller
    if not isinstance(caller, IdentityToken):
        raise UnauthenticatedError()

    membership: Optional[str] = None
    if not caller.claims.team_id:
        profile = await store.get(Collections.USERS, caller.uid)
        membership = profile.get("teamId") if profile else None

    led: frozenset[str] = frozenset()
    if caller.claims.is_tech_lead:
        led = await led_team_ids(store, caller.uid)

    return caller.snapshot(membership_team_id=membership, led_team_ids=led)


def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgumentError(f"'{field}' must be a non-empty string.", field=field)
    return value.strip()


class Directory:
    """Profile bootstrap plus admin-owned services and contacts."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    # ── Profiles ────────────────────────────────────────

    async def ensure_profile(self, identity: Union[IdentityRecord, IdentityToken]) -> Profile:
        """Create the default profile on first sign-in; never overwrite one."""
        uid = identity.uid
        fields = {
            "displayName": identity.display_name,
            "email": identity.email,
            "photoUrl": identity.photo_url,
            "isAdmin": False,
            "isTechLead": False,
            "teamId": None,
            "createdAt": SERVER_TIMESTAMP,
        }

        async def _ensure(txn: Transaction) -> bool:
            if await txn.get(Collections.USERS, uid) is not None:
                return False
            txn.create(Collections.USERS, fields, doc_id=uid)
            return True

        created = await run_mutation(
            self._store, _ensure, path=f"{Collections.USERS}/{uid}", operation="create", actor=uid
        )
        if created:
            logger.info("Created profile for %s", uid)
        return await self.get_profile(uid)

    async def get_profile(self, uid: str) -> Profile:
        doc = await self._store.get(Collections.USERS, uid)
        if doc is None:
            raise NotFoundError(f"No profile {uid}", uid=uid)
        return Profile.from_document(doc)

    async def list_profiles(self, caller: Caller) -> list[Profile]:
        require(await resolve_caller(self._store, caller), Actions.EDIT_USER_ROLE)
        docs = await self._store.query(Collections.USERS, order_by="displayName")
        return [Profile.from_document(d) for d in docs]

    async def list_team_members(self, team_id: str) -> list[Profile]:
        docs = await self._store.query(Collections.USERS, [Filter("teamId", "==", team_id)])
        return [Profile.from_document(d) for d in docs]

    # ── Services ────────────────────────────────────────

    async def create_service(self, caller: Caller, name: str, description: str = "") -> Service:
        actor = require(await resolve_caller(self._store, caller), Actions.MANAGE_SERVICE)
        service = Service(name=_require_text(name, "name"), description=description or "")
        data = service.to_document()

        async def _create(txn: Transaction) -> str:
            return txn.create(Collections.SERVICES, data)

        service.id = await run_mutation(
            self._store,
            _create,
            path=Collections.SERVICES,
            operation="create",
            actor=actor.uid,
            request_data=data,
        )
        logger.info("Service %s created", service.id, extra={"actor_id": actor.uid})
        return service

    async def update_service(
        self,
        caller: Caller,
        service_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Service:
        actor = require(await resolve_caller(self._store, caller), Actions.MANAGE_SERVICE)
        changes: dict[str, Any] = {}
        if name is not None:
            changes["name"] = _require_text(name, "name")
        if description is not None:
            changes["description"] = description

        async def _update(txn: Transaction) -> None:
            if await txn.get(Collections.SERVICES, service_id) is None:
                raise NotFoundError(f"No service {service_id}", service_id=service_id)
            txn.update(Collections.SERVICES, service_id, changes)

        await run_mutation(
            self._store,
            _update,
            path=f"{Collections.SERVICES}/{service_id}",
            operation="update",
            actor=actor.uid,
            request_data=changes,
        )
        doc = await self._store.get(Collections.SERVICES, service_id)
        return Service.from_document(doc)

    async def delete_service(self, caller: Caller, service_id: str) -> list[str]:
        """Delete a service and drop it from every team offering it.

        Returns the ids of the teams that were updated.
        """
        actor = require(await resolve_caller(self._store, caller), Actions.MANAGE_SERVICE)

        async def _delete(txn: Transaction) -> list[str]:
            if await txn.get(Collections.SERVICES, service_id) is None:
                raise NotFoundError(f"No service {service_id}", service_id=service_id)
            teams = await txn.query(Collections.TEAMS)
            touched = []
            txn.delete(Collections.SERVICES, service_id)
            for team in teams:
                offered = team.get("availableServiceIds") or []
                if service_id in offered:
                    txn.update(
                        Collections.TEAMS,
                        team["id"],
                        {"availableServiceIds": [s for s in offered if s != service_id]},
                    )
                    touched.append(team["id"])
            return touched

        touched = await run_mutation(
            self._store,
            _delete,
            path=f"{Collections.SERVICES}/{service_id}",
            operation="delete",
            actor=actor.uid,
        )
        logger.info(
            "Service %s deleted (removed from %d teams)",
            service_id,
            len(touched),
            extra={"actor_id": actor.uid},
        )
        return touched

    async def list_services(self) -> list[Service]:
        docs = await self._store.query(Collections.SERVICES, order_by="name")
        return [Service.from_document(d) for d in docs]

    async def list_available_services(self, caller: Caller) -> list[Service]:
        """Admins see the whole catalog; members see their team's services."""
        actor = await resolve_caller(self._store, caller)
        if actor.is_admin:
            return await self.list_services()
        if not actor.team_id:
            return []

        team_doc = await self._store.get(Collections.TEAMS, actor.team_id)
        if team_doc is None:
            logger.warning("Profile %s references missing team %s", actor.uid, actor.team_id)
            return []
        team = Team.from_document(team_doc)
        if not team.available_service_ids:
            return []
        docs = await self._store.query(
            Collections.SERVICES,
            [Filter(DOCUMENT_ID, "in", list(team.available_service_ids))],
            order_by="name",
        )
        return [Service.from_document(d) for d in docs]

    # ── Contacts ────────────────────────────────────────

    async def create_contact(
        self,
        caller: Caller,
        name: str,
        url: str,
        *,
        order: int = 0,
        team_id: Optional[str] = None,
    ) -> Contact:
        actor = require(await resolve_caller(self._store, caller), Actions.MANAGE_CONTACT)
        contact = Contact(
            name=_require_text(name, "name"),
            url=_require_text(url, "url"),
            order=order,
            team_id=team_id or None,
        )
        data = contact.to_document()

        async def _create(txn: Transaction) -> str:
            return txn.create(Collections.CONTACTS, data)

        contact.id = await run_mutation(
            self._store,
            _create,
            path=Collections.CONTACTS,
            operation="create",
            actor=actor.uid,
            request_data=data,
        )
        return contact

    async def update_contact(self, caller: Caller, contact_id: str, **changes: Any) -> Contact:
        """Update contact fields (``name``, ``url``, ``order``, ``team_id``)."""
        actor = require(await resolve_caller(self._store, caller), Actions.MANAGE_CONTACT)
        allowed = {"name", "url", "order", "team_id"}
        unknown = set(changes) - allowed
        if unknown:
            raise InvalidArgumentError(f"Unknown contact fields: {sorted(unknown)}", field=sorted(unknown)[0])

        data: dict[str, Any] = {}
        if "name" in changes:
            data["name"] = _require_text(changes["name"], "name")
        if "url" in changes:
            data["url"] = _require_text(changes["url"], "url")
        if "order" in changes:
            data["order"] = int(changes["order"])
        if "team_id" in changes:
            # Empty team means global
            data["teamId"] = changes["team_id"] or None

        async def _update(txn: Transaction) -> None:
            if await txn.get(Collections.CONTACTS, contact_id) is None:
                raise NotFoundError(f"No contact {contact_id}", contact_id=contact_id)
            txn.update(Collections.CONTACTS, contact_id, data)

        await run_mutation(
            self._store,
            _update,
            path=f"{Collections.CONTACTS}/{contact_id}",
            operation="update",
            actor=actor.uid,
            request_data=data,
        )
        return Contact.from_document(await self._store.get(Collections.CONTACTS, contact_id))

    async def delete_contact(self, caller: Caller, contact_id: str) -> None:
        actor = require(await resolve_caller(self._store, caller), Actions.MANAGE_CONTACT)

        async def _delete(txn: Transaction) -> None:
            if await txn.get(Collections.CONTACTS, contact_id) is None:
                raise NotFoundError(f"No contact {contact_id}", contact_id=contact_id)
            txn.delete(Collections.CONTACTS, contact_id)

        await run_mutation(
            self._store,
            _delete,
            path=f"{Collections.CONTACTS}/{contact_id}",
            operation="delete",
            actor=actor.uid,
        )

    async def list_contacts(self, caller: Caller) -> list[Contact]:
        """Global contacts plus those of the caller's team, ordered by ``order``."""
        actor = await resolve_caller(self._store, caller)
        visible: list[Optional[str]] = [None]
        if actor.is_admin:
            docs = await self._store.query(Collections.CONTACTS, order_by="order")
            return [Contact.from_document(d) for d in docs]
        if actor.team_id:
            visible.append(actor.team_id)
        docs = await self._store.query(
            Collections.CONTACTS,
            [Filter("teamId", "in", visible)],
            order_by="order",
        )
        return [Contact.from_document(d) for d in docs]


__all__ = ["Directory", "led_team_ids", "resolve_caller"]
