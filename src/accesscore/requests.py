"""Access Request Lifecycle.

States::

    pending ──► approved_by_tech_lead ──► approved | completed
       │  └───────────────────────────► approved            (direct)
       └──────────► rejected ◄────────── approved_by_tech_lead

``approved``, ``completed`` and ``rejected`` are terminal. With the
tech-lead gate disabled, ``approved_by_tech_lead`` is unused and a tech
lead approves pending requests straight to ``approved``.

Every transition re-reads the request inside a transaction, so two
resolvers racing on one request cannot both succeed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .claims import Caller
from .config import PortalConfig
from .directory import resolve_caller
from .exceptions import (
    DuplicateRequestError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
)
from .logging import get_actor_logger
from .models import AccessRequest, Collections, RequestStatus, Team
from .permissions import Actions, Resource, RoleSnapshot, require
from .store import SERVER_TIMESTAMP, DocumentStore, Filter, SecuredReader, Transaction, run_mutation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Transition:
    admin_only: bool
    needs_gate: Optional[bool] = None  # None: valid with or without the tech-lead gate


# (from, to) -> rule
TRANSITIONS: dict[tuple[RequestStatus, RequestStatus], _Transition] = {
    (RequestStatus.PENDING, RequestStatus.APPROVED_BY_TECH_LEAD): _Transition(admin_only=False, needs_gate=True),
    (RequestStatus.PENDING, RequestStatus.APPROVED): _Transition(admin_only=True, needs_gate=True),
    (RequestStatus.APPROVED_BY_TECH_LEAD, RequestStatus.APPROVED): _Transition(admin_only=True),
    (RequestStatus.APPROVED_BY_TECH_LEAD, RequestStatus.COMPLETED): _Transition(admin_only=True),
}

# Without the gate a tech lead may approve directly
UNGATED_TRANSITIONS: dict[tuple[RequestStatus, RequestStatus], _Transition] = {
    (RequestStatus.PENDING, RequestStatus.APPROVED): _Transition(admin_only=False, needs_gate=False),
}

REJECTABLE = frozenset({RequestStatus.PENDING, RequestStatus.APPROVED_BY_TECH_LEAD})


def _status(value: Any, field: str = "targetStatus") -> RequestStatus:
    try:
        return RequestStatus(value)
    except ValueError as e:
        raise InvalidArgumentError(f"Unknown request status: {value!r}", field=field) from e


class AccessRequestLifecycle:
    """Submission, resolution and scoped listing of access requests."""

    def __init__(self, store: DocumentStore, config: Optional[PortalConfig] = None) -> None:
        self._store = store
        self._config = config or PortalConfig()
        self._reader = SecuredReader(store)

    @property
    def tech_lead_gate(self) -> bool:
        return self._config.tech_lead_gate

    # ── Submission ──────────────────────────────────────

    async def submit(
        self,
        caller: Caller,
        service_id: str,
        *,
        loaded_requests: Optional[list[AccessRequest]] = None,
    ) -> AccessRequest:
        """Create a pending request for the caller.

        ``loaded_requests`` is the caller's already-fetched request list; it
        is checked for an open duplicate before anything is written. The
        check is repeated inside the insert transaction.

        Raises:
            PermissionDeniedError: service not offered to the caller's team
            DuplicateRequestError: an open request exists (a notice)
        """
        actor = await resolve_caller(self._store, caller)
        if not isinstance(service_id, str) or not service_id:
            raise InvalidArgumentError("'serviceId' must be a non-empty string.", field="serviceId")
        log = get_actor_logger(__name__, actor_id=actor.uid)

        require(actor, Actions.SUBMIT_REQUEST, await self._submit_resource(actor, service_id))

        if loaded_requests is None:
            loaded_requests = await self._own_requests(actor.uid)
        self._check_duplicate(actor.uid, service_id, loaded_requests)

        data = {
            "userId": actor.uid,
            "serviceId": service_id,
            "status": RequestStatus.PENDING.value,
            "requestedAt": SERVER_TIMESTAMP,
            "resolvedAt": None,
            "resolvedBy": None,
            "notes": None,
        }

        async def _insert(txn: Transaction) -> str:
            existing = await txn.query(
                Collections.REQUESTS,
                [Filter("userId", "==", actor.uid), Filter("serviceId", "==", service_id)],
            )
            self._check_duplicate(actor.uid, service_id, [AccessRequest.from_document(d) for d in existing])
            return txn.create(Collections.REQUESTS, data)

        request_id = await run_mutation(
            self._store,
            _insert,
            path=Collections.REQUESTS,
            operation="create",
            actor=actor.uid,
            request_data={k: v for k, v in data.items() if v is not SERVER_TIMESTAMP},
        )
        log.info("Request %s submitted for service %s", request_id, service_id)
        return await self.get(request_id)

    async def _submit_resource(self, actor: RoleSnapshot, service_id: str) -> Resource:
        if not actor.team_id:
            return Resource(owner_id=actor.uid, service_id=service_id)
        team_doc = await self._store.get(Collections.TEAMS, actor.team_id)
        offered = frozenset(Team.from_document(team_doc).available_service_ids) if team_doc else frozenset()
        return Resource(
            owner_id=actor.uid,
            owner_team_id=actor.team_id,
            service_id=service_id,
            available_service_ids=offered,
        )

    async def _own_requests(self, uid: str) -> list[AccessRequest]:
        docs = await self._store.query(Collections.REQUESTS, [Filter("userId", "==", uid)])
        return [AccessRequest.from_document(d) for d in docs]

    @staticmethod
    def _check_duplicate(uid: str, service_id: str, requests: list[AccessRequest]) -> None:
        for request in requests:
            if request.user_id == uid and request.service_id == service_id and request.is_open:
                status = request.status.value
                logger.info(
                    "Duplicate request by %s for %s (existing %s is %s)",
                    uid,
                    service_id,
                    request.id,
                    status,
                    extra={"actor_id": uid},
                )
                raise DuplicateRequestError(
                    f"You already have a request for this service in state '{status}'.",
                    status=status,
                    request_id=request.id,
                )

    # ── Resolution ──────────────────────────────────────

    async def approve(
        self,
        caller: Caller,
        request_id: str,
        target_status: Optional[RequestStatus | str] = None,
    ) -> AccessRequest:
        """Move a request forward.

        Without ``target_status`` an admin approves (``approved``) and a tech
        lead passes the gate (``approved_by_tech_lead``, or ``approved`` when
        the gate is disabled).

        Raises:
            PermissionDeniedError: caller may not resolve this request
            InvalidStateError: request is terminal or the move is not allowed
        """
        actor = await resolve_caller(self._store, caller)
        target = _status(target_status) if target_status is not None else None

        async def _approve(txn: Transaction) -> tuple[RequestStatus, RequestStatus]:
            request, owner_team = await self._load_for_resolution(txn, request_id)
            require(actor, Actions.APPROVE_REQUEST, Resource(owner_id=request.user_id, owner_team_id=owner_team))

            to = target or self._default_target(actor, request.status)
            rule = self._transition_rule(request, to)
            if rule.admin_only and not actor.is_admin:
                raise PermissionDeniedError(
                    f"Only an admin can move a request from {request.status.value} to {to.value}.",
                    action=Actions.APPROVE_REQUEST,
                    actor=actor.uid,
                )
            txn.update(
                Collections.REQUESTS,
                request_id,
                {"status": to.value, "resolvedAt": SERVER_TIMESTAMP, "resolvedBy": actor.uid},
            )
            return request.status, to

        previous, to = await run_mutation(
            self._store,
            _approve,
            path=f"{Collections.REQUESTS}/{request_id}",
            operation="update",
            actor=actor.uid,
            request_data={"status": target.value if target else None},
        )
        get_actor_logger(__name__, actor_id=actor.uid).info(
            "Request %s moved %s -> %s", request_id, previous.value, to.value
        )
        return await self.get(request_id)

    async def reject(self, caller: Caller, request_id: str, notes: Optional[str] = None) -> AccessRequest:
        """Reject a pending or tech-lead-approved request (terminal)."""
        actor = await resolve_caller(self._store, caller)
        note = notes.strip() if isinstance(notes, str) and notes.strip() else self._config.default_rejection_note

        async def _reject(txn: Transaction) -> RequestStatus:
            request, owner_team = await self._load_for_resolution(txn, request_id)
            require(actor, Actions.REJECT_REQUEST, Resource(owner_id=request.user_id, owner_team_id=owner_team))
            if request.status not in REJECTABLE:
                self._invalid(request, RequestStatus.REJECTED)
            txn.update(
                Collections.REQUESTS,
                request_id,
                {
                    "status": RequestStatus.REJECTED.value,
                    "resolvedAt": SERVER_TIMESTAMP,
                    "resolvedBy": actor.uid,
                    "notes": note,
                },
            )
            return request.status

        previous = await run_mutation(
            self._store,
            _reject,
            path=f"{Collections.REQUESTS}/{request_id}",
            operation="update",
            actor=actor.uid,
            request_data={"status": RequestStatus.REJECTED.value, "notes": note},
        )
        get_actor_logger(__name__, actor_id=actor.uid).info(
            "Request %s moved %s -> rejected", request_id, previous.value
        )
        return await self.get(request_id)

    async def delete(self, caller: Caller, request_id: str) -> None:
        """Admin-only hard delete from any state."""
        actor = require(await resolve_caller(self._store, caller), Actions.DELETE_REQUEST)

        async def _delete(txn: Transaction) -> None:
            if await txn.get(Collections.REQUESTS, request_id) is None:
                raise NotFoundError(f"No request {request_id}", request_id=request_id)
            txn.delete(Collections.REQUESTS, request_id)

        await run_mutation(
            self._store,
            _delete,
            path=f"{Collections.REQUESTS}/{request_id}",
            operation="delete",
            actor=actor.uid,
        )
        get_actor_logger(__name__, actor_id=actor.uid).info("Request %s deleted", request_id)

    async def _load_for_resolution(self, txn: Transaction, request_id: str) -> tuple[AccessRequest, Optional[str]]:
        doc = await txn.get(Collections.REQUESTS, request_id)
        if doc is None:
            raise NotFoundError(f"No request {request_id}", request_id=request_id)
        request = AccessRequest.from_document(doc)
        owner = await txn.get(Collections.USERS, request.user_id)
        return request, owner.get("teamId") if owner else None

    def _default_target(self, actor: RoleSnapshot, current: RequestStatus) -> RequestStatus:
        if actor.is_admin or current is RequestStatus.APPROVED_BY_TECH_LEAD or not self.tech_lead_gate:
            return RequestStatus.APPROVED
        return RequestStatus.APPROVED_BY_TECH_LEAD

    def _transition_rule(self, request: AccessRequest, to: RequestStatus) -> _Transition:
        if request.is_terminal:
            self._invalid(request, to)
        table = TRANSITIONS if self.tech_lead_gate else {**TRANSITIONS, **UNGATED_TRANSITIONS}
        rule = table.get((request.status, to))
        if rule is None or (rule.needs_gate is not None and rule.needs_gate != self.tech_lead_gate):
            self._invalid(request, to)
        return rule

    @staticmethod
    def _invalid(request: AccessRequest, to: RequestStatus) -> None:
        logger.warning(
            "Rejected transition of request %s: %s -> %s",
            request.id,
            request.status.value,
            to.value,
        )
        raise InvalidStateError(
            f"Request is '{request.status.value}' and cannot move to '{to.value}'.",
            status=request.status.value,
            target=to.value,
        )

    # ── Reads ───────────────────────────────────────────

    async def get(self, request_id: str) -> AccessRequest:
        doc = await self._store.get(Collections.REQUESTS, request_id)
        if doc is None:
            raise NotFoundError(f"No request {request_id}", request_id=request_id)
        return AccessRequest.from_document(doc)

    async def list_visible(
        self,
        caller: Caller,
        *,
        status: Optional[RequestStatus | str] = None,
    ) -> list[AccessRequest]:
        """Requests the caller may see, newest first.

        Admins see everything, tech leads their teams' members' requests,
        everyone else their own. The query is constrained accordingly and
        every result is re-checked against the gate.
        """
        actor = await resolve_caller(self._store, caller)
        filters: list[Filter] = []
        if status is not None:
            filters.append(Filter("status", "==", _status(status, "status").value))

        owner_teams: dict[str, Optional[str]] = {actor.uid: actor.team_id}
        if actor.is_admin:
            pass
        elif actor.is_tech_lead and actor.scoped_team_ids:
            members = await self._store.query(
                Collections.USERS, [Filter("teamId", "in", sorted(actor.scoped_team_ids))]
            )
            owner_teams.update({m["id"]: m.get("teamId") for m in members})
            filters.append(Filter("userId", "in", sorted(owner_teams)))
        else:
            filters.append(Filter("userId", "==", actor.uid))

        docs = await self._reader.query(
            actor,
            Collections.REQUESTS,
            filters,
            action=Actions.VIEW_REQUEST,
            resource_for=lambda d: Resource(owner_id=d.get("userId"), owner_team_id=owner_teams.get(d.get("userId"))),
            order_by="requestedAt",
            descending=True,
        )
        return [AccessRequest.from_document(d) for d in docs]

    async def list_pending_for_lead(self, caller: Caller) -> list[AccessRequest]:
        """Tech-lead queue: pending requests of the lead's team members."""
        return await self.list_visible(caller, status=RequestStatus.PENDING)

    async def summarize(self, caller: Caller) -> dict[str, int]:
        """Request counts by status over the caller-visible set."""
        counts = {s.value: 0 for s in RequestStatus}
        for request in await self.list_visible(caller):
            counts[request.status.value] += 1
        counts["total"] = sum(counts.values())
        return counts


__all__ = ["AccessRequestLifecycle", "REJECTABLE", "TRANSITIONS", "UNGATED_TRANSITIONS"]
