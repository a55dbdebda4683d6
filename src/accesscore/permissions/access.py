"""Authorization gate.

``can()`` is a pure function over a role snapshot, an action and a
resource. Every mutation site calls ``require()`` before touching the
store.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..exceptions import PermissionDeniedError
from .constants import Actions
from .inheritance import actions_for
from .policy import Decision, Resource, RoleSnapshot

logger = logging.getLogger(__name__)

_EMPTY = Resource()


def _in_team_scope(actor: RoleSnapshot, resource: Resource) -> bool:
    return bool(resource.owner_team_id) and resource.owner_team_id in actor.scoped_team_ids


def can(
    actor: Optional[RoleSnapshot],
    action: str,
    resource: Optional[Resource] = None,
) -> str:
    """Decide whether ``actor`` may perform ``action`` on ``resource``.

    Decision table:
    - set-claims, manage-*, edit-user-role, delete-request → admin only
    - approve-request / reject-request → admin, or a tech lead whose
      team scope contains the owner's team
    - view-request → admin, the owner, or a tech lead in team scope
    - submit-request → admin, or an actor with a team whose available
      services contain the requested service

    Unknown actions and unauthenticated actors are denied.

    Returns:
        ``Decision.ALLOW`` or ``Decision.DENY``.
    """
    if actor is None or not actor.authenticated:
        return Decision.DENY
    if action not in Actions.ALL:
        return Decision.DENY

    res = resource or _EMPTY

    if actor.is_admin:
        return Decision.ALLOW if action in actions_for(actor.role) else Decision.DENY

    if action not in actions_for(actor.role):
        return Decision.DENY

    if action in (Actions.APPROVE_REQUEST, Actions.REJECT_REQUEST):
        return Decision.ALLOW if _in_team_scope(actor, res) else Decision.DENY

    if action == Actions.VIEW_REQUEST:
        if res.owner_id and res.owner_id == actor.uid:
            return Decision.ALLOW
        return Decision.ALLOW if _in_team_scope(actor, res) else Decision.DENY

    if action == Actions.SUBMIT_REQUEST:
        if not actor.team_id or not res.service_id:
            return Decision.DENY
        return Decision.ALLOW if res.service_id in res.available_service_ids else Decision.DENY

    return Decision.DENY


def is_allowed(
    actor: Optional[RoleSnapshot],
    action: str,
    resource: Optional[Resource] = None,
) -> bool:
    return can(actor, action, resource) == Decision.ALLOW


def require(
    actor: Optional[RoleSnapshot],
    action: str,
    resource: Optional[Resource] = None,
) -> RoleSnapshot:
    """Raise PermissionDeniedError unless ``can()`` allows the action.

    Returns the actor so callers can chain on the checked snapshot.
    """
    if not is_allowed(actor, action, resource):
        uid = actor.uid if actor is not None else None
        logger.warning(
            "Denied %s for actor %s",
            action,
            uid or "<anonymous>",
            extra={"action": action, "actor": uid},
        )
        raise PermissionDeniedError(action=action, actor=uid)
    assert actor is not None
    return actor


__all__ = ["can", "is_allowed", "require"]
