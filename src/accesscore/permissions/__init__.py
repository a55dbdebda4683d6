"""Authorization gate for the access portal.

Defines:
- Actions: every gated action name
- Role: the three fixed tiers (user / tech_lead / admin)
- ROLE_INHERITANCE / ROLE_PROFILES: tier → implied tiers / attemptable actions
- RoleSnapshot / Resource / Decision: inputs and output of ``can()``
- can() / is_allowed() / require(): the gate itself
"""

from .access import can, is_allowed, require
from .constants import Actions, Role
from .inheritance import ROLE_INHERITANCE, ROLE_PROFILES, actions_for, expand_roles
from .policy import Decision, Resource, RoleSnapshot

__all__ = [
    "Actions",
    "Decision",
    "ROLE_INHERITANCE",
    "ROLE_PROFILES",
    "Resource",
    "Role",
    "RoleSnapshot",
    "actions_for",
    "can",
    "expand_roles",
    "is_allowed",
    "require",
]
