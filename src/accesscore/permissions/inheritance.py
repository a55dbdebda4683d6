"""Role tier inheritance and per-tier action profiles.

Provides:
- ``ROLE_INHERITANCE``: tier → tiers it implies.
- ``expand_roles()``: resolve implied tiers.
- ``ROLE_PROFILES``: tier → actions the tier may attempt at all.

Profiles answer the coarse question only. Resource scoping (a tech lead
acting on their own team's requests) is decided in ``access.can()``.
"""

from __future__ import annotations

from .constants import Actions, Role

# ── Role Inheritance ────────────────────────────────────
# The hierarchy is fixed; no other tiers exist.

ROLE_INHERITANCE: dict[str, tuple[str, ...]] = {
    Role.ADMIN: (Role.TECH_LEAD,),
    Role.TECH_LEAD: (Role.USER,),
    Role.USER: (),
}


def expand_roles(roles: tuple[str, ...] | list[str]) -> tuple[str, ...]:
    """Expand role tiers by resolving inheritance.

    Example::

        >>> expand_roles(("admin",))
        ('admin', 'tech_lead', 'user')
    """
    expanded: set[str] = set(roles)
    queue = list(roles)

    while queue:
        role = queue.pop()
        for child in ROLE_INHERITANCE.get(role, ()):
            if child not in expanded:
                expanded.add(child)
                queue.append(child)

    return tuple(r for r in reversed(Role.HIERARCHY) if r in expanded)


# ── Role → Action Profiles ──────────────────────────────

ROLE_PROFILES: dict[str, tuple[str, ...]] = {
    Role.USER: (
        Actions.SUBMIT_REQUEST,
        Actions.VIEW_REQUEST,
    ),
    Role.TECH_LEAD: (
        Actions.APPROVE_REQUEST,
        Actions.REJECT_REQUEST,
    ),
    Role.ADMIN: (
        Actions.DELETE_REQUEST,
        Actions.MANAGE_TEAM,
        Actions.MANAGE_SERVICE,
        Actions.MANAGE_CONTACT,
        Actions.SET_CLAIMS,
        Actions.EDIT_USER_ROLE,
    ),
}


def actions_for(role: str) -> frozenset[str]:
    """All actions a tier may attempt, inherited tiers included."""
    actions: set[str] = set()
    for tier in expand_roles((role,)):
        actions.update(ROLE_PROFILES.get(tier, ()))
    return frozenset(actions)


__all__ = [
    "ROLE_INHERITANCE",
    "ROLE_PROFILES",
    "actions_for",
    "expand_roles",
]
