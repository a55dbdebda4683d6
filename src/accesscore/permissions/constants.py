"""Action and role constants for the access portal.

Provides:
- ``Actions``: every gated action (``verb-noun`` format).
- ``Role``: the three fixed tiers (user / tech_lead / admin).
"""

from __future__ import annotations


class Actions:
    """Canonical action names checked by the authorization gate.

    Format: ``{verb}-{noun}``
    """

    # ── Access requests ─────────────────────────────────
    SUBMIT_REQUEST = "submit-request"
    APPROVE_REQUEST = "approve-request"
    REJECT_REQUEST = "reject-request"
    DELETE_REQUEST = "delete-request"
    VIEW_REQUEST = "view-request"

    # ── Administration ──────────────────────────────────
    MANAGE_TEAM = "manage-team"
    MANAGE_SERVICE = "manage-service"
    MANAGE_CONTACT = "manage-contact"
    SET_CLAIMS = "set-claims"
    EDIT_USER_ROLE = "edit-user-role"

    ALL = (
        SUBMIT_REQUEST,
        APPROVE_REQUEST,
        REJECT_REQUEST,
        DELETE_REQUEST,
        VIEW_REQUEST,
        MANAGE_TEAM,
        MANAGE_SERVICE,
        MANAGE_CONTACT,
        SET_CLAIMS,
        EDIT_USER_ROLE,
    )


class Role:
    """Role tiers. A higher tier implies every lower one."""

    USER = "user"
    TECH_LEAD = "tech_lead"
    ADMIN = "admin"

    HIERARCHY = (USER, TECH_LEAD, ADMIN)


__all__ = ["Actions", "Role"]
