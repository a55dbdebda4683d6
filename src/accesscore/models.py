"""Document models for the access portal.

Pydantic models for every stored collection. Python attributes are
snake_case; documents use the camelCase field names of the store contract
(``userId``, ``teamId``, ``techLeadId``, ``availableServiceIds``,
``requestedAt`` ...).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Collections:
    """Collection names (part of the store contract)."""

    USERS = "users"
    TEAMS = "teams"
    SERVICES = "services"
    REQUESTS = "requests"
    CONTACTS = "contacts"
    IDENTITIES = "identities"


class DocumentModel(BaseModel):
    """Base for models persisted as documents keyed by ``id``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = ""

    @classmethod
    def from_document(cls, doc: dict[str, Any]):
        """Build a model from a store document (``id`` included)."""
        return cls.model_validate(doc)

    def to_document(self) -> dict[str, Any]:
        """Document body as written to the store (``id`` excluded)."""
        return self.model_dump(by_alias=True, exclude={"id"})


class RoleClaims(BaseModel):
    """Role claims carried by a signed identity token.

    Wire shape: ``{isAdmin: bool, isTechLead: bool, teamId: str | null}``.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    is_admin: bool = False
    is_tech_lead: bool = False
    team_id: Optional[str] = None

    def sanitized(self) -> RoleClaims:
        """Drop the team reference from a non-lead claim set."""
        if self.is_tech_lead:
            return self
        return RoleClaims(is_admin=self.is_admin, is_tech_lead=False, team_id=None)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class Profile(DocumentModel):
    """Per-identity profile (``users`` collection, keyed by identity id).

    ``team_id`` is team membership. For tech leads it also mirrors the
    team carried in their claims.
    """

    display_name: str = ""
    email: str = ""
    photo_url: Optional[str] = None
    is_admin: bool = False
    is_tech_lead: bool = False
    team_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def uid(self) -> str:
        return self.id


class Team(DocumentModel):
    """Organizational grouping with one tech lead and requestable services."""

    name: str
    tech_lead_id: str
    available_service_ids: list[str] = Field(default_factory=list)


class Service(DocumentModel):
    """A service employees can request access to."""

    name: str
    description: str = ""


class RequestStatus(str, Enum):
    """Access request lifecycle states."""

    PENDING = "pending"
    APPROVED_BY_TECH_LEAD = "approved_by_tech_lead"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


# A new request for the same (user, service) is refused while one of these exists
OPEN_STATUSES = frozenset(
    {
        RequestStatus.PENDING,
        RequestStatus.APPROVED_BY_TECH_LEAD,
        RequestStatus.APPROVED,
    }
)

TERMINAL_STATUSES = frozenset(
    {
        RequestStatus.APPROVED,
        RequestStatus.REJECTED,
        RequestStatus.COMPLETED,
    }
)


class AccessRequest(DocumentModel):
    """A user's request for access to a service."""

    user_id: str
    service_id: str
    status: RequestStatus = RequestStatus.PENDING
    requested_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_document(self) -> dict[str, Any]:
        doc = super().to_document()
        doc["status"] = self.status.value
        return doc


class Contact(DocumentModel):
    """Contact link. ``team_id=None`` means visible to everyone."""

    name: str
    url: str
    order: int = 0
    team_id: Optional[str] = None


class IdentityRecord(BaseModel):
    """Identity as known to the identity provider."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    uid: str
    email: str = ""
    display_name: str = ""
    photo_url: Optional[str] = None
    custom_claims: RoleClaims = Field(default_factory=RoleClaims)


__all__ = [
    "AccessRequest",
    "Collections",
    "Contact",
    "DocumentModel",
    "IdentityRecord",
    "OPEN_STATUSES",
    "Profile",
    "RequestStatus",
    "RoleClaims",
    "Service",
    "TERMINAL_STATUSES",
    "Team",
]
