"""Identity token primitives.

IdentityToken is the verified identity a caller presents. Its embedded
RoleClaims are the authoritative input for authorization decisions;
profile documents are not.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .exceptions import UnauthenticatedError
from .models import IdentityRecord, RoleClaims

if TYPE_CHECKING:
    from .permissions import RoleSnapshot


@dataclass(frozen=True)
class IdentityToken:
    """Signed identity of a caller.

    - token_id: Unique identifier for audit trails
    - uid: Stable identity id (also the profile document id)
    - claims: Role claims {isAdmin, isTechLead, teamId}
    - issued_at / exp_unix: Issue and expiration timestamps (exp None = never)
    """

    token_id: str
    uid: str
    email: str = ""
    display_name: str = ""
    photo_url: str | None = None
    claims: RoleClaims = field(default_factory=RoleClaims)
    issuer: str = "accessportal"
    issued_at: float = 0.0
    exp_unix: float | None = None

    def is_expired(self, *, now: float | None = None) -> bool:
        """Check if token has expired."""
        if self.exp_unix is None:
            return False
        t = time.time() if now is None else now
        return t >= self.exp_unix

    @property
    def is_admin(self) -> bool:
        return self.claims.is_admin

    @property
    def is_tech_lead(self) -> bool:
        return self.claims.is_tech_lead

    @property
    def team_id(self) -> str | None:
        return self.claims.team_id

    def snapshot(
        self,
        *,
        membership_team_id: str | None = None,
        led_team_ids: frozenset[str] = frozenset(),
    ) -> RoleSnapshot:
        """Role snapshot taken from the verified claims.

        ``membership_team_id`` is the caller's team as read server-side from
        their profile; it is only used when the claims carry no team.
        """
        from .permissions import RoleSnapshot

        return RoleSnapshot(
            uid=self.uid,
            is_admin=self.claims.is_admin,
            is_tech_lead=self.claims.is_tech_lead,
            team_id=self.claims.team_id or membership_team_id,
            led_team_ids=led_team_ids,
        )


class IdentityTokenIssuer:
    """Mints and verifies identity tokens from identity-provider records.

    Minting always reads the record's current claims, so a freshly minted
    token is the force-refresh that closes a stale-claims window.
    """

    def __init__(self, *, ttl_s: float = 3600, issuer: str = "accessportal") -> None:
        self._ttl_s = ttl_s
        self._issuer = issuer

    @property
    def issuer(self) -> str:
        return self._issuer

    def mint(self, identity: IdentityRecord, *, ttl_s: float | None = None) -> IdentityToken:
        """Create a token carrying the identity's current claims."""
        now = time.time()
        return IdentityToken(
            token_id=secrets.token_urlsafe(16),
            uid=identity.uid,
            email=identity.email,
            display_name=identity.display_name,
            photo_url=identity.photo_url,
            claims=identity.custom_claims,
            issuer=self._issuer,
            issued_at=now,
            exp_unix=now + float(self._ttl_s if ttl_s is None else ttl_s),
        )

    def verify(self, token: IdentityToken | None) -> IdentityToken:
        """Verify the token is present, unexpired and issued here.

        Raises:
            UnauthenticatedError: If token is missing, expired or foreign
        """
        if not isinstance(token, IdentityToken):
            raise UnauthenticatedError("Missing identity token")
        if token.is_expired():
            raise UnauthenticatedError("Identity token expired")
        if token.issuer != self._issuer:
            raise UnauthenticatedError(f"Unknown token issuer: {token.issuer}")
        return token


__all__ = ["IdentityToken", "IdentityTokenIssuer"]
