"""Claims Issuer and identity-provider boundary.

The Claims Issuer is the only writer of role claims. ``set_claims`` is the
privileged remote operation (admin callers only); ``apply_claims`` is the
same capability without the caller check, for infrastructure-level tools
such as the bootstrap CLI and the role engine's post-commit resync.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from typing import Any, Optional, Protocol, Union, runtime_checkable

from pydantic import ValidationError

from .exceptions import (
    AccessCoreError,
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
)
from .models import Collections, IdentityRecord, RoleClaims
from .permissions import Actions, RoleSnapshot, require
from .store import DocumentStore, Transaction
from .tokens import IdentityToken, IdentityTokenIssuer

logger = logging.getLogger(__name__)

Caller = Union[IdentityToken, RoleSnapshot, None]


def as_snapshot(caller: Caller) -> Optional[RoleSnapshot]:
    """Role snapshot for a claims-only check (no store reads)."""
    if isinstance(caller, IdentityToken):
        return caller.snapshot()
    return caller


# ── Identity provider ───────────────────────────────────


@runtime_checkable
class IdentityProvider(Protocol):
    """External identity service: records, custom claims, token issuing."""

    async def get_user(self, uid: str) -> IdentityRecord: ...

    async def set_custom_claims(self, uid: str, claims: RoleClaims) -> None: ...

    async def issue_token(self, uid: str, *, force_refresh: bool = False) -> IdentityToken: ...


class DocumentIdentityProvider:
    """Identity provider kept in the ``identities`` collection.

    Tokens are cached per identity until they expire; ``force_refresh``
    mints a new one carrying the identity's current claims. Expired cache
    entries are dropped whenever a token is minted.
    """

    def __init__(self, store: DocumentStore, issuer: Optional[IdentityTokenIssuer] = None) -> None:
        self._store = store
        self._issuer = issuer or IdentityTokenIssuer()
        self._tokens: dict[str, IdentityToken] = {}

    async def create_user(
        self,
        uid: str,
        *,
        email: str = "",
        display_name: str = "",
        photo_url: Optional[str] = None,
    ) -> IdentityRecord:
        record = IdentityRecord(uid=uid, email=email, display_name=display_name, photo_url=photo_url)
        await self._store.set(
            Collections.IDENTITIES, uid, record.model_dump(by_alias=True, exclude={"uid"})
        )
        return record

    async def get_user(self, uid: str) -> IdentityRecord:
        doc = await self._store.get(Collections.IDENTITIES, uid)
        if doc is None:
            raise NotFoundError(f"No identity {uid}", uid=uid)
        return IdentityRecord.model_validate({**doc, "uid": uid})

    async def set_custom_claims(self, uid: str, claims: RoleClaims) -> None:
        await self._store.update(Collections.IDENTITIES, uid, {"customClaims": claims.to_wire()})

    async def issue_token(self, uid: str, *, force_refresh: bool = False) -> IdentityToken:
        cached = self._tokens.get(uid)
        if cached is not None and not force_refresh and not cached.is_expired():
            return cached
        token = self._issuer.mint(await self.get_user(uid))
        self._prune_tokens()
        self._tokens[uid] = token
        return token

    def _prune_tokens(self) -> None:
        now = time.time()
        for uid in [u for u, t in self._tokens.items() if t.is_expired(now=now)]:
            del self._tokens[uid]

    @property
    def cached_token_count(self) -> int:
        return len(self._tokens)


# ── Claims Issuer ───────────────────────────────────────


def _success_message(uid: str) -> dict[str, str]:
    return {"message": f"Success! User {uid} has been updated."}


class ClaimsIssuer:
    """Validates and writes role claims onto identities.

    With a ``store``, ``set_claims`` also mirrors the role flags onto the
    caller-visible profile (``users/{uid}``) so that later claim resyncs,
    which derive claims from the profile, keep the grant.
    """

    def __init__(self, provider: IdentityProvider, store: Optional[DocumentStore] = None) -> None:
        self._provider = provider
        self._store = store

    @property
    def provider(self) -> IdentityProvider:
        return self._provider

    @staticmethod
    def validate_claims(uid: Any, claims: Any) -> RoleClaims:
        """Check the target and claim set, returning the sanitized claims.

        Raises:
            InvalidArgumentError: uid not a non-empty string, claims not an object
            FailedPreconditionError: isTechLead without a teamId
        """
        if not isinstance(uid, str) or not uid.strip():
            raise InvalidArgumentError("The function must be called with a 'uid' string.", field="uid")
        if isinstance(claims, RoleClaims):
            parsed = claims
        elif isinstance(claims, Mapping):
            try:
                parsed = RoleClaims.model_validate(dict(claims), strict=True)
            except ValidationError as e:
                raise InvalidArgumentError(
                    "The 'claims' object has invalid fields.",
                    field="claims",
                    errors=[err["loc"] for err in e.errors()],
                ) from e
        else:
            raise InvalidArgumentError("The function must be called with a 'claims' object.", field="claims")

        if parsed.is_tech_lead and not parsed.team_id:
            raise FailedPreconditionError("A Tech Lead must be assigned to a team.", rule="tech-lead-requires-team")

        sanitized = parsed.sanitized()
        if parsed.team_id and sanitized.team_id is None:
            logger.warning(
                "User %s is not a Tech Lead, removing teamId %s from claims.",
                uid,
                parsed.team_id,
            )
        return sanitized

    async def set_claims(self, caller: Caller, uid: Any, claims: Any) -> dict[str, str]:
        """Overwrite the full claim set of ``uid`` on behalf of an admin.

        The profile's ``isAdmin`` / ``isTechLead`` follow the new claims, as
        does ``teamId`` for a tech lead; a plain user's team membership is
        left alone. The identity's token is then force-refreshed.

        Returns:
            ``{"message": ...}``

        Raises:
            PermissionDeniedError: caller lacks isAdmin
            InvalidArgumentError / FailedPreconditionError: see validate_claims
            InternalError: identity-provider or profile fault (detail only in logs)
        """
        actor = as_snapshot(caller)
        require(actor, Actions.SET_CLAIMS)
        logger.info("Claims update for %s requested by %s", uid, actor.uid if actor else None)

        sanitized = self.validate_claims(uid, claims)
        await self._write(uid, sanitized)
        if self._store is not None:
            await self._mirror_profile(uid, sanitized)
        await self.refresh_token(uid)
        return _success_message(uid)

    async def apply_claims(self, uid: Any, claims: Any) -> RoleClaims:
        """Privileged write without a caller check (infrastructure credentials).

        Validation still applies; provider faults surface as InternalError.
        """
        sanitized = self.validate_claims(uid, claims)
        await self._write(uid, sanitized)
        return sanitized

    async def _write(self, uid: str, claims: RoleClaims) -> None:
        try:
            await self._provider.set_custom_claims(uid, claims)
        except Exception as e:
            logger.error(
                "Error setting custom claims for %s: %s",
                uid,
                e,
                extra={"target_uid": uid, "error_type": type(e).__name__},
            )
            raise InternalError(target=uid) from e
        logger.info("Custom claims set for %s", uid, extra={"claims": claims.to_wire()})

    async def _mirror_profile(self, uid: str, claims: RoleClaims) -> None:
        fields: dict[str, Any] = {"isAdmin": claims.is_admin, "isTechLead": claims.is_tech_lead}
        if claims.is_tech_lead:
            fields["teamId"] = claims.team_id

        async def _update(txn: Transaction) -> None:
            if await txn.get(Collections.USERS, uid) is None:
                raise NotFoundError(f"No profile {uid}", uid=uid)
            txn.update(Collections.USERS, uid, fields)

        try:
            await self._store.run_transaction(_update)
        except Exception as e:
            logger.error(
                "Error mirroring claims onto profile %s: %s",
                uid,
                e,
                extra={"target_uid": uid, "error_type": type(e).__name__},
            )
            raise InternalError(target=uid) from e
        logger.info("Profile %s role fields updated", uid, extra={"profile_update": fields})

    async def refresh_token(self, uid: str) -> IdentityToken:
        """Force-refresh the identity token so it carries current claims."""
        try:
            return await self._provider.issue_token(uid, force_refresh=True)
        except AccessCoreError:
            raise
        except Exception as e:
            logger.error("Token refresh failed for %s: %s", uid, e)
            raise InternalError(target=uid) from e


__all__ = [
    "Caller",
    "ClaimsIssuer",
    "DocumentIdentityProvider",
    "IdentityProvider",
    "as_snapshot",
]
