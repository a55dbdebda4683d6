"""Wire form of identity tokens and their gRPC transport.

A token is serialized as sorted-key JSON (short JWT-style field names)
and handed to a SigningBackend. Servers read it from the ``authorization``
bearer header or the ``x-identity-token`` header.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from .models import RoleClaims
from .signing import SigningBackend, UnsignedBackend, get_signing_backend
from .tokens import IdentityToken

logger = logging.getLogger(__name__)

GRPC_AUTH_HEADER = "authorization"
GRPC_TOKEN_HEADER = "x-identity-token"  # nosec B105

_BEARER = "Bearer "

_default_backend: SigningBackend | None = None


def _backend(explicit: SigningBackend | None) -> SigningBackend:
    global _default_backend
    if explicit is not None:
        return explicit
    if _default_backend is None:
        _default_backend = get_signing_backend()
    return _default_backend


def reset_default_backend() -> None:
    """Forget the process-wide backend so the next call rebuilds it."""
    global _default_backend
    _default_backend = None


def _strip_bearer(value: str) -> str:
    value = value.strip()
    return value[len(_BEARER):].strip() if value.startswith(_BEARER) else value


def _to_payload(token: IdentityToken) -> dict[str, Any]:
    optional = {
        "email": token.email,
        "name": token.display_name,
        "picture": token.photo_url,
        "exp": token.exp_unix,
    }
    payload = {
        "token_id": token.token_id,
        "uid": token.uid,
        "claims": token.claims.to_wire(),
        "iss": token.issuer,
        "iat": token.issued_at,
    }
    payload.update({key: value for key, value in optional.items() if value not in (None, "")})
    return payload


def _from_payload(payload: dict[str, Any]) -> IdentityToken:
    return IdentityToken(
        token_id=payload["token_id"],
        uid=payload["uid"],
        email=payload.get("email", ""),
        display_name=payload.get("name", ""),
        photo_url=payload.get("picture"),
        claims=RoleClaims.model_validate(payload.get("claims") or {}),
        issuer=payload.get("iss", "accessportal"),
        issued_at=float(payload.get("iat", 0.0)),
        exp_unix=payload.get("exp"),
    )


def serialize_token(token: IdentityToken, *, backend: SigningBackend | None = None) -> str:
    raw = json.dumps(_to_payload(token), sort_keys=True).encode()
    return _backend(backend).sign(raw).serialize()


def parse_token_string(token_str: str, *, backend: SigningBackend | None = None) -> Optional[IdentityToken]:
    """Verify ``token_str`` and rebuild the IdentityToken.

    Returns None for an empty string, a token the backend refuses, or a
    payload that is not a valid token. There is no unverified fallback.
    """
    token_str = _strip_bearer(token_str or "")
    if not token_str:
        return None

    signing = _backend(backend)
    raw = signing.verify(token_str)
    if raw is None:
        if not isinstance(signing, UnsignedBackend):
            logger.warning("Rejected identity token (algorithm=%s)", signing.algorithm)
        return None

    try:
        return _from_payload(json.loads(raw))
    except (json.JSONDecodeError, KeyError, TypeError, UnicodeDecodeError, ValueError):
        logger.warning("Malformed identity token payload")
        return None


def extract_token_from_grpc_metadata(
    context: Any,
    *,
    backend: SigningBackend | None = None,
) -> Optional[IdentityToken]:
    """Verified IdentityToken from the invocation metadata, if any.

    A bearer ``authorization`` header wins over ``x-identity-token``.
    """
    try:
        metadata = dict(context.invocation_metadata() or ())
    except Exception as e:
        logger.warning("Failed to read gRPC metadata: %s", e)
        return None

    auth = metadata.get(GRPC_AUTH_HEADER, "")
    candidates = (_strip_bearer(auth) if auth.startswith(_BEARER) else "", metadata.get(GRPC_TOKEN_HEADER, "").strip())
    for candidate in candidates:
        if candidate:
            return parse_token_string(candidate, backend=backend)
    return None


def create_grpc_metadata_with_token(
    token_str: Optional[str],
    additional_metadata: Optional[list[tuple[str, str]]] = None,
) -> list[tuple[str, str]]:
    metadata = [(GRPC_AUTH_HEADER, f"{_BEARER}{token_str}")] if token_str else []
    return metadata + list(additional_metadata or ())


__all__ = [
    "GRPC_AUTH_HEADER",
    "GRPC_TOKEN_HEADER",
    "create_grpc_metadata_with_token",
    "extract_token_from_grpc_metadata",
    "parse_token_string",
    "reset_default_backend",
    "serialize_token",
]
