"""Signing backends for identity tokens.

An identity token carries the caller's role claims, so it is only trusted
when a backend can check its signature. Tokens travel as three dot-joined
segments, ``kid.payload.signature``, all base64url without padding. The
unsigned backend leaves the signature segment empty.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from .config import PortalSecurityConfig

logger = logging.getLogger(__name__)

UNSIGNED_KID = "unsigned"


def _encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _decode(text: str) -> Optional[bytes]:
    try:
        return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))
    except (binascii.Error, ValueError):
        return None


@dataclass(frozen=True)
class SignedPayload:
    kid: str
    payload: str
    signature: str
    algorithm: str

    def serialize(self) -> str:
        return ".".join((self.kid, self.payload, self.signature))

    @classmethod
    def parse(cls, token_str: str, algorithm: str) -> Optional["SignedPayload"]:
        """Split a wire token; None unless it has exactly three segments."""
        segments = (token_str or "").strip().split(".")
        if len(segments) != 3 or not segments[1]:
            return None
        kid, payload, signature = segments
        return cls(kid=kid, payload=payload, signature=signature, algorithm=algorithm)


@runtime_checkable
class SigningBackend(Protocol):
    """Signs token payloads and verifies wire tokens.

    ``verify`` returns the raw payload bytes, or None for any token it
    does not accept.
    """

    @property
    def algorithm(self) -> str: ...

    @property
    def active_kid(self) -> str: ...

    def sign(self, payload: bytes) -> SignedPayload: ...

    def verify(self, token_str: str) -> bytes | None: ...


class UnsignedBackend:
    """Development backend: accepts any well-formed token, claims included."""

    algorithm = "none"
    active_kid = UNSIGNED_KID

    def sign(self, payload: bytes) -> SignedPayload:
        return SignedPayload(kid=UNSIGNED_KID, payload=_encode(payload), signature="", algorithm=self.algorithm)

    def verify(self, token_str: str) -> bytes | None:
        parsed = SignedPayload.parse(token_str, self.algorithm)
        return None if parsed is None else _decode(parsed.payload)


class HmacBackend:
    """HMAC-SHA256 over the encoded payload with a secret shared by issuer and verifiers."""

    algorithm = "hmac"

    def __init__(self, shared_secret: str, kid: str = "hmac-001"):
        if not shared_secret:
            raise ConfigurationError("HmacBackend requires a shared_secret")
        self._key = shared_secret.encode()
        self._kid = kid

    @property
    def active_kid(self) -> str:
        return self._kid

    def _mac(self, encoded_payload: str) -> bytes:
        return hmac.new(self._key, encoded_payload.encode("ascii"), hashlib.sha256).digest()

    def sign(self, payload: bytes) -> SignedPayload:
        encoded = _encode(payload)
        return SignedPayload(
            kid=self._kid,
            payload=encoded,
            signature=_encode(self._mac(encoded)),
            algorithm=self.algorithm,
        )

    def verify(self, token_str: str) -> bytes | None:
        parsed = SignedPayload.parse(token_str, self.algorithm)
        if parsed is None or not parsed.signature:
            return None

        presented = _decode(parsed.signature)
        try:
            expected = self._mac(parsed.payload)
        except UnicodeEncodeError:
            return None
        if presented is None or not hmac.compare_digest(expected, presented):
            logger.warning("Rejected identity token with bad signature (kid=%s)", parsed.kid)
            return None
        return _decode(parsed.payload)


def get_signing_backend(config: PortalSecurityConfig | None = None) -> SigningBackend:
    """Backend for ``config``.

    Signing disabled (or no config) yields UnsignedBackend. Enabled HMAC
    without a shared secret, or any other backend name, is a
    ConfigurationError.
    """
    if config is None or not config.enabled:
        return UnsignedBackend()

    name = getattr(config.signing_backend, "value", config.signing_backend)
    if name != "hmac":
        problem = f"Unsupported signing backend: {name!r}"
    elif not config.shared_secret:
        problem = "SIGNING_BACKEND=hmac requires SIGNING_SHARED_SECRET."
    else:
        return HmacBackend(shared_secret=config.shared_secret, kid=config.signing_key_id)

    logger.critical(problem)
    raise ConfigurationError(problem)


__all__ = [
    "HmacBackend",
    "SignedPayload",
    "SigningBackend",
    "UNSIGNED_KID",
    "UnsignedBackend",
    "get_signing_backend",
]
