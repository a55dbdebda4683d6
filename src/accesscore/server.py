"""Remote Claims Issuer endpoint (gRPC).

Method ``/accessportal.ClaimsService/SetCustomClaims``:
request and response are ``google.protobuf.Struct``
(``{uid, claims}`` → ``{message}``). The caller is the identity token in
the ``authorization: Bearer`` metadata; failures are aborted with the
mapped status and an ``error-code`` trailing metadata entry.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import grpc
import grpc.aio
from google.protobuf import json_format
from google.protobuf.struct_pb2 import Struct

from .claims import ClaimsIssuer, DocumentIdentityProvider
from .config import PortalConfig
from .exceptions import ConfigurationError, grpc_error_handler
from .signing import SigningBackend, get_signing_backend
from .store import create_store
from .token_utils import extract_token_from_grpc_metadata
from .tokens import IdentityTokenIssuer

logger = logging.getLogger(__name__)

SERVICE_NAME = "accessportal.ClaimsService"
SET_CUSTOM_CLAIMS = "SetCustomClaims"
SET_CUSTOM_CLAIMS_PATH = f"/{SERVICE_NAME}/{SET_CUSTOM_CLAIMS}"


def to_struct(data: dict[str, Any]) -> Struct:
    message = Struct()
    message.update(data)
    return message


def from_struct(message: Struct) -> dict[str, Any]:
    return json_format.MessageToDict(message)


class ClaimsServicer:
    """gRPC servicer wrapping a ClaimsIssuer.

    ``backend`` verifies caller tokens and must be given explicitly; use
    ``get_signing_backend(config.security)`` as ``create_server`` does.
    """

    def __init__(
        self,
        issuer: ClaimsIssuer,
        *,
        backend: SigningBackend,
        verifier: Optional[IdentityTokenIssuer] = None,
    ) -> None:
        if not isinstance(backend, SigningBackend):
            raise ConfigurationError("ClaimsServicer requires a signing backend")
        self._issuer = issuer
        self._backend = backend
        self._verifier = verifier

    @grpc_error_handler
    async def SetCustomClaims(self, request: Struct, context: Any) -> Struct:
        token = extract_token_from_grpc_metadata(context, backend=self._backend)
        if token is not None and self._verifier is not None:
            token = self._verifier.verify(token)

        payload = from_struct(request)
        result = await self._issuer.set_claims(token, payload.get("uid"), payload.get("claims"))
        return to_struct(result)


def add_claims_servicer_to_server(servicer: ClaimsServicer, server: Any) -> None:
    handler = grpc.method_handlers_generic_handler(
        SERVICE_NAME,
        {
            SET_CUSTOM_CLAIMS: grpc.unary_unary_rpc_method_handler(
                servicer.SetCustomClaims,
                request_deserializer=Struct.FromString,
                response_serializer=Struct.SerializeToString,
            ),
        },
    )
    server.add_generic_rpc_handlers((handler,))


def create_server(
    config: PortalConfig,
    issuer: ClaimsIssuer,
    *,
    address: Optional[str] = None,
) -> grpc.aio.Server:
    """Build (but do not start) an aio server exposing the claims endpoint."""
    servicer = ClaimsServicer(
        issuer,
        backend=get_signing_backend(config.security),
        verifier=IdentityTokenIssuer(
            ttl_s=config.security.token_ttl_seconds,
            issuer=config.security.token_issuer,
        ),
    )
    server = grpc.aio.server()
    add_claims_servicer_to_server(servicer, server)
    server.add_insecure_port(address or config.claims_endpoint)
    return server


async def serve(config: PortalConfig) -> None:
    """Run the claims endpoint over the configured store until terminated."""
    store = create_store(config)
    provider = DocumentIdentityProvider(
        store,
        IdentityTokenIssuer(ttl_s=config.security.token_ttl_seconds, issuer=config.security.token_issuer),
    )
    server = create_server(config, ClaimsIssuer(provider, store))
    await server.start()
    logger.info("Claims endpoint listening on %s", config.claims_endpoint)
    try:
        await server.wait_for_termination()
    finally:
        await store.close()


__all__ = [
    "ClaimsServicer",
    "SERVICE_NAME",
    "SET_CUSTOM_CLAIMS_PATH",
    "add_claims_servicer_to_server",
    "create_server",
    "from_struct",
    "serve",
    "to_struct",
]
