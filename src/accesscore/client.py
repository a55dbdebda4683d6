"""Client for the remote Claims Issuer endpoint."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Optional

import grpc
import grpc.aio
from google.protobuf.struct_pb2 import Struct

from .config import PortalConfig
from .exceptions import AccessCoreError, InternalError, error_registry
from .server import SET_CUSTOM_CLAIMS_PATH, from_struct, to_struct
from .token_utils import create_grpc_metadata_with_token

logger = logging.getLogger(__name__)


def error_from_rpc(error: grpc.aio.AioRpcError) -> AccessCoreError:
    """Rebuild the server-side error from the ``error-code`` trailing metadata."""
    trailing = dict(error.trailing_metadata() or ())
    code = trailing.get("error-code")
    if not code:
        return InternalError()
    return error_registry.from_code(code, error.details())


class ClaimsClient:
    """Calls ``SetCustomClaims`` with a serialized identity token.

    Usage:
        async with ClaimsClient(token=token_str) as client:
            message = await client.set_custom_claims(uid, {"isAdmin": True})
    """

    def __init__(
        self,
        target: Optional[str] = None,
        *,
        token: Optional[str] = None,
        config: Optional[PortalConfig] = None,
        channel: Optional[grpc.aio.Channel] = None,
        timeout: float = 10.0,
    ) -> None:
        config = config or PortalConfig()
        self._target = target or config.claims_endpoint
        self._token = token
        self._timeout = timeout
        self._channel = channel or grpc.aio.insecure_channel(self._target)
        self._set_claims = self._channel.unary_unary(
            SET_CUSTOM_CLAIMS_PATH,
            request_serializer=Struct.SerializeToString,
            response_deserializer=Struct.FromString,
        )

    async def set_custom_claims(self, uid: str, claims: Mapping[str, Any]) -> str:
        """Return the server's confirmation message.

        Raises:
            AccessCoreError: the error class matching the server's error code
        """
        request = to_struct({"uid": uid, "claims": dict(claims)})
        try:
            response = await self._set_claims(
                request,
                metadata=create_grpc_metadata_with_token(self._token),
                timeout=self._timeout,
            )
        except grpc.aio.AioRpcError as e:
            error = error_from_rpc(e)
            logger.warning("SetCustomClaims for %s failed: [%s] %s", uid, error.code, error.message)
            raise error from e
        return from_struct(response).get("message", "")

    async def close(self) -> None:
        await self._channel.close()

    async def __aenter__(self) -> ClaimsClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()


__all__ = ["ClaimsClient", "error_from_rpc"]
