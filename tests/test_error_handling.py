"""Tests for the exception hierarchy, registry and gRPC error handler."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import grpc
import pytest

from accesscore.exceptions import (
    AccessCoreError,
    DuplicateRequestError,
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    MutationRejectedError,
    PermissionDeniedError,
    StorageError,
    TransactionConflictError,
    error_registry,
    get_grpc_status_code,
    grpc_error_handler,
    register_error,
)


class TestErrorHierarchy:
    """Tests for exception attributes."""

    def test_defaults(self) -> None:
        err = InvalidArgumentError(field="uid")
        assert err.code == "invalid-argument"
        assert err.details == {"field": "uid"}
        assert str(err) == err.message

    def test_duplicate_is_notice(self) -> None:
        assert DuplicateRequestError().is_notice is True
        assert PermissionDeniedError().is_notice is False

    def test_conflict_is_storage_error(self) -> None:
        assert isinstance(TransactionConflictError(), StorageError)

    def test_mutation_rejected_carries_context(self) -> None:
        err = MutationRejectedError({"path": "teams/t1"}, path="teams/t1")
        assert isinstance(err, PermissionDeniedError)
        assert err.code == "permission-denied"
        assert err.context == {"path": "teams/t1"}
        assert "Missing or insufficient permissions" in err.message


class TestErrorRegistry:
    """Tests for ErrorRegistry."""

    def test_from_code(self) -> None:
        err = error_registry.from_code("failed-precondition", "A Tech Lead must be assigned to a team.")
        assert isinstance(err, FailedPreconditionError)
        assert err.message == "A Tech Lead must be assigned to a team."

    def test_internal_message_is_generic(self) -> None:
        err = error_registry.from_code("internal", "stack trace from the provider")
        assert isinstance(err, InternalError)
        assert err.message == InternalError.message

    def test_unknown_code(self) -> None:
        assert isinstance(error_registry.from_code("no-such-code"), InternalError)

    def test_register_custom(self) -> None:
        @register_error("quota-exceeded")
        class QuotaExceededError(AccessCoreError):
            code = "quota-exceeded"

        assert error_registry.get("quota-exceeded") is QuotaExceededError


class TestGrpcStatusMapping:
    """Tests for get_grpc_status_code."""

    @pytest.mark.parametrize(
        "error, status",
        [
            (PermissionDeniedError(), grpc.StatusCode.PERMISSION_DENIED),
            (InvalidArgumentError(), grpc.StatusCode.INVALID_ARGUMENT),
            (FailedPreconditionError(), grpc.StatusCode.FAILED_PRECONDITION),
            (InternalError(), grpc.StatusCode.INTERNAL),
            (DuplicateRequestError(), grpc.StatusCode.ALREADY_EXISTS),
            (AccessCoreError(code="mystery"), grpc.StatusCode.INTERNAL),
        ],
    )
    def test_mapping(self, error: AccessCoreError, status: grpc.StatusCode) -> None:
        assert get_grpc_status_code(error) == status


class _Servicer:
    def __init__(self, exc: Exception | None = None) -> None:
        self.exc = exc

    @grpc_error_handler
    async def Call(self, request, context):
        if self.exc is not None:
            raise self.exc
        return "ok"


def _context() -> MagicMock:
    context = MagicMock()
    context.abort = AsyncMock()
    return context


class TestGrpcErrorHandler:
    """Tests for the grpc_error_handler decorator."""

    @pytest.mark.asyncio
    async def test_passthrough(self) -> None:
        context = _context()
        assert await _Servicer().Call(None, context) == "ok"
        context.abort.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_business_error_aborts_with_code(self) -> None:
        context = _context()
        await _Servicer(InvalidArgumentError("bad uid")).Call(None, context)

        context.set_trailing_metadata.assert_called_once_with([("error-code", "invalid-argument")])
        context.abort.assert_awaited_once_with(grpc.StatusCode.INVALID_ARGUMENT, "bad uid")

    @pytest.mark.asyncio
    async def test_unexpected_error_is_generic(self) -> None:
        context = _context()
        await _Servicer(RuntimeError("provider exploded")).Call(None, context)

        context.abort.assert_awaited_once_with(grpc.StatusCode.INTERNAL, InternalError.message)
