"""Errors raised by the access portal core.

Each AccessCoreError subclass carries a stable ``code``. The claims
endpoint's contract uses ``permission-denied``, ``invalid-argument``,
``failed-precondition`` and ``internal``; the request lifecycle and the
store add their own codes. Clients map codes back to classes through
``error_registry``; servicers map them to gRPC statuses with
``grpc_error_handler``.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable, TypeVar, cast

__all__ = [
    # Base hierarchy
    "AccessCoreError",
    "PermissionDeniedError",
    "UnauthenticatedError",
    "InvalidArgumentError",
    "FailedPreconditionError",
    "NotFoundError",
    "InvalidStateError",
    "DuplicateRequestError",
    "InternalError",
    "ConfigurationError",
    "StorageError",
    "TransactionConflictError",
    "MutationRejectedError",
    # Registry
    "ErrorRegistry",
    "error_registry",
    "register_error",
    # gRPC helpers
    "get_grpc_status_code",
    "grpc_error_handler",
]

logger = logging.getLogger(__name__)


# ---- Exception Hierarchy ----------------------------------------------------


class AccessCoreError(Exception):
    """Base exception for the access portal core.

    Attributes:
        code: Stable error code string for protocol mapping (e.g. "permission-denied").
        message: Human-readable error description.
        details: Additional context as keyword arguments.
        is_notice: True for informational conditions that are not real failures.
    """

    code: str = "internal"
    message: str = "An internal error occurred"
    is_notice: bool = False

    def __init__(self, message: str | None = None, code: str | None = None, **kwargs: Any) -> None:
        self.message = message or self.message
        self.code = code or self.code
        self.details = kwargs
        super().__init__(self.message)


class PermissionDeniedError(AccessCoreError):
    """Caller lacks the role required for the action."""

    code: str = "permission-denied"
    message: str = "You do not have permission to perform this action."


class UnauthenticatedError(AccessCoreError):
    """No valid identity token was presented."""

    code: str = "unauthenticated"
    message: str = "A valid identity token is required."


class InvalidArgumentError(AccessCoreError):
    """Malformed input. ``details['field']`` names the offending field when known."""

    code: str = "invalid-argument"
    message: str = "Invalid argument."


class FailedPreconditionError(AccessCoreError):
    """A business invariant would be violated (e.g. tech lead without a team)."""

    code: str = "failed-precondition"
    message: str = "A required precondition was not met."


class NotFoundError(AccessCoreError):
    """Referenced document does not exist."""

    code: str = "not-found"
    message: str = "The requested document does not exist."


class InvalidStateError(AccessCoreError):
    """Illegal access-request lifecycle transition."""

    code: str = "invalid-state"
    message: str = "The request is not in a state that allows this transition."


class DuplicateRequestError(AccessCoreError):
    """An open request for the same (user, service) pair already exists.

    Informational: callers should surface it as a notice, not a failure.
    ``details['status']`` holds the status of the existing request.
    """

    code: str = "duplicate-request"
    message: str = "You already have an open request for this service."
    is_notice: bool = True


class InternalError(AccessCoreError):
    """Store or identity-provider fault. The message is always generic."""

    code: str = "internal"
    message: str = "An unexpected error occurred. Check the service logs for details."


class ConfigurationError(AccessCoreError):
    """Invalid or missing configuration."""

    code: str = "configuration-error"


class StorageError(AccessCoreError):
    """Document store failure."""

    code: str = "storage-error"
    message: str = "The document store rejected the operation."


class TransactionConflictError(StorageError):
    """Optimistic transaction kept conflicting and ran out of attempts."""

    code: str = "transaction-conflict"
    message: str = "The transaction could not be committed due to concurrent writes."


class MutationRejectedError(PermissionDeniedError):
    """A store-level failure aborted a business mutation.

    Shaped like a permission error for display; ``context`` carries the
    structured diagnostic payload (path, operation, request data, actor).
    """

    def __init__(self, context: Any, message: str | None = None, **kwargs: Any) -> None:
        self.context = context
        super().__init__(
            message or "Missing or insufficient permissions: the write was rejected by the store.",
            **kwargs,
        )


# ---- Code registry ----------------------------------------------------------

_E = TypeVar("_E", bound=type[AccessCoreError])


class ErrorRegistry:
    """Wire code → exception class, used by clients to rebuild remote errors."""

    def __init__(self) -> None:
        self._by_code: dict[str, type[AccessCoreError]] = {}

    def register(self, code: str, error_cls: type[AccessCoreError]) -> None:
        self._by_code[code] = error_cls

    def get(self, code: str) -> type[AccessCoreError] | None:
        return self._by_code.get(code)

    def all(self) -> dict[str, type[AccessCoreError]]:
        return dict(self._by_code)

    def from_code(self, code: str, message: str | None = None) -> AccessCoreError:
        """Exception for ``code``; unknown and internal codes keep the generic message."""
        error_cls = self._by_code.get(code)
        if error_cls is None or issubclass(error_cls, InternalError):
            return InternalError()
        return error_cls(message)


error_registry = ErrorRegistry()


def register_error(code: str) -> Callable[[_E], _E]:
    """Class decorator adding an AccessCoreError subclass to ``error_registry``."""

    def decorator(cls: _E) -> _E:
        error_registry.register(code, cls)
        return cls

    return cast(Callable[[_E], _E], decorator)


for _cls in (
    InternalError,
    PermissionDeniedError,
    UnauthenticatedError,
    InvalidArgumentError,
    FailedPreconditionError,
    NotFoundError,
    InvalidStateError,
    DuplicateRequestError,
    ConfigurationError,
    StorageError,
    TransactionConflictError,
):
    error_registry.register(_cls.code, _cls)
del _cls


# ---- gRPC -------------------------------------------------------------------

# Error code → grpc.StatusCode member name
_GRPC_STATUS = {
    "permission-denied": "PERMISSION_DENIED",
    "unauthenticated": "UNAUTHENTICATED",
    "invalid-argument": "INVALID_ARGUMENT",
    "failed-precondition": "FAILED_PRECONDITION",
    "invalid-state": "FAILED_PRECONDITION",
    "configuration-error": "FAILED_PRECONDITION",
    "not-found": "NOT_FOUND",
    "duplicate-request": "ALREADY_EXISTS",
    "storage-error": "UNAVAILABLE",
    "transaction-conflict": "ABORTED",
}


def get_grpc_status_code(error: AccessCoreError) -> Any:
    """grpc.StatusCode for ``error``; anything unmapped is INTERNAL.

    grpc is imported lazily so the policy engine runs without it.
    """
    import grpc

    return getattr(grpc.StatusCode, _GRPC_STATUS.get(error.code, "INTERNAL"))


def grpc_error_handler(method):
    """Wrap an async unary servicer method.

    An AccessCoreError aborts the call with its mapped status, its message
    and an ``error-code`` trailer. Anything else is logged with the
    traceback and reported as the generic internal error.
    """

    @functools.wraps(method)
    async def wrapper(self, request, context):
        try:
            return await method(self, request, context)
        except AccessCoreError as e:
            (logger.info if e.is_notice else logger.error)(
                "%s failed: [%s] %s",
                method.__name__,
                e.code,
                e.message,
                extra={"error_code": e.code, "error_details": e.details},
            )
            failure, status = e, get_grpc_status_code(e)
        except Exception:
            logger.exception("%s raised an unexpected error", method.__name__)
            failure = InternalError()
            status = get_grpc_status_code(failure)

        context.set_trailing_metadata([("error-code", failure.code)])
        await context.abort(status, failure.message)

    return wrapper
