"""Store access layer for business code.

- ``run_mutation``: run a transaction on behalf of an actor; store faults
  are reported on the error emitter and raised as MutationRejectedError.
- ``SecuredReader``: run a visibility-scoped query and re-check every
  returned document against the authorization gate.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from ..events import PERMISSION_ERROR, ErrorEmitter, StoreErrorContext, error_emitter
from ..exceptions import AccessCoreError, MutationRejectedError, StorageError
from ..permissions import Resource, RoleSnapshot, is_allowed
from .base import DocumentStore, Filter, Transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")


def report_rejection(
    context: StoreErrorContext,
    *,
    emitter: Optional[ErrorEmitter] = None,
) -> MutationRejectedError:
    """Emit ``context`` on the permission-error channel and build the error."""
    (emitter or error_emitter).emit(PERMISSION_ERROR, context)
    return MutationRejectedError(
        context,
        path=context.path,
        operation=context.operation,
        actor=context.actor,
    )


async def run_mutation(
    store: DocumentStore,
    fn: Callable[[Transaction], Awaitable[T]],
    *,
    path: str,
    operation: str,
    actor: Optional[str],
    request_data: Optional[dict[str, Any]] = None,
    emitter: Optional[ErrorEmitter] = None,
) -> T:
    """Run ``fn`` in a transaction for ``actor``.

    Business errors raised by ``fn`` propagate untouched. Store failures
    (storage errors, exhausted retries, backend exceptions) abort the whole
    transaction and surface as MutationRejectedError.
    """
    try:
        return await store.run_transaction(fn)
    except StorageError as e:
        cause: BaseException = e
    except AccessCoreError:
        raise
    except Exception as e:
        cause = e

    context = StoreErrorContext(
        path=path,
        operation=operation,
        request_data=request_data,
        actor=actor,
        cause=f"{type(cause).__name__}: {cause}",
    )
    logger.error(
        "%s on %s rejected by the store: %s",
        operation,
        path,
        cause,
        exc_info=cause,
        extra={"actor_id": actor, "path": path, "operation": operation},
    )
    raise report_rejection(context, emitter=emitter) from cause


class SecuredReader:
    """Query wrapper that re-validates results against the gate.

    The query filters already scope what is fetched; this layer refuses to
    hand back any document the gate would not let the actor see.
    """

    def __init__(self, store: DocumentStore, *, emitter: Optional[ErrorEmitter] = None) -> None:
        self._store = store
        self._emitter = emitter

    async def query(
        self,
        actor: RoleSnapshot,
        collection: str,
        filters: Iterable[Filter] = (),
        *,
        action: str,
        resource_for: Callable[[dict[str, Any]], Resource],
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        filters = tuple(filters)
        documents = await self._store.query(
            collection, filters, order_by=order_by, descending=descending
        )
        for doc in documents:
            if not is_allowed(actor, action, resource_for(doc)):
                context = StoreErrorContext(
                    path=f"{collection}/{doc['id']}",
                    operation="list",
                    actor=actor.uid,
                    cause="query returned a document outside the actor's visibility",
                    extra={"filters": [f"{f.field} {f.op} {f.value!r}" for f in filters]},
                )
                logger.error(
                    "Visibility violation on %s for actor %s",
                    context.path,
                    actor.uid,
                    extra={"actor_id": actor.uid, "path": context.path},
                )
                raise report_rejection(context, emitter=self._emitter)
        return documents


__all__ = ["SecuredReader", "report_rejection", "run_mutation"]
