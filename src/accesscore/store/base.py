"""Document store contract.

The portal persists everything as schemaless documents grouped into named
collections. This module defines what every backend must provide:

- point reads, filtered/ordered queries and single-document writes
- ``run_transaction(fn)``: optimistic multi-document transactions

Transaction rules:
- ``fn(txn)`` reads through ``txn.get`` / ``txn.query`` and stages writes
  through ``txn.create`` / ``txn.set`` / ``txn.update`` / ``txn.delete``
- every read must happen before the first staged write
- nothing staged is visible to anyone until commit; commit is all-or-nothing
- if a collection read by the transaction changed before commit, ``fn`` is
  run again (up to ``max_attempts``), then TransactionConflictError
"""

from __future__ import annotations

import copy
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from ..exceptions import InvalidArgumentError, NotFoundError, StorageError, TransactionConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Filter field that targets the document id instead of a body field
DOCUMENT_ID = "__name__"


class _ServerTimestamp:
    """Sentinel replaced by the store clock's time when a write commits."""

    _instance: Optional[_ServerTimestamp] = None

    def __new__(cls) -> _ServerTimestamp:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __deepcopy__(self, memo: dict) -> _ServerTimestamp:
        return self

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_document_id() -> str:
    return uuid.uuid4().hex[:20]


# ── Filters ─────────────────────────────────────────────


@dataclass(frozen=True)
class Filter:
    """Query predicate. Supported operators: ``==`` and ``in``."""

    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in ("==", "in"):
            raise InvalidArgumentError(f"Unsupported filter operator: {self.op!r}", field="op")
        if self.op == "in" and not isinstance(self.value, (list, tuple, set, frozenset)):
            raise InvalidArgumentError("'in' filters need a list of values", field=self.field)

    def matches(self, doc_id: str, data: dict[str, Any]) -> bool:
        actual = doc_id if self.field == DOCUMENT_ID else data.get(self.field)
        if self.op == "==":
            return actual == self.value
        return actual in self.value


def select_documents(
    documents: dict[str, dict[str, Any]],
    filters: Iterable[Filter] = (),
    order_by: Optional[str] = None,
    descending: bool = False,
) -> list[dict[str, Any]]:
    """Evaluate a query over ``{doc_id: body}``.

    Returned documents are deep copies with ``id`` included. As with
    Firestore, ordering by a field drops documents that lack it.
    """
    filters = tuple(filters)
    rows = [
        {"id": doc_id, **copy.deepcopy(body)}
        for doc_id, body in documents.items()
        if all(f.matches(doc_id, body) for f in filters)
    ]
    if order_by:
        rows = [r for r in rows if r.get(order_by) is not None]
        rows.sort(key=lambda r: r[order_by], reverse=descending)
    return rows


# ── Writes ──────────────────────────────────────────────


class WriteKind(str, Enum):
    CREATE = "create"
    SET = "set"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Write:
    """A staged write. ``data`` is None for deletes."""

    kind: WriteKind
    collection: str
    doc_id: str
    data: Optional[dict[str, Any]] = None

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.doc_id}"


def resolve_server_timestamps(data: dict[str, Any], now: datetime) -> dict[str, Any]:
    resolved: dict[str, Any] = {}
    for key, value in data.items():
        if value is SERVER_TIMESTAMP:
            resolved[key] = now
        elif isinstance(value, dict):
            resolved[key] = resolve_server_timestamps(value, now)
        else:
            resolved[key] = value
    return resolved


def apply_write(
    current: Optional[dict[str, Any]],
    write: Write,
    now: datetime,
) -> Optional[dict[str, Any]]:
    """Return the document body after ``write`` (None = deleted).

    ``current`` is never mutated.

    Raises:
        StorageError: create on an existing document
        NotFoundError: update on a missing document
    """
    if write.kind is WriteKind.DELETE:
        return None

    data = resolve_server_timestamps(write.data or {}, now)

    if write.kind is WriteKind.CREATE:
        if current is not None:
            raise StorageError(f"Document already exists: {write.path}", path=write.path)
        return data

    if write.kind is WriteKind.SET:
        return data

    if current is None:
        raise NotFoundError(f"No document to update: {write.path}", path=write.path)
    merged = copy.deepcopy(current)
    merged.update(data)
    return merged


# ── Transaction ─────────────────────────────────────────


class RetryTransaction(Exception):
    """Raised by a backend commit when the transaction's read set changed."""


class Transaction(ABC):
    """Read-then-write unit of work passed to ``run_transaction`` callbacks."""

    def __init__(self) -> None:
        self._writes: list[Write] = []

    @property
    def writes(self) -> tuple[Write, ...]:
        return tuple(self._writes)

    def _check_readable(self) -> None:
        if self._writes:
            raise StorageError("Transactions require all reads to be executed before all writes.")

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        self._check_readable()
        return await self._get(collection, doc_id)

    async def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        self._check_readable()
        return await self._query(collection, tuple(filters), order_by, descending)

    def create(self, collection: str, data: dict[str, Any], doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or new_document_id()
        self._writes.append(Write(WriteKind.CREATE, collection, doc_id, copy.deepcopy(data)))
        return doc_id

    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._writes.append(Write(WriteKind.SET, collection, doc_id, copy.deepcopy(data)))

    def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._writes.append(Write(WriteKind.UPDATE, collection, doc_id, copy.deepcopy(data)))

    def delete(self, collection: str, doc_id: str) -> None:
        self._writes.append(Write(WriteKind.DELETE, collection, doc_id))

    @abstractmethod
    async def _get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]: ...

    @abstractmethod
    async def _query(
        self,
        collection: str,
        filters: tuple[Filter, ...],
        order_by: Optional[str],
        descending: bool,
    ) -> list[dict[str, Any]]: ...


# ── Store ───────────────────────────────────────────────


class DocumentStore(ABC):
    """Base class for document store backends.

    Subclasses implement ``get``, ``query``, ``_begin`` and ``_commit``;
    single-document writes are one-write transactions.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if max_attempts < 1:
            raise InvalidArgumentError("max_attempts must be >= 1", field="max_attempts")
        self.max_attempts = max_attempts
        self._clock = clock or utc_now

    def now(self) -> datetime:
        return self._clock()

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        """Return the document (with ``id``) or None."""

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        """Return matching documents (each with ``id``)."""

    @abstractmethod
    def _begin(self) -> Transaction: ...

    @abstractmethod
    async def _commit(self, txn: Transaction) -> None:
        """Apply ``txn.writes`` atomically or raise RetryTransaction."""

    async def _release(self, txn: Transaction) -> None:
        """Free backend resources held by ``txn``."""

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run ``fn`` in an optimistic transaction and return its result.

        Exceptions raised by ``fn`` abort the attempt without retry.

        Raises:
            TransactionConflictError: read set kept changing for max_attempts tries
        """
        for attempt in range(1, self.max_attempts + 1):
            txn = self._begin()
            try:
                result = await fn(txn)
                await self._commit(txn)
                return result
            except RetryTransaction:
                logger.debug("Transaction conflict, attempt %d/%d", attempt, self.max_attempts)
            finally:
                await self._release(txn)

        logger.warning("Transaction gave up after %d attempts", self.max_attempts)
        raise TransactionConflictError(attempts=self.max_attempts)

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Create a document with a generated id and return the id."""

        async def _add(txn: Transaction) -> str:
            return txn.create(collection, data)

        return await self.run_transaction(_add)

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Create or overwrite a document."""

        async def _set(txn: Transaction) -> None:
            txn.set(collection, doc_id, data)

        await self.run_transaction(_set)

    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Merge fields into an existing document (NotFoundError if missing)."""

        async def _update(txn: Transaction) -> None:
            txn.update(collection, doc_id, data)

        await self.run_transaction(_update)

    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document. Deleting a missing document is a no-op."""

        async def _delete(txn: Transaction) -> None:
            txn.delete(collection, doc_id)

        await self.run_transaction(_delete)

    async def close(self) -> None:
        """Release connections held by the backend."""


__all__ = [
    "DOCUMENT_ID",
    "DocumentStore",
    "Filter",
    "RetryTransaction",
    "SERVER_TIMESTAMP",
    "Transaction",
    "Write",
    "WriteKind",
    "apply_write",
    "new_document_id",
    "resolve_server_timestamps",
    "select_documents",
    "utc_now",
]
