"""In-process document store for tests and local development."""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from .base import (
    DocumentStore,
    Filter,
    RetryTransaction,
    Transaction,
    Write,
    apply_write,
    select_documents,
)


class _MemoryTransaction(Transaction):
    def __init__(self, store: MemoryDocumentStore) -> None:
        super().__init__()
        self._store = store
        # collection -> version observed at first read
        self.read_versions: dict[str, int] = {}

    def _observe(self, collection: str) -> None:
        self.read_versions.setdefault(collection, self._store._versions.get(collection, 0))

    async def _get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        self._observe(collection)
        return await self._store.get(collection, doc_id)

    async def _query(
        self,
        collection: str,
        filters: tuple[Filter, ...],
        order_by: Optional[str],
        descending: bool,
    ) -> list[dict[str, Any]]:
        self._observe(collection)
        return await self._store.query(collection, filters, order_by=order_by, descending=descending)


class MemoryDocumentStore(DocumentStore):
    """Dict-backed store.

    Commits are serialised by an asyncio lock and applied to copies of the
    affected collections, which replace the live ones only when every write
    succeeded. Conflicts are detected per collection.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(max_attempts=max_attempts, clock=clock)
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._versions: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        body = self._collections.get(collection, {}).get(doc_id)
        if body is None:
            return None
        return {"id": doc_id, **copy.deepcopy(body)}

    async def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        return select_documents(self._collections.get(collection, {}), filters, order_by, descending)

    def _begin(self) -> Transaction:
        return _MemoryTransaction(self)

    async def _commit(self, txn: Transaction) -> None:
        assert isinstance(txn, _MemoryTransaction)
        async with self._lock:
            for collection, version in txn.read_versions.items():
                if self._versions.get(collection, 0) != version:
                    raise RetryTransaction(collection)

            if not txn.writes:
                return

            now = self.now()
            staged = {
                w.collection: dict(self._collections.get(w.collection, {}))
                for w in txn.writes
            }
            for write in txn.writes:
                self._apply_write(staged, write, now)

            self._collections.update(staged)
            for collection in staged:
                self._versions[collection] = self._versions.get(collection, 0) + 1

    def _apply_write(
        self,
        staged: dict[str, dict[str, dict[str, Any]]],
        write: Write,
        now: datetime,
    ) -> None:
        documents = staged[write.collection]
        body = apply_write(documents.get(write.doc_id), write, now)
        if body is None:
            documents.pop(write.doc_id, None)
        else:
            documents[write.doc_id] = body

    def dump(self) -> dict[str, dict[str, dict[str, Any]]]:
        """Deep copy of every collection (debugging and tests)."""
        return copy.deepcopy(self._collections)


__all__ = ["MemoryDocumentStore"]
