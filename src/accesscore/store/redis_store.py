"""Redis-backed document store.

Layout: one hash per collection at ``{prefix}:{collection}``; hash field =
document id, value = JSON body (datetimes tagged as ``{"__datetime__": iso}``).

Transactions use WATCH/MULTI/EXEC: every collection hash a transaction
reads, and every hash it writes, is watched; EXEC fails with WatchError
when any of them changed and the callback is re-run.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from ..exceptions import StorageError
from .base import (
    DocumentStore,
    Filter,
    RetryTransaction,
    Transaction,
    apply_write,
    select_documents,
)

logger = logging.getLogger(__name__)

_DATETIME_TAG = "__datetime__"


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return {_DATETIME_TAG: value.isoformat()}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode_object(obj: dict[str, Any]) -> Any:
    if len(obj) == 1 and _DATETIME_TAG in obj:
        return datetime.fromisoformat(obj[_DATETIME_TAG])
    return obj


def encode_document(body: dict[str, Any]) -> str:
    return json.dumps(body, default=_encode_value, sort_keys=True)


def decode_document(raw: str | bytes) -> dict[str, Any]:
    return json.loads(raw, object_hook=_decode_object)


class _RedisTransaction(Transaction):
    def __init__(self, store: RedisDocumentStore, pipe: Any) -> None:
        super().__init__()
        self._store = store
        self.pipe = pipe
        self.watched: set[str] = set()

    async def watch(self, key: str) -> None:
        if key not in self.watched:
            await self.pipe.watch(key)
            self.watched.add(key)

    async def _get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        key = self._store.key(collection)
        await self.watch(key)
        raw = await self.pipe.hget(key, doc_id)
        if raw is None:
            return None
        return {"id": doc_id, **decode_document(raw)}

    async def _query(
        self,
        collection: str,
        filters: tuple[Filter, ...],
        order_by: Optional[str],
        descending: bool,
    ) -> list[dict[str, Any]]:
        key = self._store.key(collection)
        await self.watch(key)
        raw = await self.pipe.hgetall(key)
        documents = {doc_id: decode_document(body) for doc_id, body in raw.items()}
        return select_documents(documents, filters, order_by, descending)


class RedisDocumentStore(DocumentStore):
    """Document store over ``redis.asyncio``."""

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        prefix: str = "accessportal",
        max_attempts: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(max_attempts=max_attempts, clock=clock)
        self._redis = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisDocumentStore:
        return cls(aioredis.from_url(url, decode_responses=True), **kwargs)

    def key(self, collection: str) -> str:
        return f"{self._prefix}:{collection}"

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        try:
            raw = await self._redis.hget(self.key(collection), doc_id)
        except RedisError as e:
            raise StorageError(f"Redis read failed: {e}") from e
        if raw is None:
            return None
        return {"id": doc_id, **decode_document(raw)}

    async def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        try:
            raw = await self._redis.hgetall(self.key(collection))
        except RedisError as e:
            raise StorageError(f"Redis read failed: {e}") from e
        documents = {doc_id: decode_document(body) for doc_id, body in raw.items()}
        return select_documents(documents, filters, order_by, descending)

    def _begin(self) -> Transaction:
        return _RedisTransaction(self, self._redis.pipeline(transaction=True))

    async def _commit(self, txn: Transaction) -> None:
        assert isinstance(txn, _RedisTransaction)
        pipe = txn.pipe

        # Final body per touched document, starting from the committed state
        finals: dict[tuple[str, str], Optional[dict[str, Any]]] = {}
        now = self.now()
        try:
            for write in txn.writes:
                slot = (write.collection, write.doc_id)
                if slot not in finals:
                    key = self.key(write.collection)
                    await txn.watch(key)
                    raw = await pipe.hget(key, write.doc_id)
                    finals[slot] = decode_document(raw) if raw is not None else None
                finals[slot] = apply_write(finals[slot], write, now)

            if not txn.writes and not txn.watched:
                return

            pipe.multi()
            for (collection, doc_id), body in finals.items():
                if body is None:
                    pipe.hdel(self.key(collection), doc_id)
                else:
                    pipe.hset(self.key(collection), doc_id, encode_document(body))
            await pipe.execute()
        except WatchError as e:
            raise RetryTransaction(str(e)) from e
        except RedisError as e:
            logger.error("Redis transaction failed: %s", e)
            raise StorageError(f"Redis transaction failed: {e}") from e

    async def _release(self, txn: Transaction) -> None:
        assert isinstance(txn, _RedisTransaction)
        await txn.pipe.reset()

    async def close(self) -> None:
        await self._redis.aclose()


__all__ = ["RedisDocumentStore", "decode_document", "encode_document"]
