"""Document store adapter.

Defines:
- DocumentStore / Transaction: async store contract with optimistic transactions
- Filter, DOCUMENT_ID, SERVER_TIMESTAMP: query and write primitives
- MemoryDocumentStore / RedisDocumentStore: backends
- SecuredReader / run_mutation: gate-aware access layer
- create_store(): backend from PortalConfig
"""

from __future__ import annotations

from typing import Optional

from ..config import PortalConfig, StoreBackendType
from ..exceptions import ConfigurationError
from .base import DOCUMENT_ID, SERVER_TIMESTAMP, DocumentStore, Filter, Transaction
from .memory import MemoryDocumentStore
from .secured import SecuredReader, report_rejection, run_mutation


def create_store(config: Optional[PortalConfig] = None) -> DocumentStore:
    """Build the configured store backend.

    Raises:
        ConfigurationError: redis backend without REDIS_URL
    """
    if config is None:
        from ..config import load_config_from_env

        config = load_config_from_env()

    if config.store_backend == StoreBackendType.REDIS:
        if not config.redis_url:
            raise ConfigurationError("STORE_BACKEND=redis requires REDIS_URL")
        from .redis_store import RedisDocumentStore

        return RedisDocumentStore.from_url(
            config.redis_url,
            prefix=config.store_prefix,
            max_attempts=config.transaction_max_attempts,
        )

    return MemoryDocumentStore(max_attempts=config.transaction_max_attempts)


__all__ = [
    "DOCUMENT_ID",
    "DocumentStore",
    "Filter",
    "MemoryDocumentStore",
    "SERVER_TIMESTAMP",
    "SecuredReader",
    "Transaction",
    "create_store",
    "report_rejection",
    "run_mutation",
]
