"""Store factory — backend construction and initialization.

Relational backend:
  SQLiteThreatStore at config.relational.path
  (THREATMERGE_DB_PATH is already folded into the config by load_config())

Blob backend selection:
  1. blob.url starting with "memory://": InMemoryBlobStore (local runs, tests)
  2. Otherwise: RedisBlobStore (default, redis://localhost:6379/0)

PRAGMA version guard:
  SQLiteThreatStore.initialize() raises RuntimeError if PRAGMA user_version
  is not 0 (fresh) or 1 (expected). The FastAPI lifespan propagates this
  RuntimeError to refuse startup.
"""

from __future__ import annotations

from threatmerge.config import Config
from threatmerge.store.protocol import BlobStore, InMemoryBlobStore, RelationalStore
from threatmerge.utils.logger import get_logger

logger = get_logger(__name__)

_MEMORY_URL_SCHEME = "memory://"


async def create_relational_store(config: Config) -> RelationalStore:
    """Create and initialize the SQLite relational store.

    Raises:
      RuntimeError: If the database has an incompatible schema version.
    """
    from threatmerge.store.sqlite_store import SQLiteThreatStore

    store = SQLiteThreatStore(db_path=config.relational.path)
    await store.initialize()
    logger.info(
        "relational_store_selected",
        backend="SQLiteThreatStore",
        db_path=config.relational.path,
    )
    return store


def create_blob_store(config: Config) -> BlobStore:
    """Create the blob store named by config.blob.url.

    The Redis client connects lazily; an unreachable server shows up in
    health_check() and on the first merge, not here.
    """
    url = config.blob.url
    if url.startswith(_MEMORY_URL_SCHEME):
        logger.info("blob_store_selected", backend="InMemoryBlobStore")
        return InMemoryBlobStore()

    from threatmerge.store.redis_store import RedisBlobStore, _redact_url

    logger.info("blob_store_selected", backend="RedisBlobStore", url=_redact_url(url))
    return RedisBlobStore(url=url)
