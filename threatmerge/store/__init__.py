"""threatmerge storage backends.

Re-exports the public API for ergonomic imports:

    from threatmerge.store import BlobStore, RelationalStore, BlobDocumentRepository

Layout:
    protocol.py      — BlobStore / RelationalStore / RelationalSession Protocols + InMemoryBlobStore
    blob.py          — BlobDocumentRepository (key family of one blob document)
    redis_store.py   — RedisBlobStore (redis.asyncio, WATCH/MULTI compare-and-set)
    sqlite_store.py  — SQLiteThreatStore (aiosqlite, WAL mode, PRAGMA version guard)
    factory.py       — create_relational_store() / create_blob_store()
"""

from threatmerge.store.blob import BlobDocumentRepository, BlobKeys
from threatmerge.store.protocol import (
    BlobStore,
    InMemoryBlobStore,
    RelationalSession,
    RelationalStore,
)

__all__ = [
    "BlobDocumentRepository",
    "BlobKeys",
    "BlobStore",
    "InMemoryBlobStore",
    "RelationalSession",
    "RelationalStore",
]
