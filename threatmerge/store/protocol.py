"""Backend Protocols + InMemoryBlobStore.

The merge engine talks to its two backends only through these interfaces:

    BlobStore          — key-value store holding generated threat-model documents
    RelationalStore    — structured store; hands out one RelationalSession per
                         transaction
    RelationalSession  — parameterized queries inside an open transaction

Layout:
    protocol.py      — Protocols + InMemoryBlobStore
    blob.py          — BlobDocumentRepository (key family of one blob document)
    redis_store.py   — RedisBlobStore (redis.asyncio, WATCH/MULTI compare-and-set)
    sqlite_store.py  — SQLiteThreatStore (aiosqlite, one long-lived connection)
    factory.py       — create_relational_store() / create_blob_store()
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncContextManager, Mapping, Optional, Protocol, runtime_checkable

from threatmerge.models.threat import Safeguard, Threat, ThreatModel
from threatmerge.utils.logger import get_logger

logger = get_logger(__name__)


# ─── BlobStore Protocol ───────────────────────────────────────────────────────


@runtime_checkable
class BlobStore(Protocol):
    """Pluggable key-value backend interface.

    Implementations: RedisBlobStore (default), InMemoryBlobStore.
    Values are always strings. Implementations raise their library's own
    exceptions; BlobDocumentRepository translates them.
    """

    async def get(self, key: str) -> Optional[str]:
        """Return the value stored at key, or None when the key is absent."""
        ...

    async def set(self, key: str, value: str) -> None:
        """Store value at key unconditionally."""
        ...

    async def compare_and_set_many(
        self, guard_key: str, expected: Optional[str], values: Mapping[str, str]
    ) -> bool:
        """Atomically write every key in values if guard_key still equals expected.

        expected=None means "guard_key must be absent". values may include
        guard_key itself. Returns False, writing nothing, when the guard differs.
        """
        ...

    async def health_check(self) -> bool:
        """Returns True if the backend is operational. Must not raise."""
        ...

    async def close(self) -> None:
        """Release connections. Called during graceful shutdown."""
        ...


# ─── Relational Protocols ─────────────────────────────────────────────────────


@runtime_checkable
class RelationalSession(Protocol):
    """Queries against the relational backend inside one open transaction.

    Every method raises BackendError on a backend failure; the owning
    transaction() context then rolls back.
    """

    async def get_model(self, model_id: str) -> Optional[ThreatModel]:
        ...

    async def list_threats(self, model_id: str) -> list[Threat]:
        ...

    async def insert_threat(self, model_id: str, threat: Threat) -> Threat:
        """Insert threat under model_id; returns a copy carrying the new row id."""
        ...

    async def list_safeguards(self, threat_id: str) -> list[Safeguard]:
        ...

    async def find_safeguard_id(self, model_id: str, title: str) -> Optional[str]:
        ...

    async def insert_safeguard(self, model_id: str, safeguard: Safeguard) -> str:
        ...

    async def link_safeguard(self, threat_id: str, safeguard_id: str, effectiveness: int) -> None:
        ...

    async def record_merge(
        self, model_id: str, merge_metadata: dict[str, Any], status: str
    ) -> ThreatModel:
        """Persist merge metadata, bump version, set status; return the updated row."""
        ...


@runtime_checkable
class RelationalStore(Protocol):
    """Pluggable relational backend interface.

    Implementation: SQLiteThreatStore.
    """

    def transaction(self) -> AsyncContextManager[RelationalSession]:
        """Open a transaction; commit on clean exit, roll back on any exception."""
        ...

    async def health_check(self) -> bool:
        ...

    async def close(self) -> None:
        ...


# ─── InMemoryBlobStore ────────────────────────────────────────────────────────


class InMemoryBlobStore:
    """Dict-backed BlobStore used in tests and for local runs without Redis.

    compare_and_set_many is atomic with respect to other coroutines on the same
    event loop (guarded by an asyncio.Lock).
    """

    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self._data: dict[str, str] = dict(initial or {})
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def compare_and_set_many(
        self, guard_key: str, expected: Optional[str], values: Mapping[str, str]
    ) -> bool:
        async with self._lock:
            if self._data.get(guard_key) != expected:
                return False
            self._data.update(values)
            return True

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        logger.debug("in_memory_blob_store_closed", keys=len(self._data))

    def snapshot(self) -> dict[str, str]:
        """Copy of the current contents (test helper)."""
        return dict(self._data)


# ─── Protocol compliance assertion ────────────────────────────────────────────
# Runs at import time — catches protocol drift immediately.
assert isinstance(InMemoryBlobStore(), BlobStore), (
    "InMemoryBlobStore does not satisfy BlobStore protocol — implementation error"
)
