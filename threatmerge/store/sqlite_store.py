"""SQLiteThreatStore — aiosqlite-based relational backend.

Uses aiosqlite EXCLUSIVELY. The stdlib sqlite3 synchronous module is never
called directly from this package.

Features:
  - Long-lived connection: opened in initialize(), closed in close()
  - WAL mode: PRAGMA journal_mode=WAL
  - Schema version guard: PRAGMA user_version=1 — RuntimeError on mismatch
  - Explicit transactions: connection opened with isolation_level=None, the
    transaction() context issues BEGIN / COMMIT / ROLLBACK itself
  - One transaction at a time: a merge holds the connection for its whole
    duration, other callers of transaction() wait on an asyncio.Lock
  - All statements parameterized; aiosqlite.Error is wrapped as BackendError
"""

from __future__ import annotations

import asyncio
import json
import os
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

import aiosqlite

from threatmerge.errors import BackendError
from threatmerge.models.threat import ModelKind, Safeguard, Threat, ThreatModel
from threatmerge.utils.logger import get_logger
from threatmerge.utils.ulid import generate_ulid

logger = get_logger(__name__)

# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS threat_models (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    description     TEXT,
    status          TEXT NOT NULL DEFAULT 'Draft'
                    CHECK(status IN ('Draft', 'In Review', 'Approved', 'Deprecated')),
    version         INTEGER NOT NULL DEFAULT 1,
    merge_metadata  TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS threats (
    id                 TEXT PRIMARY KEY,
    threat_model_id    TEXT NOT NULL REFERENCES threat_models(id) ON DELETE CASCADE,
    title              TEXT NOT NULL,
    description        TEXT,
    mitigation         TEXT,
    risk_score         INTEGER CHECK(risk_score BETWEEN 1 AND 100 OR risk_score IS NULL),
    impact             INTEGER,
    likelihood         INTEGER,
    source_model_id    TEXT,
    source_model_name  TEXT,
    created_at         TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS safeguards (
    id               TEXT PRIMARY KEY,
    threat_model_id  TEXT NOT NULL REFERENCES threat_models(id) ON DELETE CASCADE,
    title            TEXT NOT NULL,
    description      TEXT,
    type             TEXT,
    status           TEXT,
    created_at       TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS threat_safeguards (
    threat_id      TEXT NOT NULL REFERENCES threats(id) ON DELETE CASCADE,
    safeguard_id   TEXT NOT NULL REFERENCES safeguards(id) ON DELETE CASCADE,
    effectiveness  INTEGER CHECK(effectiveness BETWEEN 0 AND 100 OR effectiveness IS NULL),
    PRIMARY KEY (threat_id, safeguard_id)
);

CREATE INDEX IF NOT EXISTS idx_threats_model
    ON threats(threat_model_id);

CREATE INDEX IF NOT EXISTS idx_safeguards_model_title
    ON safeguards(threat_model_id, title);
"""

_SCHEMA_VERSION = 1


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─── Row deserialisers ────────────────────────────────────────────────────────


def _parse_merge_metadata(raw: Optional[str], model_id: str) -> Optional[dict[str, Any]]:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("threat_model_merge_metadata_unreadable", model_id=model_id)
        return None


def _row_to_model(row: aiosqlite.Row) -> ThreatModel:
    return ThreatModel(
        id=row["id"],
        name=row["name"],
        kind=ModelKind.RELATIONAL,
        description=row["description"] or "",
        version=row["version"],
        status=row["status"],
        threat_count=row["threat_count"],
        merge_metadata=_parse_merge_metadata(row["merge_metadata"], row["id"]),
    )


def _row_to_threat(row: aiosqlite.Row) -> Threat:
    return Threat(
        id=row["id"],
        model_id=row["threat_model_id"],
        title=row["title"],
        description=row["description"] or "",
        mitigation=row["mitigation"] or "",
        risk_score=row["risk_score"],
        impact=row["impact"],
        likelihood=row["likelihood"],
        source_model_id=row["source_model_id"],
        source_model_name=row["source_model_name"],
    )


def _row_to_safeguard(row: aiosqlite.Row) -> Safeguard:
    return Safeguard(
        id=row["id"],
        model_id=row["threat_model_id"],
        title=row["title"],
        description=row["description"] or "",
        type=row["type"],
        status=row["status"],
        effectiveness=row["effectiveness"],
    )


_SELECT_MODEL_SQL = """
SELECT tm.*,
       (SELECT COUNT(*) FROM threats t WHERE t.threat_model_id = tm.id) AS threat_count
FROM threat_models tm
WHERE tm.id = ?
"""


# ─── SQLiteSession ────────────────────────────────────────────────────────────


class SQLiteSession:
    """RelationalSession bound to the store's connection for one transaction."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> aiosqlite.Cursor:
        try:
            return await self._db.execute(sql, params)
        except aiosqlite.Error as exc:
            raise BackendError(f"Relational query failed: {exc}") from exc

    async def _fetchone(self, sql: str, params: tuple[Any, ...]) -> Optional[aiosqlite.Row]:
        cursor = await self._execute(sql, params)
        try:
            return await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise BackendError(f"Relational fetch failed: {exc}") from exc

    async def _fetchall(self, sql: str, params: tuple[Any, ...]) -> list[aiosqlite.Row]:
        cursor = await self._execute(sql, params)
        try:
            return list(await cursor.fetchall())
        except aiosqlite.Error as exc:
            raise BackendError(f"Relational fetch failed: {exc}") from exc

    async def get_model(self, model_id: str) -> Optional[ThreatModel]:
        row = await self._fetchone(_SELECT_MODEL_SQL, (model_id,))
        return _row_to_model(row) if row is not None else None

    async def create_model(
        self,
        name: str,
        description: str = "",
        status: str = "Draft",
        model_id: Optional[str] = None,
    ) -> ThreatModel:
        """Seeding API: insert a new threat model row.

        Not part of RelationalSession; the merge engine never creates models.
        Used to populate a database for local runs and tests.
        """
        new_id = model_id or generate_ulid()
        now = _utcnow()
        await self._execute(
            """INSERT INTO threat_models
               (id, name, description, status, version, created_at, updated_at)
               VALUES (?,?,?,?,1,?,?)""",
            (new_id, name, description, status, now, now),
        )
        model = await self.get_model(new_id)
        assert model is not None
        return model

    async def list_threats(self, model_id: str) -> list[Threat]:
        rows = await self._fetchall(
            "SELECT * FROM threats WHERE threat_model_id = ? ORDER BY rowid",
            (model_id,),
        )
        return [_row_to_threat(row) for row in rows]

    async def insert_threat(self, model_id: str, threat: Threat) -> Threat:
        new_id = generate_ulid()
        await self._execute(
            """INSERT INTO threats
               (id, threat_model_id, title, description, mitigation, risk_score,
                impact, likelihood, source_model_id, source_model_name, created_at)
               VALUES (?,?,?,?,?,?,?,?,?,?,?)""",
            (
                new_id,
                model_id,
                threat.title,
                threat.description,
                threat.mitigation,
                threat.risk_score,
                threat.impact,
                threat.likelihood,
                threat.source_model_id,
                threat.source_model_name,
                _utcnow(),
            ),
        )
        return replace(threat, id=new_id, model_id=model_id)

    async def list_safeguards(self, threat_id: str) -> list[Safeguard]:
        rows = await self._fetchall(
            """SELECT s.*, ts.effectiveness AS effectiveness
               FROM safeguards s
               JOIN threat_safeguards ts ON s.id = ts.safeguard_id
               WHERE ts.threat_id = ?
               ORDER BY s.rowid""",
            (threat_id,),
        )
        return [_row_to_safeguard(row) for row in rows]

    async def find_safeguard_id(self, model_id: str, title: str) -> Optional[str]:
        row = await self._fetchone(
            "SELECT id FROM safeguards WHERE threat_model_id = ? AND title = ? LIMIT 1",
            (model_id, title),
        )
        return row["id"] if row is not None else None

    async def insert_safeguard(self, model_id: str, safeguard: Safeguard) -> str:
        new_id = generate_ulid()
        await self._execute(
            """INSERT INTO safeguards
               (id, threat_model_id, title, description, type, status, created_at)
               VALUES (?,?,?,?,?,?,?)""",
            (
                new_id,
                model_id,
                safeguard.title,
                safeguard.description,
                safeguard.type,
                safeguard.status,
                _utcnow(),
            ),
        )
        return new_id

    async def link_safeguard(self, threat_id: str, safeguard_id: str, effectiveness: int) -> None:
        await self._execute(
            """INSERT OR IGNORE INTO threat_safeguards (threat_id, safeguard_id, effectiveness)
               VALUES (?,?,?)""",
            (threat_id, safeguard_id, effectiveness),
        )

    async def record_merge(
        self, model_id: str, merge_metadata: dict[str, Any], status: str
    ) -> ThreatModel:
        await self._execute(
            """UPDATE threat_models
               SET version = version + 1,
                   status = ?,
                   merge_metadata = ?,
                   updated_at = ?
               WHERE id = ?""",
            (status, json.dumps(merge_metadata), _utcnow(), model_id),
        )
        model = await self.get_model(model_id)
        if model is None:
            raise BackendError(f"Threat model {model_id} disappeared during merge")
        return model


# ─── SQLiteThreatStore ────────────────────────────────────────────────────────


class SQLiteThreatStore:
    """Async SQLite relational store using aiosqlite exclusively.

    Default path: ~/.threatmerge/threatmodels.db
    Override via: THREATMERGE_DB_PATH environment variable (see factory.py)
    Or pass db_path explicitly (used in tests).

    Usage:
        store = SQLiteThreatStore(db_path)
        await store.initialize()   # raises RuntimeError on schema version mismatch
        async with store.transaction() as session:
            model = await session.get_model(model_id)
        await store.close()
    """

    def __init__(self, db_path: str = "~/.threatmerge/threatmodels.db") -> None:
        self._db_path: str = os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None
        self._tx_lock = asyncio.Lock()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the connection, enable WAL + foreign keys, create/verify schema.

        Raises:
            RuntimeError: If PRAGMA user_version is neither 0 nor 1.
        """
        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path, isolation_level=None)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute("PRAGMA foreign_keys=ON;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            logger.info(
                "threat_db_schema_created",
                db_path=self._db_path,
                schema_version=_SCHEMA_VERSION,
            )
        elif current_version == _SCHEMA_VERSION:
            logger.info(
                "threat_db_schema_ok",
                db_path=self._db_path,
                schema_version=current_version,
            )
        else:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported threat model database schema version: {current_version}. "
                f"Delete {self._db_path} to reset or migrate it to version {_SCHEMA_VERSION}."
            )

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("threat_db_closed", db_path=self._db_path)

    # ── Transactions ──────────────────────────────────────────────────────────

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLiteSession]:
        """Run the body in one transaction on the shared connection.

        COMMIT on clean exit. Any exception rolls back every statement issued
        in the body and propagates unchanged; a failing COMMIT is wrapped as
        BackendError.
        """
        if self._db is None:
            raise BackendError("Relational store not initialized — call initialize() first")
        db = self._db

        async with self._tx_lock:
            try:
                await db.execute("BEGIN")
            except aiosqlite.Error as exc:
                raise BackendError(f"Could not open transaction: {exc}") from exc

            try:
                yield SQLiteSession(db)
            except BaseException:
                await self._rollback(db)
                raise

            try:
                await db.execute("COMMIT")
            except aiosqlite.Error as exc:
                await self._rollback(db)
                raise BackendError(f"Commit failed: {exc}") from exc

    async def _rollback(self, db: aiosqlite.Connection) -> None:
        try:
            await db.execute("ROLLBACK")
            logger.warning("threat_db_transaction_rolled_back", db_path=self._db_path)
        except aiosqlite.Error as exc:
            logger.error(
                "threat_db_rollback_failed",
                db_path=self._db_path,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def health_check(self) -> bool:
        """Returns True if the DB connection is alive and queryable."""
        try:
            assert self._db is not None
            await self._db.execute("SELECT 1")
            return True
        except Exception:
            return False
