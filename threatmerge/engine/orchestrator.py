"""Merge Orchestrator — folds the threats of source models into a primary model.

Pipeline for one merge_threat_models() call:

    validate inputs              no I/O until this passes
    resolve + load primary       NotFoundError before any write
    for each source, in order:
        load source              SourceUnavailable → recorded, merge continues
        for each source threat:
            dedup against accumulated threats
            admit → score risk if missing, write to primary, accumulate
            match → count as skipped
    persist merge metadata       version bump + Draft status for relational primaries

All relational I/O of a merge runs inside one RelationalStore.transaction();
any exception rolls it back. Blob writes are not rolled back: a failure after
some appends surfaces as PartialPersistenceError with those appends in place.

The per-merge state (MergeState) is an immutable value; every step takes the
current state and returns the next one.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, Sequence, Union

from threatmerge.constants import (
    BLOB_MODEL_ID_PREFIX,
    DEFAULT_IMPACT,
    DEFAULT_LIKELIHOOD,
    DEFAULT_SAFEGUARD_EFFECTIVENESS,
    STATUS_AFTER_MERGE,
)
from threatmerge.engine.extractor import extract, extract_all
from threatmerge.engine.resolver import resolve
from threatmerge.engine.risk import DEFAULT_SCORER, RiskScorer
from threatmerge.engine.similarity import DEFAULT_MATCHER, SimilarityMatcher
from threatmerge.errors import (
    BackendError,
    NotFoundError,
    SourceUnavailable,
    ValidationError,
)
from threatmerge.models.metrics import MergeMetadata, MergeMetrics, MergeResult, ModelDetail
from threatmerge.models.threat import ModelRef, Threat, ThreatModel
from threatmerge.store.blob import BlobDocumentRepository
from threatmerge.store.protocol import RelationalSession, RelationalStore
from threatmerge.utils.logger import PerformanceLogger, clear_merge_id, get_logger, set_merge_id
from threatmerge.utils.ulid import generate_ulid

logger = get_logger(__name__)

DEFAULT_MERGED_BY = "system"


# ─── Merge state ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LoadedSource:
    """A source model and the threats it contributes, with provenance applied."""

    ref: ModelRef
    model: ThreatModel
    threats: tuple[Threat, ...]


@dataclass(frozen=True)
class MergeState:
    """Accumulator threaded through every merge step.

    existing grows as threats are admitted so later candidates are deduplicated
    against earlier ones from the same merge. primary is replaced after every
    blob append (content, count and generation change).
    """

    primary: ThreatModel
    existing: tuple[Threat, ...]
    threats_added: int = 0
    threats_skipped: int = 0
    safeguards_added: int = 0
    relational_sources_processed: int = 0
    blob_sources_processed: int = 0
    details: tuple[ModelDetail, ...] = field(default_factory=tuple)

    def metrics(self) -> MergeMetrics:
        return MergeMetrics(
            total_threats_added=self.threats_added,
            total_threats_skipped=self.threats_skipped,
            total_safeguards_added=self.safeguards_added,
            source_models_processed=self.relational_sources_processed,
            redis_models_processed=self.blob_sources_processed,
            model_details=[replace(detail) for detail in self.details],
        )


# ─── Primary writers ──────────────────────────────────────────────────────────


class RelationalPrimaryWriter:
    """Writes admitted threats and merge metadata to a relational primary."""

    def __init__(self, session: RelationalSession) -> None:
        self._session = session

    async def write_threat(self, primary: ThreatModel, threat: Threat) -> tuple[ThreatModel, Threat]:
        stored = await self._session.insert_threat(primary.id, threat)
        return primary, stored

    async def carry_safeguards(self, primary: ThreatModel, source_threat: Threat, stored: Threat) -> int:
        """Link the safeguards of source_threat to stored; returns how many were created.

        A safeguard with the same title already on the primary is reused.
        """
        if source_threat.id is None or stored.id is None:
            return 0
        created = 0
        for safeguard in await self._session.list_safeguards(source_threat.id):
            safeguard_id = await self._session.find_safeguard_id(primary.id, safeguard.title)
            if safeguard_id is None:
                safeguard_id = await self._session.insert_safeguard(primary.id, safeguard)
                created += 1
            effectiveness = (
                safeguard.effectiveness
                if safeguard.effectiveness is not None
                else DEFAULT_SAFEGUARD_EFFECTIVENESS
            )
            await self._session.link_safeguard(stored.id, safeguard_id, effectiveness)
        return created

    async def write_metadata(self, primary: ThreatModel, merge_metadata: dict) -> ThreatModel:
        return await self._session.record_merge(primary.id, merge_metadata, STATUS_AFTER_MERGE)


class BlobPrimaryWriter:
    """Appends admitted threats to a blob primary's document.

    Appended threats get an id of the form ``blob-<model id>-<threat count>``.
    It only identifies the threat within the merge that wrote it; after a
    reload the document carries no ids.
    """

    def __init__(self, repository: BlobDocumentRepository) -> None:
        self._repository = repository

    async def write_threat(self, primary: ThreatModel, threat: Threat) -> tuple[ThreatModel, Threat]:
        updated = await self._repository.append_threat(primary, threat)
        stored = replace(
            threat,
            id=f"blob-{updated.id}-{updated.threat_count}",
            model_id=updated.id,
        )
        return updated, stored

    async def carry_safeguards(self, primary: ThreatModel, source_threat: Threat, stored: Threat) -> int:
        return 0

    async def write_metadata(self, primary: ThreatModel, merge_metadata: dict) -> ThreatModel:
        return await self._repository.write_merge_metadata(primary, merge_metadata)


PrimaryWriter = Union[RelationalPrimaryWriter, BlobPrimaryWriter]


# ─── Input validation ─────────────────────────────────────────────────────────


def validate_inputs(primary_id: object, source_ids: object) -> tuple[str, list[str]]:
    """Check ids and return (primary_id, distinct source ids other than the primary).

    Duplicate source ids collapse to their first occurrence.

    Raises:
        ValidationError: On a missing/blank id or when no distinct source remains.
    """
    if not isinstance(primary_id, str) or not primary_id.strip():
        raise ValidationError("primary model id is required")
    if isinstance(source_ids, (str, bytes)) or not isinstance(source_ids, Sequence):
        raise ValidationError("source model ids must be a list", primary_id=primary_id)
    if not source_ids:
        raise ValidationError("at least one source model id is required", primary_id=primary_id)

    distinct: list[str] = []
    for source_id in source_ids:
        if not isinstance(source_id, str) or not source_id.strip():
            raise ValidationError(
                "source model ids must be non-empty strings", primary_id=primary_id
            )
        if source_id != primary_id and source_id not in distinct:
            distinct.append(source_id)

    if not distinct:
        raise ValidationError("at least one distinct source required", primary_id=primary_id)
    return primary_id, distinct


# ─── MergeEngine ──────────────────────────────────────────────────────────────


class MergeEngine:
    """Merges threat models across the relational and blob backends.

    Usage:
        engine = MergeEngine(relational_store, BlobDocumentRepository(blob_store))
        result = await engine.merge_threat_models("tm-1", ["subj-42"], "alice")
    """

    def __init__(
        self,
        relational_store: RelationalStore,
        blob_repository: BlobDocumentRepository,
        matcher: SimilarityMatcher = DEFAULT_MATCHER,
        scorer: RiskScorer = DEFAULT_SCORER,
        blob_prefix: str = BLOB_MODEL_ID_PREFIX,
    ) -> None:
        self._relational_store = relational_store
        self._blob_repository = blob_repository
        self._matcher = matcher
        self._scorer = scorer
        self._blob_prefix = blob_prefix

    async def merge_threat_models(
        self,
        primary_id: str,
        source_ids: Sequence[str],
        merged_by: Optional[str] = None,
    ) -> MergeResult:
        """Merge the threats of source_ids into primary_id.

        Raises:
            ValidationError: Bad ids; nothing was read or written.
            NotFoundError: The primary does not exist; nothing was written.
            BackendError: Relational failure; relational writes rolled back.
            PartialPersistenceError: Blob write failure; earlier appends persist.
        """
        primary_id, distinct_sources = validate_inputs(primary_id, source_ids)
        merged_by = merged_by or DEFAULT_MERGED_BY
        set_merge_id(generate_ulid())
        try:
            logger.info(
                "merge_started",
                primary_id=primary_id,
                source_ids=distinct_sources,
                merged_by=merged_by,
            )
            with PerformanceLogger("merge_threat_models", logger=logger):
                async with self._relational_store.transaction() as session:
                    result = await self._merge(session, primary_id, distinct_sources, merged_by)

            logger.info(
                "merge_completed",
                primary_id=primary_id,
                threats_added=result.metrics.total_threats_added,
                threats_skipped=result.metrics.total_threats_skipped,
                safeguards_added=result.metrics.total_safeguards_added,
                relational_sources_processed=result.metrics.source_models_processed,
                blob_sources_processed=result.metrics.redis_models_processed,
            )
            return result
        finally:
            clear_merge_id()

    async def _merge(
        self,
        session: RelationalSession,
        primary_id: str,
        source_ids: list[str],
        merged_by: str,
    ) -> MergeResult:
        primary_ref = resolve(primary_id, self._blob_prefix)
        primary, existing = await self._load_primary(session, primary_ref)
        writer: PrimaryWriter = (
            BlobPrimaryWriter(self._blob_repository)
            if primary_ref.is_blob
            else RelationalPrimaryWriter(session)
        )

        state = MergeState(primary=primary, existing=tuple(existing))
        for source_id in source_ids:
            state = await self._merge_source(session, writer, primary_ref, state, source_id)

        metrics = state.metrics()
        metadata = MergeMetadata(
            merged_at=datetime.now(timezone.utc),
            merged_by=merged_by,
            source_models=tuple(source_ids),
            metrics=metrics.to_dict(),
        )
        model = await writer.write_metadata(state.primary, metadata.to_dict())
        return MergeResult(model=model, metrics=metrics)

    # ── Loading ───────────────────────────────────────────────────────────────

    async def _load_primary(
        self, session: RelationalSession, ref: ModelRef
    ) -> tuple[ThreatModel, list[Threat]]:
        if ref.is_blob:
            model = await self._blob_repository.load(ref.id)
            if model is None:
                raise NotFoundError(f"Primary model {ref.raw_id} not found", primary_id=ref.raw_id)
            existing = [
                Threat.from_candidate(candidate) for candidate in extract_all(model.description)
            ]
        else:
            model = await session.get_model(ref.id)
            if model is None:
                raise NotFoundError(f"Primary model {ref.raw_id} not found", primary_id=ref.raw_id)
            existing = await session.list_threats(ref.id)

        logger.info(
            "primary_model_loaded",
            primary_id=ref.raw_id,
            kind=ref.kind.value,
            existing_threats=len(existing),
        )
        return model, existing

    async def _load_source(self, session: RelationalSession, ref: ModelRef) -> LoadedSource:
        """Load a source model and its threats.

        Raises:
            SourceUnavailable: The source is absent, or its blob document unreadable.
        """
        if ref.is_blob:
            try:
                model = await self._blob_repository.load(ref.id)
            except BackendError as exc:
                raise SourceUnavailable(str(exc), source_id=ref.raw_id) from exc
            if model is None:
                raise SourceUnavailable(
                    f"Source model {ref.raw_id} not found", source_id=ref.raw_id
                )
            threats = [
                Threat.from_candidate(
                    candidate,
                    source_model_id=ref.raw_id,
                    source_model_name=model.name,
                )
                for candidate in extract(model.description)
            ]
        else:
            model = await session.get_model(ref.id)
            if model is None:
                raise SourceUnavailable(
                    f"Source model {ref.raw_id} not found", source_id=ref.raw_id
                )
            threats = [
                replace(threat, source_model_id=ref.raw_id, source_model_name=model.name)
                for threat in await session.list_threats(ref.id)
            ]
        return LoadedSource(ref=ref, model=model, threats=tuple(threats))

    # ── Folding ───────────────────────────────────────────────────────────────

    async def _merge_source(
        self,
        session: RelationalSession,
        writer: PrimaryWriter,
        primary_ref: ModelRef,
        state: MergeState,
        source_id: str,
    ) -> MergeState:
        ref = resolve(source_id, self._blob_prefix)
        try:
            source = await self._load_source(session, ref)
        except SourceUnavailable as exc:
            logger.warning(
                "source_model_skipped",
                source_id=source_id,
                kind=ref.kind.value,
                reason=exc.message,
            )
            detail = ModelDetail(id=source_id, name=None, kind=ref.kind, skipped_reason=exc.message)
            return replace(state, details=state.details + (detail,))

        carry_safeguards = primary_ref.is_relational and ref.is_relational
        added_before = state.threats_added
        skipped_before = state.threats_skipped
        for threat in source.threats:
            state = await self._merge_threat(writer, state, threat, carry_safeguards)

        detail = ModelDetail(
            id=source_id,
            name=source.model.name,
            kind=ref.kind,
            total_threats=len(source.threats),
            threats_added=state.threats_added - added_before,
            threats_skipped=state.threats_skipped - skipped_before,
        )
        logger.info(
            "source_model_merged",
            source_id=source_id,
            kind=ref.kind.value,
            total_threats=detail.total_threats,
            threats_added=detail.threats_added,
            threats_skipped=detail.threats_skipped,
        )
        return replace(
            state,
            relational_sources_processed=(
                state.relational_sources_processed + (1 if ref.is_relational else 0)
            ),
            blob_sources_processed=state.blob_sources_processed + (1 if ref.is_blob else 0),
            details=state.details + (detail,),
        )

    async def _merge_threat(
        self,
        writer: PrimaryWriter,
        state: MergeState,
        source_threat: Threat,
        carry_safeguards: bool,
    ) -> MergeState:
        duplicate = self._matcher.find_duplicate(source_threat, state.existing)
        if duplicate is not None:
            logger.debug(
                "threat_skipped_duplicate",
                title=source_threat.title,
                duplicate_of=duplicate.title,
                source_id=source_threat.source_model_id,
            )
            return replace(state, threats_skipped=state.threats_skipped + 1)

        threat = Threat(
            title=source_threat.title,
            description=source_threat.description,
            mitigation=source_threat.mitigation,
            risk_score=(
                source_threat.risk_score
                if source_threat.risk_score is not None
                else self._scorer.score(source_threat.description)
            ),
            impact=source_threat.impact if source_threat.impact is not None else DEFAULT_IMPACT,
            likelihood=(
                source_threat.likelihood
                if source_threat.likelihood is not None
                else DEFAULT_LIKELIHOOD
            ),
            source_model_id=source_threat.source_model_id,
            source_model_name=source_threat.source_model_name,
        )
        primary, stored = await writer.write_threat(state.primary, threat)
        safeguards_added = 0
        if carry_safeguards:
            safeguards_added = await writer.carry_safeguards(primary, source_threat, stored)

        logger.debug(
            "threat_admitted",
            title=stored.title,
            threat_id=stored.id,
            risk_score=stored.risk_score,
            source_id=stored.source_model_id,
            safeguards_added=safeguards_added,
        )
        return replace(
            state,
            primary=primary,
            existing=state.existing + (stored,),
            threats_added=state.threats_added + 1,
            safeguards_added=state.safeguards_added + safeguards_added,
        )


async def merge_threat_models(
    relational_store: RelationalStore,
    blob_repository: BlobDocumentRepository,
    primary_id: str,
    source_ids: Sequence[str],
    merged_by: Optional[str] = None,
) -> MergeResult:
    """One-shot merge with the default matcher and scorer."""
    engine = MergeEngine(relational_store, blob_repository)
    return await engine.merge_threat_models(primary_id, source_ids, merged_by)
