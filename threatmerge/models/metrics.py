"""Merge metrics and the audit record persisted on the primary model.

MergeMetrics is created at orchestration start, updated as sources and
candidates are processed, and written once at the end inside MergeMetadata.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from threatmerge.models.threat import ModelKind, ThreatModel


@dataclass
class ModelDetail:
    """Per-source contribution to one merge."""

    id: str
    """Source id exactly as supplied by the caller."""
    name: Optional[str]
    kind: ModelKind
    total_threats: int = 0
    threats_added: int = 0
    threats_skipped: int = 0
    skipped_reason: Optional[str] = None
    """Set when the source was unavailable and contributed nothing."""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


@dataclass
class MergeMetrics:
    """Counters for one merge call.

    source_models_processed counts relational sources that loaded,
    redis_models_processed blob sources that loaded. Sources that were
    unavailable appear in model_details only.
    """

    total_threats_added: int = 0
    total_threats_skipped: int = 0
    total_safeguards_added: int = 0
    source_models_processed: int = 0
    redis_models_processed: int = 0
    model_details: list[ModelDetail] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_threats_added": self.total_threats_added,
            "total_threats_skipped": self.total_threats_skipped,
            "total_safeguards_added": self.total_safeguards_added,
            "source_models_processed": self.source_models_processed,
            "redis_models_processed": self.redis_models_processed,
            "model_details": [detail.to_dict() for detail in self.model_details],
        }


@dataclass(frozen=True)
class MergeMetadata:
    """Immutable audit record attached to the primary model after a merge."""

    merged_at: datetime
    merged_by: str
    source_models: tuple[str, ...]
    metrics: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "merged_at": self.merged_at.isoformat(),
            "merged_by": self.merged_by,
            "source_models": list(self.source_models),
            "metrics": self.metrics,
        }


@dataclass
class MergeResult:
    """Return value of merge_threat_models()."""

    model: ThreatModel
    metrics: MergeMetrics

    def to_dict(self) -> dict[str, Any]:
        return {"model": self.model.to_dict(), "metrics": self.metrics.to_dict()}
