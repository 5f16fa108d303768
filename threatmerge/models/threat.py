"""Threat-model records shared by the extractor, stores and orchestrator.

ModelRef is the tagged union produced once by the resolver and threaded
through every later call; nothing downstream re-inspects raw id strings.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ModelKind(str, Enum):
    """Backend that owns a threat model."""

    RELATIONAL = "relational"
    BLOB = "blob"


@dataclass(frozen=True)
class ModelRef:
    """Typed reference to a threat model.

    id is the backend key (blob prefix already stripped). raw_id is the
    identifier exactly as the caller supplied it; it is what provenance and
    metrics report.
    """

    kind: ModelKind
    id: str
    raw_id: str

    @property
    def is_blob(self) -> bool:
        return self.kind is ModelKind.BLOB

    @property
    def is_relational(self) -> bool:
        return self.kind is ModelKind.RELATIONAL


@dataclass(frozen=True)
class ThreatCandidate:
    """A threat parsed out of a blob document, not yet checked for duplicates."""

    title: str
    description: str
    mitigation: str = ""


@dataclass
class Threat:
    """A threat as stored in, or about to be written to, a primary model.

    Threats appended to a blob document are not separately addressable after
    the write; their id is only meaningful for the lifetime of one merge.
    """

    title: str
    description: str = ""
    mitigation: str = ""
    id: Optional[str] = None
    model_id: Optional[str] = None
    risk_score: Optional[int] = None
    impact: Optional[int] = None
    likelihood: Optional[int] = None
    source_model_id: Optional[str] = None
    source_model_name: Optional[str] = None

    @classmethod
    def from_candidate(
        cls,
        candidate: ThreatCandidate,
        *,
        source_model_id: Optional[str] = None,
        source_model_name: Optional[str] = None,
    ) -> "Threat":
        return cls(
            title=candidate.title,
            description=candidate.description,
            mitigation=candidate.mitigation,
            source_model_id=source_model_id,
            source_model_name=source_model_name,
        )


@dataclass
class Safeguard:
    """A relational safeguard linked to a threat."""

    title: str
    description: str = ""
    type: Optional[str] = None
    status: Optional[str] = None
    id: Optional[str] = None
    model_id: Optional[str] = None
    effectiveness: Optional[int] = None
    """Effectiveness of the threat link this safeguard was read through (0-100)."""


@dataclass
class ThreatModel:
    """A relational threat-model row or a blob document, normalised.

    For blob documents, description holds the full generated document text and
    version/status are None.
    """

    id: str
    name: str
    kind: ModelKind
    description: str = ""
    version: Optional[int] = None
    status: Optional[str] = None
    threat_count: int = 0
    merge_metadata: Optional[dict[str, Any]] = None
    generation: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "description": self.description,
            "version": self.version,
            "status": self.status,
            "threat_count": self.threat_count,
            "merge_metadata": self.merge_metadata,
        }
