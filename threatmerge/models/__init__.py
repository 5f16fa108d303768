"""threatmerge models package.

Defines the data contracts shared by the merge engine and its backends:

  - threat.py  — ModelKind, ModelRef, ThreatCandidate, Threat, Safeguard, ThreatModel
  - metrics.py — ModelDetail, MergeMetrics, MergeMetadata, MergeResult
"""

from threatmerge.models.metrics import MergeMetadata, MergeMetrics, MergeResult, ModelDetail
from threatmerge.models.threat import (
    ModelKind,
    ModelRef,
    Safeguard,
    Threat,
    ThreatCandidate,
    ThreatModel,
)

__all__ = [
    "MergeMetadata",
    "MergeMetrics",
    "MergeResult",
    "ModelDetail",
    "ModelKind",
    "ModelRef",
    "Safeguard",
    "Threat",
    "ThreatCandidate",
    "ThreatModel",
]
