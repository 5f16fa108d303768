"""Merge engine: resolver, extractor, similarity matcher, risk scorer, orchestrator."""

from threatmerge.engine.orchestrator import MergeEngine, merge_threat_models

__all__ = ["MergeEngine", "merge_threat_models"]
