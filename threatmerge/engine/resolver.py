"""Model reference resolution.

resolve() is the only place that inspects a raw model identifier. Everything
downstream receives the resulting ModelRef and dispatches on its kind.
"""

from __future__ import annotations

from threatmerge.constants import BLOB_MODEL_ID_PREFIX
from threatmerge.models.threat import ModelKind, ModelRef


def resolve(raw_id: str, blob_prefix: str = BLOB_MODEL_ID_PREFIX) -> ModelRef:
    """Classify raw_id as a blob or relational model reference.

    Pure and total: never raises, performs no I/O. Whether the referenced
    model exists is for the loaders to find out.

    >>> resolve("subj-42")
    ModelRef(kind=<ModelKind.BLOB: 'blob'>, id='42', raw_id='subj-42')
    """
    if blob_prefix and raw_id.startswith(blob_prefix):
        return ModelRef(kind=ModelKind.BLOB, id=raw_id[len(blob_prefix):], raw_id=raw_id)
    return ModelRef(kind=ModelKind.RELATIONAL, id=raw_id, raw_id=raw_id)
