"""HTTP trigger for the merge engine.

Provides:
  POST /api/threat-models/merge — merge source models into a primary model

Uses app.state.engine (MergeEngine, built by the lifespan in main.py).

Error mapping:
  ValidationError              → 400
  NotFoundError                → 404
  ConcurrentModificationError  → 409
  PartialPersistenceError      → 500 (type "partial_persistence")
  BackendError                 → 500
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from threatmerge.engine.orchestrator import MergeEngine
from threatmerge.errors import (
    BackendError,
    ConcurrentModificationError,
    MergeError,
    NotFoundError,
    PartialPersistenceError,
    ValidationError,
)
from threatmerge.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["merge"])

# Most specific class first: ConcurrentModificationError is a PartialPersistenceError.
_STATUS_BY_ERROR: tuple[tuple[type[MergeError], int], ...] = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConcurrentModificationError, 409),
    (PartialPersistenceError, 500),
    (BackendError, 500),
)


# ─── Request Models ───────────────────────────────────────────────────────────


class MergeRequest(BaseModel):
    """Request body for POST /api/threat-models/merge.

    Fields are loosely typed on purpose; the engine validates them and a bad
    value becomes a 400 with the engine's message rather than a 422.
    """

    primary_model_id: Optional[Any] = None
    source_model_ids: Optional[Any] = None
    merged_by: Optional[str] = None


# ─── Helpers ──────────────────────────────────────────────────────────────────


def status_for(exc: MergeError) -> int:
    for error_class, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_class):
            return status_code
    return 500


def _error_response(exc: MergeError) -> JSONResponse:
    return JSONResponse(
        status_code=status_for(exc),
        content={"success": False, "error": exc.to_dict()},
    )


# ─── Routes ───────────────────────────────────────────────────────────────────


@router.post("/api/threat-models/merge")
async def merge_threat_models(request: Request, body: MergeRequest) -> Any:
    """Merge the threats of body.source_model_ids into body.primary_model_id.

    Response body (200):
        {
          "success": true,
          "message": "Merged 2 threat(s) into tm-1",
          "data": {"model": {...}, "metrics": {...}}
        }

    Response body (4xx/5xx):
        {"success": false, "error": {"type": ..., "message": ..., "primary_id": ..., "source_id": ...}}
    """
    engine: MergeEngine = request.app.state.engine

    try:
        result = await engine.merge_threat_models(
            body.primary_model_id,
            body.source_model_ids,
            body.merged_by,
        )
    except MergeError as exc:
        logger.warning(
            "merge_request_failed",
            error_type=exc.error_type,
            error=exc.message,
            primary_id=exc.primary_id,
            source_id=exc.source_id,
        )
        return _error_response(exc)

    return {
        "success": True,
        "message": (
            f"Merged {result.metrics.total_threats_added} threat(s) into "
            f"{body.primary_model_id}"
        ),
        "data": result.to_dict(),
    }
