# =============================================
# File: cuppa/routers/ingest.py
# Purpose: Event ingestion endpoints (single, batch, stats)
# =============================================
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, HTTPException, Query, Request
from pydantic import Field

from cuppa.errors import EventValidationError
from cuppa.schemas import BatchResult, CamelModel, IngestResult
from cuppa.services.container import get_container

router = APIRouter(prefix="/ingest", tags=["ingest"])


class BatchRequest(CamelModel):
    """
    Batch payload.
    - events: raw events, validated one by one.
    - batch_size: chunk size (defaults to the configured size, capped server-side).
    - skip_duplicates: drop events already stored or repeated earlier in the same chunk.
    """
    events: List[Dict[str, Any]] = Field(default_factory=list)
    batch_size: Optional[int] = Field(None, ge=1)
    skip_duplicates: bool = True


@router.post("", response_model=IngestResult, response_model_by_alias=True)
def ingest_event(request: Request, payload: Dict[str, Any] = Body(...)):
    c = get_container()
    result = c.ingestion.ingest_single(payload)
    request.state.log_context = {"event_id": result.event_id, "ingested": result.success}
    if not result.success and result.errors:
        raise EventValidationError(result.errors)
    if not result.success:
        raise HTTPException(status_code=503, detail=result.model_dump(by_alias=True))
    return result


@router.post("/batch", response_model=BatchResult, response_model_by_alias=True)
def ingest_batch(request: Request, payload: BatchRequest):
    c = get_container()
    result = c.ingestion.ingest_batch(
        payload.events,
        batch_size=payload.batch_size,
        skip_duplicates=payload.skip_duplicates,
    )
    request.state.log_context = {
        "batch_total": len(payload.events),
        "processed": result.processed,
        "failed": result.failed,
        "aborted": result.aborted,
    }
    return result


@router.get("/stats")
def ingestion_stats(timeframe: str = Query("day")):
    try:
        return get_container().ingestion.get_ingestion_stats(timeframe)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
