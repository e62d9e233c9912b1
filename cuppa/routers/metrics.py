# =============================================
# File: cuppa/routers/metrics.py
# Purpose: Expose in-process HTTP/serving counters as JSON
# =============================================
from __future__ import annotations
from fastapi import APIRouter
from cuppa.utils.metrics import snapshot

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
def get_metrics():
    return snapshot()
