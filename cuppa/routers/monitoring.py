# =============================================
# File: cuppa/routers/monitoring.py
# Purpose: System health + monitoring stats
# =============================================
from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from cuppa.services.container import get_container

router = APIRouter(tags=["monitoring"])


@router.get("/health")
def health():
    """Worst service status wins; a critical system answers 503 so load balancers notice."""
    report = get_container().monitoring.get_system_health()
    status_code = 503 if report.status == "critical" else 200
    return JSONResponse(status_code=status_code, content=report.model_dump(by_alias=True, mode="json"))


@router.get("/monitoring/stats")
def monitoring_stats():
    c = get_container()
    stats = c.monitoring.get_monitoring_stats()
    stats["maintenance"] = c.scheduler.stats()
    stats["features"] = c.features.get_feature_stats()
    return stats
