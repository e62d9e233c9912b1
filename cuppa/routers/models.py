# =============================================
# File: cuppa/routers/models.py
# Purpose: Model deployment, A/B tests, serving metrics and drift endpoints
# =============================================
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Request
from pydantic import Field

from cuppa.schemas import (
    ABTest,
    ABVariant,
    BaselineResult,
    CamelModel,
    DeploymentResult,
    DeployRequest,
    DriftResult,
)
from cuppa.services.container import get_container

router = APIRouter(prefix="/models", tags=["models"])


class ABTestRequest(CamelModel):
    name: str = ""
    variants: List[ABVariant] = Field(default_factory=list)
    target_percentage: float = 100.0
    duration_days: Optional[float] = Field(None, gt=0)


class ModelKey(CamelModel):
    model_version: str = Field(..., min_length=1)
    algorithm: str = Field(..., min_length=1)


@router.post("/deploy", response_model=DeploymentResult, response_model_by_alias=True)
def deploy_model(payload: DeployRequest, request: Request):
    result = get_container().registry.deploy_model(payload)
    request.state.log_context = {"model_version": result.model_id, "active": result.is_active}
    return result


@router.post("/ab-test", response_model=ABTest, response_model_by_alias=True)
def create_ab_test(payload: ABTestRequest):
    return get_container().registry.create_ab_test(
        payload.name,
        payload.variants,
        target_percentage=payload.target_percentage,
        duration_days=payload.duration_days,
    )


@router.get("/ab-test/{test_id}", response_model=ABTest, response_model_by_alias=True)
def get_ab_test(test_id: str):
    return get_container().registry.get_ab_test(test_id)


@router.post("/ab-test/{test_id}/stop", response_model=ABTest, response_model_by_alias=True)
def stop_ab_test(test_id: str):
    return get_container().registry.stop_ab_test(test_id)


@router.get("/metrics")
def model_metrics(model_version: Optional[str] = None, algorithm: Optional[str] = None):
    """Serving stats from the registry plus rolling performance aggregates."""
    c = get_container()
    return {
        "serving": c.registry.get_serving_stats(),
        "performance": c.monitoring.get_aggregates(model_version, algorithm),
    }


@router.post("/drift-detection", response_model=DriftResult, response_model_by_alias=True)
def detect_drift(payload: ModelKey, request: Request):
    result = get_container().monitoring.detect_model_drift(payload.model_version, payload.algorithm)
    request.state.log_context = {
        "model_version": payload.model_version,
        "algorithm": payload.algorithm,
        "drift": result.is_drift_detected,
    }
    return result


@router.post("/set-baseline", response_model=BaselineResult, response_model_by_alias=True)
def set_baseline(payload: ModelKey):
    return get_container().monitoring.set_baseline(payload.model_version, payload.algorithm)
