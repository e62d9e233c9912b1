# =============================================
# File: cuppa/routers/features.py
# Purpose: Read / recompute a user's feature snapshot
# =============================================
from __future__ import annotations

from fastapi import APIRouter, Request

from cuppa.schemas import UserFeatureSnapshot
from cuppa.services.container import get_container
from cuppa.utils import slog

router = APIRouter(prefix="/features", tags=["features"])


@router.get("/stats")
def feature_stats():
    """Cache size, hit rate and extraction counters."""
    return get_container().features.get_feature_stats()


@router.get("/{user_id}", response_model=UserFeatureSnapshot, response_model_by_alias=True)
def get_features(user_id: str, request: Request):
    snapshot = get_container().features.extract_user_features(user_id)
    request.state.log_context = {"user": slog.uhash(user_id), "feature_version": snapshot.version}
    return snapshot


@router.post("/{user_id}/refresh", response_model=UserFeatureSnapshot, response_model_by_alias=True)
def refresh_features(user_id: str, request: Request):
    snapshot = get_container().features.extract_user_features(user_id, force_refresh=True)
    request.state.log_context = {"user": slog.uhash(user_id), "feature_version": snapshot.version}
    return snapshot
