# =============================================
# File: cuppa/routers/recommendations.py
# Purpose: Personalized recommendations + outcome feedback
# =============================================
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request
from pydantic import Field

from cuppa.schemas import CamelModel, MetricSample, RecommendationContext, RecommendationResponse
from cuppa.services.container import get_container
from cuppa.utils import slog
from cuppa.utils.ratelimit import check_rate_limit

router = APIRouter(prefix="/recommendations", tags=["recommendations"])


class FeedbackRequest(CamelModel):
    request_id: str = Field(..., min_length=1)
    clicked: bool = False
    converted: bool = False
    rating: Optional[float] = Field(None, ge=1, le=5)


def _split_ids(raw: Optional[List[str]]) -> List[str]:
    # accept ?exclude=a&exclude=b as well as ?exclude=a,b
    out: List[str] = []
    for part in raw or []:
        out.extend(s.strip() for s in part.split(",") if s.strip())
    return out


@router.get("", response_model=RecommendationResponse, response_model_by_alias=True)
def get_recommendations(
    request: Request,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    limit: int = Query(10),
    algorithm: Optional[str] = Query(None),
    exclude: Optional[List[str]] = Query(None),
    include_reasons: bool = Query(False, alias="includeReasons"),
    time_of_day: Optional[str] = Query(None, alias="timeOfDay"),
    day_of_week: Optional[int] = Query(None, alias="dayOfWeek", ge=0, le=6),
    device_type: Optional[str] = Query(None, alias="deviceType"),
    location: Optional[str] = Query(None),
    use_cache: bool = Query(True, alias="useCache"),
):
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    request.state.log_context = {"user": slog.uhash(user_id)}

    check_rate_limit(user_id)

    c = get_container()
    context = RecommendationContext(
        time_of_day=time_of_day, day_of_week=day_of_week, device_type=device_type, location=location
    )
    response = c.engine.generate_recommendations(
        user_id,
        limit=limit,
        algorithm=algorithm,
        exclude_item_ids=_split_ids(exclude),
        include_reasons=include_reasons,
        context=context,
        use_cache=use_cache,
    )
    request.state.log_context.update({
        "algorithm": response.algorithm,
        "model_version": response.model_version,
        "cold_start": response.cold_start,
        "cached": response.cached,
        "ab_test_id": response.ab_test_id,
        "items": len(response.items),
    })
    return response


@router.post("/feedback", response_model=MetricSample, response_model_by_alias=True)
def record_feedback(payload: FeedbackRequest):
    c = get_container()
    sample = c.monitoring.record_outcome(
        payload.request_id, clicked=payload.clicked, converted=payload.converted, rating=payload.rating
    )
    if sample.ab_test_id:
        c.registry.record_variant_outcome(
            sample.ab_test_id, sample.model_version, clicked=payload.clicked, converted=payload.converted
        )
    return sample
