# =============================================
# File: cuppa/schemas.py
# Purpose: Domain records shared across services and routers (camelCase on the wire)
# =============================================
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cuppa.utils.timing import as_utc, utcnow


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())


class FrozenModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, protected_namespaces=())


# ---------- Events ----------

class InteractionEvent(FrozenModel):
    event_id: str
    user_id: str
    item_id: str
    interaction_type: str
    value: Optional[float] = None
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def dedupe_key(self) -> Tuple[str, str, str, str]:
        return (self.user_id, self.item_id, self.interaction_type, as_utc(self.timestamp).isoformat())


class ValidationResult(CamelModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class IngestResult(CamelModel):
    success: bool
    event_id: Optional[str] = None
    error: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class BatchError(CamelModel):
    index: int
    error: str


class BatchResult(CamelModel):
    processed: int = 0
    failed: int = 0
    duplicates: int = 0
    errors: List[BatchError] = Field(default_factory=list)
    aborted: bool = False


# ---------- Catalog ----------

class Origin(CamelModel):
    country: Optional[str] = None
    region: Optional[str] = None


class ProcessingDetails(CamelModel):
    method: Optional[str] = None


class FlavorProfile(CamelModel):
    flavor_notes: List[str] = Field(default_factory=list)


class CatalogItem(CamelModel):
    id: str
    name: str = ""
    roast_level: Optional[str] = None
    origin: Origin = Field(default_factory=Origin)
    processing_details: ProcessingDetails = Field(default_factory=ProcessingDetails)
    flavor_profile: FlavorProfile = Field(default_factory=FlavorProfile)
    avg_rating: float = 0.0
    rating_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    roaster_location: Optional[str] = None

    @property
    def origin_country(self) -> Optional[str]:
        return self.origin.country

    @property
    def processing_method(self) -> Optional[str]:
        return self.processing_details.method

    @property
    def flavor_notes(self) -> List[str]:
        return self.flavor_profile.flavor_notes


# ---------- Features ----------

class AttributeScore(FrozenModel):
    value: str
    score: float


class TrendTag(FrozenModel):
    feature: str
    trend: Literal["increasing", "decreasing", "stable"]


DEFAULT_SEASONS: Dict[str, float] = {"spring": 0.25, "summer": 0.25, "fall": 0.25, "winter": 0.25}


class UserFeatureSnapshot(FrozenModel):
    user_id: str
    # behavioral
    total_interactions: int = 0
    interaction_frequency: float = 0.0
    average_session_length: float = 0.0
    preferred_time_of_day: List[str] = Field(default_factory=list)
    preferred_day_of_week: List[int] = Field(default_factory=list)
    preferred_device_type: Optional[str] = None
    # preference
    preferred_roast_levels: List[AttributeScore] = Field(default_factory=list)
    preferred_origins: List[AttributeScore] = Field(default_factory=list)
    preferred_processing_methods: List[AttributeScore] = Field(default_factory=list)
    preferred_flavor_notes: List[AttributeScore] = Field(default_factory=list)
    # engagement
    average_rating: float = 0.0
    rating_variance: float = 0.0
    purchase_rate: float = 0.0
    favorite_rate: float = 0.0
    # temporal
    seasonal_preferences: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_SEASONS))
    trending_interests: List[TrendTag] = Field(default_factory=list)
    # diversity
    diversity_score: float = 0.0
    exploration_rate: float = 0.0
    # social
    social_influence: float = 0.5
    influence_score: float = 0.5
    last_updated: datetime = Field(default_factory=utcnow)
    version: int = 0

    @property
    def is_cold(self) -> bool:
        return self.total_interactions == 0


# ---------- Model registry ----------

class ModelDescriptor(FrozenModel):
    model_id: str
    name: str
    version: str
    algorithm: str
    config: Dict[str, Any] = Field(default_factory=dict)
    deployed_at: datetime
    is_active: bool


class DeployRequest(CamelModel):
    name: Optional[str] = None
    version: Optional[str] = None
    algorithm: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    replace_current_deployment: bool = False


class DeploymentResult(CamelModel):
    success: bool
    model_id: str
    message: str
    is_active: bool
    superseded: Optional[str] = None


class ABVariant(CamelModel):
    model_version: str
    algorithm: str
    traffic_share: float


class VariantMetrics(CamelModel):
    requests: int = 0
    clicks: int = 0
    conversions: int = 0


class ABTest(CamelModel):
    test_id: str
    name: str
    variants: List[ABVariant]
    target_percentage: float = 100.0
    started_at: datetime
    ends_at: Optional[datetime] = None
    status: Literal["running", "stopped", "completed"] = "running"
    metrics: Dict[str, VariantMetrics] = Field(default_factory=dict)


class Assignment(CamelModel):
    model_version: str
    algorithm: str
    config: Dict[str, Any] = Field(default_factory=dict)
    ab_test_id: Optional[str] = None


# ---------- Recommendations ----------

class RecommendationContext(CamelModel):
    time_of_day: Optional[str] = None
    day_of_week: Optional[int] = None
    device_type: Optional[str] = None
    location: Optional[str] = None

    def categorical(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        if self.time_of_day:
            out["timeOfDay"] = self.time_of_day
        if self.day_of_week is not None:
            out["dayOfWeek"] = str(self.day_of_week)
        if self.device_type:
            out["deviceType"] = self.device_type
        return out


class RankedItem(CamelModel):
    item_id: str
    name: str = ""
    score: float
    match_percentage: int = 0
    algorithm: str
    reasons: List[str] = Field(default_factory=list)


class RecommendationResponse(CamelModel):
    request_id: str
    user_id: str
    model_version: str
    algorithm: str
    cold_start: bool = False
    ab_test_id: Optional[str] = None
    items: List[RankedItem] = Field(default_factory=list)
    cached: bool = False


# ---------- Monitoring ----------

class MetricSample(FrozenModel):
    request_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    model_version: str
    algorithm: str
    response_time_ms: float = 0.0
    clicked: bool = False
    converted: bool = False
    rating: Optional[float] = None
    errored: bool = False
    ab_test_id: Optional[str] = None
    context: Dict[str, str] = Field(default_factory=dict)


class MetricAggregate(CamelModel):
    click_through_rate: float = 0.0
    conversion_rate: float = 0.0
    average_rating: float = 0.0
    response_time: float = 0.0
    error_rate: float = 0.0
    user_engagement: float = 0.0
    sample_size: int = 0
    rated_samples: int = 0


class Baseline(FrozenModel):
    model_version: str
    algorithm: str
    metrics: MetricAggregate
    distributions: Dict[str, Dict[str, float]] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class BaselineResult(CamelModel):
    created: bool
    message: str
    baseline: Optional[Baseline] = None


class DriftDetails(CamelModel):
    baseline: Optional[MetricAggregate] = None
    current: Optional[MetricAggregate] = None
    threshold: float
    detection_method: str
    signals: Dict[str, float] = Field(default_factory=dict)


class DriftResult(CamelModel):
    is_drift_detected: bool = False
    drift_score: float = 0.0
    drift_type: Literal["performance", "data", "concept", "none"] = "none"
    confidence: float = 0.0
    affected_features: List[str] = Field(default_factory=list)
    recommendation: Literal["retrain", "adjust_parameters", "investigate", "no_action"] = "no_action"
    details: DriftDetails


class AlertRule(CamelModel):
    id: str
    name: str
    type: Literal["performance", "drift", "error", "usage"] = "performance"
    metric: str
    operator: Literal[">", "<", "=", ">=", "<="]
    threshold: float
    time_window_minutes: int = 60
    severity: Literal["low", "medium", "high", "critical"] = "medium"
    enabled: bool = True
    cooldown_minutes: int = 30
    # the rule is not evaluated until its window holds this many samples
    min_samples: int = 1
    last_triggered: Optional[datetime] = None


class Alert(CamelModel):
    id: str
    name: str
    severity: str
    message: str
    model_version: str
    algorithm: str
    current_value: float
    threshold: float
    timestamp: datetime


HealthStatus = Literal["healthy", "degraded", "critical"]


class ServiceHealth(CamelModel):
    status: HealthStatus
    response_time_ms: float = 0.0
    error_rate: float = 0.0
    error: Optional[str] = None
    last_check: datetime = Field(default_factory=utcnow)


class SystemHealth(CamelModel):
    status: HealthStatus
    timestamp: datetime
    services: Dict[str, ServiceHealth]
    alerts: List[Alert] = Field(default_factory=list)
