# =============================================
# File: cuppa/config.py
# Purpose: Named, tunable configuration for the personalization pipeline
# =============================================
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

INTERACTION_TYPES: Tuple[str, ...] = (
    "view", "click", "search", "favorite", "purchase", "rating", "share", "review",
)

ALGORITHMS: Tuple[str, ...] = (
    "collaborative", "content-based", "hybrid", "popularity", "discovery", "social",
)


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


@dataclass(frozen=True)
class IngestionConfig:
    batch_size: int = 1000
    max_batch_size: int = 10000
    id_pattern: str = r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,63}$"


@dataclass(frozen=True)
class FeatureConfig:
    """
    Feature extraction knobs.
    - cache_ttl_seconds: snapshot lifetime before it is considered stale.
    - event_window: most recent events read per user (bounds the scan).
    - session_gap_minutes: inactivity gap that closes a session.
    - recency_decay: weight = exp(-rank / (n * recency_decay)), rank 0 = newest.
    """
    cache_ttl_seconds: int = 3600
    cache_max_entries: int = 10000
    event_window: int = 10000
    session_gap_minutes: int = 30
    recency_decay: float = 0.3
    interaction_weights: Dict[str, float] = field(default_factory=lambda: {
        "purchase": 1.0,
        "rating": 0.9,
        "favorite": 0.8,
        "share": 0.7,
        "review": 0.6,
        "click": 0.4,
        "view": 0.3,
        "search": 0.2,
    })
    default_interaction_weight: float = 0.1
    top_roast_levels: int = 5
    top_origins: int = 10
    top_processing_methods: int = 5
    top_flavor_notes: int = 15
    exploration_window: int = 100
    trend_ratio: float = 1.2
    trend_candidates: int = 3
    batch_size: int = 1000
    max_workers: int = 4
    neutral_social_score: float = 0.5


@dataclass(frozen=True)
class EngineConfig:
    default_limit: int = 10
    max_limit: int = 50
    exclude_interaction_types: Tuple[str, ...] = ("view", "rating", "purchase")
    exclude_lookback_days: int = 30
    # response cache; entries are dropped on model replacement and when the user has new events
    response_cache_ttl_seconds: int = 300
    response_cache_max_entries: int = 5000
    # hybrid blend
    hybrid_weights: Dict[str, float] = field(default_factory=lambda: {
        "collaborative": 0.4,
        "content-based": 0.3,
        "popularity": 0.2,
        "discovery": 0.1,
        "social": 0.15,
    })
    hybrid_signal_bonus: float = 0.1
    hybrid_max_bonus: float = 0.3
    # content-based attribute family weights
    attribute_weights: Dict[str, float] = field(default_factory=lambda: {
        "roast_level": 0.3,
        "origin": 0.25,
        "processing_method": 0.2,
        "flavor_notes": 0.25,
    })
    max_reasons: int = 4
    # popularity: rating 40%, rating count 30%, recent interactions 20%, unique users 10%
    popularity_weights: Dict[str, float] = field(default_factory=lambda: {
        "rating": 0.4,
        "rating_count": 0.3,
        "interactions": 0.2,
        "unique_users": 0.1,
    })
    popularity_types: Tuple[str, ...] = ("view", "purchase", "favorite", "rating")
    popularity_lookback_days: int = 90
    popularity_rating_cap: int = 50
    popularity_interaction_cap: int = 100
    popularity_unique_user_cap: int = 20
    trending_window_days: int = 7
    # collaborative: neighbors are users whose liked sets overlap (Jaccard)
    liked_types: Tuple[str, ...] = ("rating", "purchase", "favorite")
    max_neighbors: int = 10
    min_neighbor_similarity: float = 0.1
    liked_min_rating: float = 4.0
    # discovery: unfamiliarity per attribute family, plus a catalog-novelty term
    discovery_unfamiliar: Dict[str, float] = field(default_factory=lambda: {
        "roast_level": 0.4,
        "origin": 0.3,
        "processing_method": 0.2,
        "flavor_notes": 0.3,
    })
    discovery_familiar: Dict[str, float] = field(default_factory=lambda: {
        "roast_level": 0.1,
        "origin": 0.1,
        "processing_method": 0.05,
        "flavor_notes": 0.0,
    })
    discovery_novelty_weight: float = 0.2
    discovery_novelty_days: float = 180.0
    # social
    social_lookback_days: int = 60
    social_decay_days: float = 30.0
    social_action_weights: Dict[str, float] = field(default_factory=lambda: {
        "purchase": 1.0,
        "favorite": 0.9,
        "rating": 0.8,
    })
    # context modifiers
    context_boost: float = 0.1
    # uniform multiplier when the request matches the user's usual device / active days
    engagement_boost: float = 0.05
    roast_time_affinity: Dict[str, List[str]] = field(default_factory=lambda: {
        "morning": ["light", "medium-light", "medium"],
        "afternoon": ["medium", "medium-dark"],
        "evening": ["medium-dark", "dark", "decaf"],
        "night": ["dark", "decaf"],
    })


@dataclass(frozen=True)
class RegistryConfig:
    primary_model: str = "default"
    default_version: str = "1.0.0"
    default_algorithm: str = "hybrid"


@dataclass(frozen=True)
class MonitoringConfig:
    window_size: int = 1000
    drift_window: int = 20
    min_baseline_samples: int = 5
    min_drift_samples: int = 10
    drift_threshold: float = 0.15
    retrain_threshold: float = 0.3
    concept_threshold: float = 0.15
    performance_thresholds: Dict[str, float] = field(default_factory=lambda: {
        "click_through_rate": 0.1,
        "conversion_rate": 0.1,
        "average_rating": 0.2,
        "response_time": 0.3,
        "error_rate": 0.05,
    })
    concept_metrics: Tuple[str, ...] = ("click_through_rate", "conversion_rate", "user_engagement")
    data_drift_features: Tuple[str, ...] = ("timeOfDay", "dayOfWeek", "deviceType")
    psi_epsilon: float = 1e-4
    psi_feature_threshold: float = 0.1
    retention_days: int = 30
    service_degraded_ms: float = 1000.0
    database_degraded_ms: float = 500.0
    alert_lookback_hours: int = 24
    drift_check_interval_seconds: int = 3600
    cleanup_interval_seconds: int = 24 * 3600


@dataclass(frozen=True)
class Settings:
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    features: FeatureConfig = field(default_factory=FeatureConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    db_url: Optional[str] = None
    catalog_path: Optional[str] = None
    maintenance_enabled: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        """Read overrides at call time so tests/env changes take effect."""
        return cls(
            ingestion=IngestionConfig(batch_size=_env_int("INGEST_BATCH_SIZE", 1000)),
            features=FeatureConfig(
                cache_ttl_seconds=_env_int("FEATURE_CACHE_TTL_SECONDS", 3600),
                cache_max_entries=_env_int("FEATURE_CACHE_MAX_ENTRIES", 10000),
            ),
            monitoring=MonitoringConfig(
                window_size=_env_int("METRICS_WINDOW_SIZE", 1000),
                drift_check_interval_seconds=_env_int("DRIFT_CHECK_INTERVAL_SECONDS", 3600),
                drift_threshold=_env_float("DRIFT_THRESHOLD", 0.15),
            ),
            db_url=os.getenv("DB_URL") or None,
            catalog_path=os.getenv("CATALOG_PATH") or None,
            maintenance_enabled=os.getenv("MAINTENANCE_ENABLED", "1") not in ("0", "false", "no"),
        )
