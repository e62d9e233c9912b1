# =============================================
# File: cuppa/services/container.py
# Purpose: Composition root; storage is picked here once, never inside services
# =============================================

from __future__ import annotations
import threading
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from cuppa.config import Settings
from cuppa.db.repo import SqlEventStore, build_engine
from cuppa.services.catalog import DEFAULT_CATALOG_PATH, InMemoryCatalog, InMemorySocialGraph, load_catalog
from cuppa.services.engine import RecommendationEngine
from cuppa.services.features import FeatureService
from cuppa.services.ingestion import IngestionService
from cuppa.services.maintenance import MaintenanceScheduler
from cuppa.services.monitoring import MonitoringService
from cuppa.services.registry import ModelRegistry
from cuppa.services.store import EventStore, InMemoryEventStore
from cuppa.utils.events import EventBus
from cuppa.utils.ratelimit import prune_rate_limit


@dataclass
class Container:
    settings: Settings
    bus: EventBus
    store: EventStore
    catalog: InMemoryCatalog
    social: InMemorySocialGraph
    ingestion: IngestionService
    features: FeatureService
    registry: ModelRegistry
    engine: RecommendationEngine
    monitoring: MonitoringService
    scheduler: MaintenanceScheduler

    def close(self) -> None:
        self.scheduler.stop()
        self.bus.close()


def build_container(
    settings: Optional[Settings] = None,
    store: Optional[EventStore] = None,
    catalog: Optional[InMemoryCatalog] = None,
    social: Optional[InMemorySocialGraph] = None,
) -> Container:
    settings = settings or Settings.from_env()
    bus = EventBus()

    if store is None:
        if settings.db_url:
            store = SqlEventStore(build_engine(settings.db_url))
            logger.info("[container] using SQL event store")
        else:
            store = InMemoryEventStore()
            logger.info("[container] using in-memory event store")
    if catalog is None:
        catalog = load_catalog(settings.catalog_path or DEFAULT_CATALOG_PATH)
    social = social or InMemorySocialGraph()

    ingestion = IngestionService(store, catalog=catalog, bus=bus, config=settings.ingestion)
    features = FeatureService(store, catalog, bus=bus, config=settings.features)
    registry = ModelRegistry(bus=bus, config=settings.registry,
                             default_model_config={"weights": dict(settings.engine.hybrid_weights)})
    monitoring = MonitoringService(bus=bus, config=settings.monitoring)
    engine = RecommendationEngine(features, catalog, store, registry, social=social, bus=bus,
                                  config=settings.engine, monitoring=monitoring)

    # stale snapshots and cached rankings are dropped before the ingest call returns
    ingestion.on_stored(features.invalidate_users)
    ingestion.on_stored(engine.invalidate_users)

    monitoring.register_health_check("database", store.ping, database=True)
    monitoring.register_health_check("catalog", catalog.ping)
    monitoring.register_health_check("featureCache", features.ping)
    monitoring.register_health_check("modelRegistry", registry.ping)

    scheduler = MaintenanceScheduler()
    scheduler.add_job("feature_cache_sweep", max(1, settings.features.cache_ttl_seconds), features.sweep_cache)
    scheduler.add_job("response_cache_sweep", max(1, settings.engine.response_cache_ttl_seconds), engine.sweep_cache)
    scheduler.add_job("rate_limit_prune", 60, prune_rate_limit)
    scheduler.add_job("drift_checks", settings.monitoring.drift_check_interval_seconds, monitoring.run_drift_checks)
    scheduler.add_job("metrics_cleanup", settings.monitoring.cleanup_interval_seconds, monitoring.cleanup_old_metrics)

    return Container(
        settings=settings,
        bus=bus,
        store=store,
        catalog=catalog,
        social=social,
        ingestion=ingestion,
        features=features,
        registry=registry,
        engine=engine,
        monitoring=monitoring,
        scheduler=scheduler,
    )


_container: Optional[Container] = None
_lock = threading.Lock()


def get_container() -> Container:
    global _container
    with _lock:
        if _container is None:
            _container = build_container()
        return _container


def set_container(container: Optional[Container]) -> None:
    """Swap the process-wide container (tests, app startup)."""
    global _container
    with _lock:
        _container = container
