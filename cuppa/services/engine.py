# =============================================
# File: cuppa/services/engine.py
# Purpose: Candidate retrieval, scoring, ranking and reasons for one user request
# =============================================

from __future__ import annotations
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from loguru import logger

from cuppa.config import ALGORITHMS, EngineConfig
from cuppa.errors import ConfigurationError, DependencyFailure, PipelineError
from cuppa.schemas import (
    Assignment,
    CatalogItem,
    DeploymentResult,
    MetricSample,
    RankedItem,
    RecommendationContext,
    RecommendationResponse,
    UserFeatureSnapshot,
)
from cuppa.services.catalog import InMemoryCatalog, InMemorySocialGraph
from cuppa.services.features import FeatureService
from cuppa.services.monitoring import MonitoringService
from cuppa.services.registry import ModelRegistry
from cuppa.services.scoring import Scored, ScoringContext, apply_context, get_scorer
from cuppa.services.store import EventStore
from cuppa.utils import metrics
from cuppa.utils.events import EventBus
from cuppa.utils.timing import as_utc, time_of_day, timer, utcnow
from cuppa.utils.ttlcache import TTLCache

FALLBACK_ALGORITHM = "popularity"


class RecommendationEngine:
    def __init__(
        self,
        features: FeatureService,
        catalog: InMemoryCatalog,
        store: EventStore,
        registry: ModelRegistry,
        social: Optional[InMemorySocialGraph] = None,
        bus: Optional[EventBus] = None,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        monitoring: Optional[MonitoringService] = None,
        cache_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.features = features
        self.catalog = catalog
        self.store = store
        self.registry = registry
        self.social = social or InMemorySocialGraph()
        self.bus = bus or EventBus()
        self.cfg = config or EngineConfig()
        self._clock = clock
        self.monitoring = monitoring
        self.cache: TTLCache[RecommendationResponse] = TTLCache(
            self.cfg.response_cache_ttl_seconds, self.cfg.response_cache_max_entries, clock=cache_clock
        )
        registry.on_deploy(self._on_model_deployed)

    def generate_recommendations(
        self,
        user_id: str,
        limit: Optional[int] = None,
        algorithm: Optional[str] = None,
        exclude_item_ids: Iterable[str] = (),
        include_reasons: bool = False,
        context: Optional[RecommendationContext] = None,
        use_cache: bool = True,
    ) -> RecommendationResponse:
        """
        Rank catalog items for `user_id`.

        Running A/B tests decide the algorithm for users they cover; otherwise the caller's
        algorithm (default: the primary model's). Users without history, or whose features
        cannot be computed, get popularity ranking. Exactly one metric sample is emitted per
        call, including failed calls and cache hits; a cache hit returns the stored ranking
        under a fresh request id with `cached` set.
        """
        limit = self.cfg.default_limit if limit is None else limit
        errors: List[str] = []
        if not 1 <= limit <= self.cfg.max_limit:
            errors.append(f"limit must be between 1 and {self.cfg.max_limit}")
        if algorithm is not None and algorithm not in ALGORITHMS:
            errors.append(f"Unknown algorithm: {algorithm}")
        if errors:
            raise ConfigurationError(errors)

        request_id = uuid.uuid4().hex
        now = self._clock()
        ctx = self._fill_context(context, now)
        assignment = self.registry.resolve(user_id, algorithm)
        excludes = set(exclude_item_ids)
        cache_key = self._cache_key(user_id, limit, assignment, excludes, include_reasons, ctx)

        with timer() as elapsed:
            try:
                hit = self.cache.get(cache_key) if use_cache else None
                if hit is not None:
                    response = hit.model_copy(update={"request_id": request_id, "cached": True}, deep=True)
                else:
                    response = self._run(request_id, user_id, limit, assignment, excludes,
                                         include_reasons, ctx, now)
                    if use_cache:
                        self.cache.set(cache_key, response.model_copy(deep=True))
            except Exception:
                self._emit_sample(request_id, assignment, assignment.algorithm, elapsed(), ctx, errored=True)
                logger.exception(f"[recommend] failed user={user_id} algorithm={assignment.algorithm}")
                raise
            latency = elapsed()

        self.registry.record_request(assignment)
        self._emit_sample(request_id, assignment, response.algorithm, latency, ctx, errored=False)
        metrics.record_recommendation(latency, response.algorithm, response.cold_start)
        logger.info(
            f"[recommend] user={user_id} model={assignment.model_version} algorithm={response.algorithm} "
            f"items={len(response.items)} cold_start={response.cold_start} cached={response.cached} "
            f"latency_ms={latency:.1f}"
        )
        return response

    # ---------- pipeline ----------

    def _run(
        self,
        request_id: str,
        user_id: str,
        limit: int,
        assignment: Assignment,
        explicit_excludes: Set[str],
        include_reasons: bool,
        ctx: RecommendationContext,
        now: datetime,
    ) -> RecommendationResponse:
        features, cold = self._features_for(user_id)
        excluded = explicit_excludes | self._recently_interacted(user_id, now)
        candidates = {it.id: it for it in self.catalog.find_items(exclude_ids=excluded)}

        used = FALLBACK_ALGORITHM if cold else assignment.algorithm
        scores = self._score(used, user_id, features, candidates, assignment, now)
        if not scores and used != FALLBACK_ALGORITHM:
            logger.info(f"[recommend] no {used} signal for user={user_id}; using {FALLBACK_ALGORITHM}")
            used = FALLBACK_ALGORITHM
            scores = self._score(used, user_id, features, candidates, assignment, now)
        apply_context(scores, candidates, features, ctx, self.cfg)

        ranked = self._rank(scores, candidates)[:limit]
        items = [
            RankedItem(
                item_id=item.id,
                name=item.name,
                score=round(sc.score, 6),
                match_percentage=int(round(round(sc.score, 6) * 100)),
                algorithm=used,
                reasons=sc.reasons[: self.cfg.max_reasons] if include_reasons else [],
            )
            for item, sc in ranked
        ]
        return RecommendationResponse(
            request_id=request_id,
            user_id=user_id,
            model_version=assignment.model_version,
            algorithm=used,
            cold_start=cold,
            ab_test_id=assignment.ab_test_id,
            items=items,
        )

    def _features_for(self, user_id: str) -> tuple:
        try:
            snapshot = self.features.extract_user_features(user_id)
        except PipelineError as e:
            logger.warning(f"[recommend] features unavailable for user={user_id}: {e}; serving cold start")
            return self.features.default_snapshot(user_id), True
        return snapshot, snapshot.is_cold

    def _recently_interacted(self, user_id: str, now: datetime) -> Set[str]:
        try:
            events = self.store.find(
                user_ids=[user_id],
                types=self.cfg.exclude_interaction_types,
                since=now - timedelta(days=self.cfg.exclude_lookback_days),
            )
        except DependencyFailure as e:
            logger.warning(f"[recommend] could not read history for user={user_id}: {e}")
            return set()
        return {ev.item_id for ev in events}

    def _score(
        self,
        algorithm: str,
        user_id: str,
        features: UserFeatureSnapshot,
        candidates: Dict[str, CatalogItem],
        assignment: Assignment,
        now: datetime,
    ) -> Dict[str, Scored]:
        if not candidates:
            return {}
        sctx = ScoringContext(
            user_id=user_id,
            features=features,
            candidates=candidates,
            store=self.store,
            social=self.social,
            config=self.cfg,
            now=now,
            model_config=assignment.config,
        )
        return get_scorer(algorithm).score(sctx)

    @staticmethod
    def _rank(scores: Dict[str, Scored], candidates: Dict[str, CatalogItem]) -> List[tuple]:
        # score desc, newer catalog entries first, then id for a total order
        rows = [(candidates[i], sc) for i, sc in scores.items()]
        rows.sort(key=lambda r: (-r[1].score, -as_utc(r[0].created_at).timestamp(), r[0].id))
        return rows

    # ---------- response cache ----------

    @staticmethod
    def _cache_key(
        user_id: str,
        limit: int,
        assignment: Assignment,
        excludes: Set[str],
        include_reasons: bool,
        ctx: RecommendationContext,
    ) -> Tuple:
        return (
            user_id,
            limit,
            assignment.algorithm,
            assignment.model_version,
            assignment.ab_test_id,
            tuple(sorted(excludes)),
            include_reasons,
            tuple(sorted(ctx.categorical().items())),
            ctx.location,
        )

    def invalidate_users(self, user_ids: Iterable[str]) -> int:
        users = set(user_ids)
        if not users:
            return 0
        removed = self.cache.invalidate_where(lambda key: key[0] in users)
        if removed:
            logger.debug(f"[recommend] dropped {removed} cached responses for {len(users)} users")
        return removed

    def clear_cache(self) -> None:
        self.cache.clear()

    def sweep_cache(self) -> int:
        return self.cache.sweep()

    def _on_model_deployed(self, result: DeploymentResult) -> None:
        if result.is_active:
            self.clear_cache()
            logger.info(f"[recommend] response cache cleared after deploying {result.model_id}")

    # ---------- side effects ----------

    @staticmethod
    def _fill_context(context: Optional[RecommendationContext], now: datetime) -> RecommendationContext:
        ctx = context.model_copy() if context is not None else RecommendationContext()
        if ctx.time_of_day is None:
            ctx.time_of_day = time_of_day(now)
        if ctx.day_of_week is None:
            ctx.day_of_week = now.weekday()
        return ctx

    def _emit_sample(
        self,
        request_id: str,
        assignment: Assignment,
        algorithm: str,
        latency_ms: float,
        ctx: RecommendationContext,
        errored: bool,
    ) -> None:
        sample = MetricSample(
            request_id=request_id,
            timestamp=self._clock(),
            model_version=assignment.model_version,
            algorithm=algorithm,
            response_time_ms=latency_ms,
            errored=errored,
            ab_test_id=assignment.ab_test_id,
            context=ctx.categorical(),
        )
        # recorded before the response leaves so feedback can attach to it right away
        if self.monitoring is not None:
            self.monitoring.record_performance_metrics(sample)
        self.bus.emit("recommendation.served", sample)
