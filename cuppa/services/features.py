# =============================================
# File: cuppa/services/features.py
# Purpose: Per-user feature snapshots from recent interactions, cached with a TTL
# =============================================

from __future__ import annotations
import math
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from loguru import logger

from cuppa.config import FeatureConfig
from cuppa.errors import DependencyFailure
from cuppa.schemas import (
    DEFAULT_SEASONS,
    AttributeScore,
    CatalogItem,
    InteractionEvent,
    TrendTag,
    UserFeatureSnapshot,
)
from cuppa.services.catalog import InMemoryCatalog
from cuppa.services.store import EventStore
from cuppa.utils.events import EventBus
from cuppa.utils.timing import as_utc, season, time_of_day, utcnow
from cuppa.utils.ttlcache import TTLCache

# attribute family -> (snapshot field, top-N config attr, accessor returning a list of values)
_FAMILIES: Dict[str, tuple] = {
    "roastLevel": ("preferred_roast_levels", "top_roast_levels",
                   lambda it: [it.roast_level] if it.roast_level else []),
    "origin": ("preferred_origins", "top_origins",
               lambda it: [it.origin_country] if it.origin_country else []),
    "processingMethod": ("preferred_processing_methods", "top_processing_methods",
                         lambda it: [it.processing_method] if it.processing_method else []),
    "flavorNote": ("preferred_flavor_notes", "top_flavor_notes",
                   lambda it: list(it.flavor_notes)),
}


def _ranked(counts: Counter, n: int) -> List[Any]:
    # most frequent first; ties resolved by value for stable output
    return [k for k, _ in sorted(counts.items(), key=lambda kv: (-kv[1], str(kv[0])))[:n]]


def _day_of_week(ev: InteractionEvent) -> int:
    raw = ev.metadata.get("dayOfWeek")
    if raw is not None:
        try:
            return int(raw)
        except (TypeError, ValueError):
            pass
    return as_utc(ev.timestamp).weekday()


class FeatureService:
    """
    Read-through feature snapshots. Snapshots are immutable; a recompute replaces the cache
    entry, so concurrent readers may see the previous snapshot but never a partial one.
    """
    def __init__(
        self,
        store: EventStore,
        catalog: InMemoryCatalog,
        bus: Optional[EventBus] = None,
        config: Optional[FeatureConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        cache_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.bus = bus or EventBus()
        self.cfg = config or FeatureConfig()
        self._clock = clock
        self.cache: TTLCache[UserFeatureSnapshot] = TTLCache(
            ttl=self.cfg.cache_ttl_seconds, max_entries=self.cfg.cache_max_entries, clock=cache_clock
        )
        self._lock = threading.Lock()
        self._versions: Dict[str, int] = {}
        self._extractions = 0
        self._last_extraction: Optional[datetime] = None

    # ---------- public API ----------

    def extract_user_features(self, user_id: str, force_refresh: bool = False) -> UserFeatureSnapshot:
        if not force_refresh:
            cached = self.cache.get(user_id)
            if cached is not None:
                return cached

        events = self.store.find(user_ids=[user_id], limit=self.cfg.event_window, newest_first=True)
        now = self._clock()
        if not events:
            return self.default_snapshot(user_id, now)

        items = self._resolve_items({ev.item_id for ev in events})
        fields: Dict[str, Any] = {}
        fields.update(self._behavioral(events, now))
        fields.update(self._preferences(events, items))
        fields.update(self._engagement(events))
        fields.update(self._temporal(events, items, fields))
        fields.update(self._diversity(events))

        snapshot = UserFeatureSnapshot(
            user_id=user_id,
            social_influence=self.cfg.neutral_social_score,
            influence_score=self.cfg.neutral_social_score,
            last_updated=now,
            version=self._bump_version(user_id, now),
            **fields,
        )
        self.cache.set(user_id, snapshot)
        self.bus.emit("features.extracted", {
            "userId": user_id,
            "version": snapshot.version,
            "totalInteractions": snapshot.total_interactions,
        })
        logger.info(f"[features] user={user_id} events={len(events)} version={snapshot.version}")
        return snapshot

    def default_snapshot(self, user_id: str, now: Optional[datetime] = None) -> UserFeatureSnapshot:
        """Snapshot for a user with no history. Not cached, so the first event is picked up at once."""
        return UserFeatureSnapshot(
            user_id=user_id,
            seasonal_preferences=dict(DEFAULT_SEASONS),
            social_influence=self.cfg.neutral_social_score,
            influence_score=self.cfg.neutral_social_score,
            last_updated=now or self._clock(),
            version=0,
        )

    def batch_extract(
        self,
        user_ids: Sequence[str],
        chunk_size: Optional[int] = None,
        max_workers: Optional[int] = None,
        force_refresh: bool = False,
    ) -> List[UserFeatureSnapshot]:
        """Extract in chunks on a bounded pool; results follow the order of `user_ids`."""
        size = max(1, chunk_size or self.cfg.batch_size)
        workers = max(1, max_workers or self.cfg.max_workers)
        out: List[UserFeatureSnapshot] = []
        for start in range(0, len(user_ids), size):
            part = list(user_ids[start:start + size])
            with ThreadPoolExecutor(max_workers=min(workers, len(part))) as pool:
                out.extend(pool.map(lambda uid: self.extract_user_features(uid, force_refresh), part))
        logger.info(f"[features] batch extracted {len(out)} users (chunk={size}, workers={workers})")
        return out

    def invalidate(self, user_id: str) -> bool:
        return self.cache.invalidate(user_id)

    def invalidate_users(self, user_ids: Iterable[str]) -> int:
        """Drop cached snapshots for users that just received new events."""
        return sum(1 for uid in set(user_ids) if self.invalidate(uid))

    def sweep_cache(self) -> int:
        removed = self.cache.sweep()
        if removed:
            logger.debug(f"[features] swept {removed} expired snapshots")
        return removed

    def get_feature_stats(self) -> Dict[str, Any]:
        with self._lock:
            extractions, last = self._extractions, self._last_extraction
        return {
            "cacheSize": len(self.cache),
            "cacheHits": self.cache.hits,
            "cacheMisses": self.cache.misses,
            "hitRate": self.cache.hit_rate(),
            "ttlSeconds": self.cfg.cache_ttl_seconds,
            "extractions": extractions,
            "lastExtraction": last,
        }

    def ping(self) -> int:
        return len(self.cache)

    # ---------- internals ----------

    def _bump_version(self, user_id: str, now: datetime) -> int:
        with self._lock:
            v = self._versions.get(user_id, 0) + 1
            self._versions[user_id] = v
            self._extractions += 1
            self._last_extraction = now
            return v

    def _resolve_items(self, item_ids: Iterable[str]) -> Dict[str, CatalogItem]:
        try:
            return self.catalog.get_items(item_ids)
        except DependencyFailure:
            raise
        except Exception as e:
            raise DependencyFailure("catalog", str(e)) from e

    def _behavioral(self, events: List[InteractionEvent], now: datetime) -> Dict[str, Any]:
        earliest = as_utc(events[-1].timestamp)
        days = max(1.0, (now - earliest).total_seconds() / 86400.0)

        # events are newest first; a gap wider than the session window starts a new session
        gap = self.cfg.session_gap_minutes * 60
        sessions = 1
        for newer, older in zip(events, events[1:]):
            if (as_utc(newer.timestamp) - as_utc(older.timestamp)).total_seconds() > gap:
                sessions += 1

        tod = Counter(ev.metadata.get("timeOfDay") or time_of_day(as_utc(ev.timestamp)) for ev in events)
        dow = Counter(_day_of_week(ev) for ev in events)
        devices = Counter(ev.metadata["deviceType"] for ev in events if ev.metadata.get("deviceType"))
        return {
            "total_interactions": len(events),
            "interaction_frequency": len(events) / days,
            "average_session_length": len(events) / sessions,
            "preferred_time_of_day": _ranked(tod, 2),
            "preferred_day_of_week": _ranked(dow, 3),
            "preferred_device_type": (_ranked(devices, 1) or [None])[0],
        }

    def _weight(self, ev: InteractionEvent, rank: int, n: int) -> float:
        base = self.cfg.interaction_weights.get(ev.interaction_type, self.cfg.default_interaction_weight)
        return base * math.exp(-rank / (n * self.cfg.recency_decay))

    def _preferences(self, events: List[InteractionEvent], items: Dict[str, CatalogItem]) -> Dict[str, Any]:
        totals: Dict[str, Dict[str, float]] = {fam: {} for fam in _FAMILIES}
        n = len(events)
        for rank, ev in enumerate(events):
            item = items.get(ev.item_id)
            if item is None:
                continue
            w = self._weight(ev, rank, n)
            for fam, (_, _, values_of) in _FAMILIES.items():
                bucket = totals[fam]
                for v in values_of(item):
                    bucket[v] = bucket.get(v, 0.0) + w

        out: Dict[str, Any] = {}
        for fam, (field, top_attr, _) in _FAMILIES.items():
            ordered = sorted(totals[fam].items(), key=lambda kv: (-kv[1], kv[0]))
            out[field] = [AttributeScore(value=v, score=s) for v, s in ordered[: getattr(self.cfg, top_attr)]]
        return out

    @staticmethod
    def _engagement(events: List[InteractionEvent]) -> Dict[str, Any]:
        ratings = [ev.value for ev in events if ev.interaction_type == "rating" and ev.value is not None]
        kinds = Counter(ev.interaction_type for ev in events)
        avg = sum(ratings) / len(ratings) if ratings else 0.0
        # sample variance
        var = sum((r - avg) ** 2 for r in ratings) / (len(ratings) - 1) if len(ratings) > 1 else 0.0
        views = kinds.get("view", 0)
        return {
            "average_rating": avg,
            "rating_variance": var,
            "purchase_rate": kinds.get("purchase", 0) / views if views else 0.0,
            "favorite_rate": kinds.get("favorite", 0) / views if views else 0.0,
        }

    def _temporal(
        self, events: List[InteractionEvent], items: Dict[str, CatalogItem], prefs: Dict[str, Any]
    ) -> Dict[str, Any]:
        counts = Counter(season(as_utc(ev.timestamp)) for ev in events)
        seasons = {s: counts.get(s, 0) / len(events) for s in DEFAULT_SEASONS}

        trends: List[TrendTag] = []
        half = len(events) // 2
        if half:
            newer, older = events[:half], events[half:]
            k = self.cfg.trend_candidates
            candidates = [("roastLevel", a.value) for a in prefs["preferred_roast_levels"][:k]]
            candidates += [("origin", a.value) for a in prefs["preferred_origins"][:k]]
            for fam, value in candidates:
                values_of = _FAMILIES[fam][2]

                def share(window: List[InteractionEvent]) -> float:
                    hits = sum(1 for ev in window if ev.item_id in items and value in values_of(items[ev.item_id]))
                    return hits / len(window)

                trends.append(TrendTag(feature=f"{fam}:{value}", trend=self._trend(share(newer), share(older))))
        return {"seasonal_preferences": seasons, "trending_interests": trends}

    def _trend(self, recent: float, earlier: float) -> str:
        ratio = self.cfg.trend_ratio
        if recent > earlier * ratio and recent > 0:
            return "increasing"
        if earlier > recent * ratio and earlier > 0:
            return "decreasing"
        return "stable"

    def _diversity(self, events: List[InteractionEvent]) -> Dict[str, Any]:
        recent = events[: self.cfg.exploration_window]
        return {
            "diversity_score": len({ev.item_id for ev in events}) / len(events),
            "exploration_rate": len({ev.item_id for ev in recent}) / len(recent),
        }
