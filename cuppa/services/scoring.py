# =============================================
# File: cuppa/services/scoring.py
# Purpose: Pluggable candidate scorers, one per recommendation algorithm
# =============================================

from __future__ import annotations
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Type

from cuppa.config import EngineConfig
from cuppa.schemas import CatalogItem, InteractionEvent, RecommendationContext, UserFeatureSnapshot
from cuppa.services.catalog import InMemorySocialGraph
from cuppa.services.store import EventStore
from cuppa.utils.timing import as_utc


@dataclass
class Scored:
    score: float
    reasons: List[str] = field(default_factory=list)


@dataclass
class ScoringContext:
    user_id: str
    features: UserFeatureSnapshot
    candidates: Dict[str, CatalogItem]
    store: EventStore
    social: InMemorySocialGraph
    config: EngineConfig
    now: datetime
    model_config: Dict[str, Any] = field(default_factory=dict)


class Scorer:
    """Maps candidate item id -> Scored, in [0, 1]. Items a scorer has no signal for are omitted."""
    name: str = ""

    def score(self, ctx: ScoringContext) -> Dict[str, Scored]:
        raise NotImplementedError


SCORERS: Dict[str, Type[Scorer]] = {}


def register(cls: Type[Scorer]) -> Type[Scorer]:
    SCORERS[cls.name] = cls
    return cls


def get_scorer(name: str) -> Scorer:
    try:
        return SCORERS[name]()
    except KeyError:
        raise ValueError(f"Unknown algorithm: {name}") from None


def _shares(scores) -> Dict[str, float]:
    total = sum(a.score for a in scores)
    return {a.value: a.score / total for a in scores} if total > 0 else {}


def _liked(ev: InteractionEvent, cfg: EngineConfig) -> bool:
    if ev.interaction_type == "rating":
        return ev.value is not None and ev.value >= cfg.liked_min_rating
    return ev.interaction_type in cfg.liked_types


@register
class PopularityScorer(Scorer):
    name = "popularity"

    def score(self, ctx: ScoringContext) -> Dict[str, Scored]:
        cfg = ctx.config
        w = cfg.popularity_weights
        recent = ctx.store.find(
            item_ids=list(ctx.candidates),
            types=cfg.popularity_types,
            since=ctx.now - timedelta(days=cfg.popularity_lookback_days),
        )
        totals: Dict[str, int] = defaultdict(int)
        users: Dict[str, Set[str]] = defaultdict(set)
        this_week: Dict[str, int] = defaultdict(int)
        week_start = ctx.now - timedelta(days=cfg.trending_window_days)
        for ev in recent:
            totals[ev.item_id] += 1
            users[ev.item_id].add(ev.user_id)
            if as_utc(ev.timestamp) >= week_start:
                this_week[ev.item_id] += 1

        out: Dict[str, Scored] = {}
        for item_id, item in ctx.candidates.items():
            s = (
                (item.avg_rating / 5.0) * w["rating"]
                + min(item.rating_count / cfg.popularity_rating_cap, 1.0) * w["rating_count"]
                + min(totals[item_id] / cfg.popularity_interaction_cap, 1.0) * w["interactions"]
                + min(len(users[item_id]) / cfg.popularity_unique_user_cap, 1.0) * w["unique_users"]
            )
            if s <= 0:
                continue
            reasons = [f"Highly rated ({item.avg_rating:.1f}/5 stars)", f"{item.rating_count} customer reviews"]
            if this_week[item_id]:
                reasons.append("Popular this week")
            out[item_id] = Scored(min(s, 1.0), reasons)
        return out


@register
class ContentBasedScorer(Scorer):
    """Dot product of the item's attributes with the user's normalized preference shares."""
    name = "content-based"

    def score(self, ctx: ScoringContext) -> Dict[str, Scored]:
        f = ctx.features
        w = ctx.config.attribute_weights
        roast = _shares(f.preferred_roast_levels)
        origin = _shares(f.preferred_origins)
        method = _shares(f.preferred_processing_methods)
        notes = _shares(f.preferred_flavor_notes)
        if not (roast or origin or method or notes):
            return {}

        out: Dict[str, Scored] = {}
        for item_id, item in ctx.candidates.items():
            reasons: List[str] = []
            s = 0.0
            if item.roast_level in roast:
                s += w["roast_level"] * roast[item.roast_level]
                reasons.append(f"You enjoy {item.roast_level} roast coffees")
            if item.origin_country in origin:
                s += w["origin"] * origin[item.origin_country]
                reasons.append(f"You like coffees from {item.origin_country}")
            if item.processing_method in method:
                s += w["processing_method"] * method[item.processing_method]
                reasons.append(f"You prefer {item.processing_method} processed coffees")
            matching = [n for n in item.flavor_notes if n in notes]
            if matching:
                s += w["flavor_notes"] * min(1.0, sum(notes[n] for n in matching))
                reasons.append(f"Features {' and '.join(matching[:2])} notes you enjoy")
            if s > 0:
                out[item_id] = Scored(min(s, 1.0), reasons or ["Similar to coffees you rated highly"])
        return out


@register
class CollaborativeScorer(Scorer):
    """Neighbors share liked items with the user; their likes are weighted by similarity."""
    name = "collaborative"

    def score(self, ctx: ScoringContext) -> Dict[str, Scored]:
        cfg = ctx.config
        mine = {ev.item_id for ev in ctx.store.find(user_ids=[ctx.user_id], types=cfg.liked_types) if _liked(ev, cfg)}
        if not mine:
            return {}

        overlap = ctx.store.find(item_ids=list(mine), types=cfg.liked_types)
        others = {ev.user_id for ev in overlap if ev.user_id != ctx.user_id and _liked(ev, cfg)}
        if not others:
            return {}

        liked_by: Dict[str, List[InteractionEvent]] = defaultdict(list)
        for ev in ctx.store.find(user_ids=list(others), types=cfg.liked_types):
            if _liked(ev, cfg):
                liked_by[ev.user_id].append(ev)

        sims = []
        for uid, evs in liked_by.items():
            theirs = {ev.item_id for ev in evs}
            sim = len(mine & theirs) / len(mine | theirs)
            if sim >= cfg.min_neighbor_similarity:
                sims.append((sim, uid))
        sims.sort(key=lambda t: (-t[0], t[1]))
        neighbors = sims[: cfg.max_neighbors]

        acc: Dict[str, float] = defaultdict(float)
        voters: Dict[str, int] = defaultdict(int)
        for sim, uid in neighbors:
            for ev in liked_by[uid]:
                if ev.item_id not in ctx.candidates:
                    continue
                rating = ev.value if ev.value is not None else 5.0
                acc[ev.item_id] += (rating / 5.0) * sim
                voters[ev.item_id] += 1

        out: Dict[str, Scored] = {}
        for item_id, s in acc.items():
            reasons = ["Recommended based on users with similar taste"]
            if voters[item_id] > 1:
                reasons.append(f"Liked by {voters[item_id]} similar coffee enthusiasts")
            out[item_id] = Scored(min(s, 1.0), reasons)
        return out


@register
class DiscoveryScorer(Scorer):
    """Favors attributes the user has not tried yet, with a small boost for new catalog entries."""
    name = "discovery"

    def score(self, ctx: ScoringContext) -> Dict[str, Scored]:
        cfg = ctx.config
        f = ctx.features
        known = {
            "roast_level": {a.value for a in f.preferred_roast_levels},
            "origin": {a.value for a in f.preferred_origins},
            "processing_method": {a.value for a in f.preferred_processing_methods},
            "flavor_notes": {a.value for a in f.preferred_flavor_notes},
        }
        unfamiliar, familiar = cfg.discovery_unfamiliar, cfg.discovery_familiar

        out: Dict[str, Scored] = {}
        for item_id, item in ctx.candidates.items():
            parts: List[float] = []
            reasons: List[str] = []
            scalar = {
                "roast_level": item.roast_level,
                "origin": item.origin_country,
                "processing_method": item.processing_method,
            }
            for fam, value in scalar.items():
                if not value or not known[fam]:
                    continue
                new = value not in known[fam]
                parts.append(unfamiliar[fam] if new else familiar[fam])
                if new:
                    reasons.append({
                        "roast_level": f"Try a {value} roast - different from your usual preferences",
                        "origin": f"Explore coffee from {value}",
                        "processing_method": f"Experience {value} processing method",
                    }[fam])
            if item.flavor_notes and known["flavor_notes"]:
                fresh = [n for n in item.flavor_notes if n not in known["flavor_notes"]]
                parts.append(len(fresh) / len(item.flavor_notes) * unfamiliar["flavor_notes"])
                if fresh:
                    reasons.append(f"Discover new flavors: {', '.join(fresh[:2])}")

            age_days = max(0.0, (ctx.now - as_utc(item.created_at)).total_seconds() / 86400.0)
            novelty = math.exp(-age_days / cfg.discovery_novelty_days)
            base = sum(parts) / len(parts) if parts else 0.0
            s = (1 - cfg.discovery_novelty_weight) * base + cfg.discovery_novelty_weight * novelty
            if s > 0:
                out[item_id] = Scored(min(s, 1.0), reasons or ["Expand your coffee horizons"])
        return out


@register
class SocialScorer(Scorer):
    name = "social"

    def score(self, ctx: ScoringContext) -> Dict[str, Scored]:
        cfg = ctx.config
        friends = ctx.social.connections(ctx.user_id)
        if not friends:
            return {}
        events = ctx.store.find(
            user_ids=friends,
            item_ids=list(ctx.candidates),
            types=tuple(cfg.social_action_weights),
            since=ctx.now - timedelta(days=cfg.social_lookback_days),
        )
        acc: Dict[str, float] = defaultdict(float)
        fans: Dict[str, Set[str]] = defaultdict(set)
        for ev in events:
            if ev.interaction_type == "rating" and not _liked(ev, cfg):
                continue
            days = (ctx.now - as_utc(ev.timestamp)).total_seconds() / 86400.0
            rating = ev.value if ev.value is not None else 5.0
            acc[ev.item_id] += (
                (rating / 5.0) * cfg.social_action_weights[ev.interaction_type]
                * math.exp(-max(0.0, days) / cfg.social_decay_days)
            )
            fans[ev.item_id].add(ev.user_id)

        out: Dict[str, Scored] = {}
        for item_id, s in acc.items():
            n = len(fans[item_id])
            reason = "A friend recommends this" if n == 1 else f"{n} friends recommend this"
            out[item_id] = Scored(min(s, 1.0), [reason])
        return out


# model config may use the legacy camelCase weight names
_WEIGHT_ALIASES = {"contentBased": "content-based", "diversity": "discovery"}


@register
class HybridScorer(Scorer):
    """Weighted blend of every other scorer, plus a bonus per contributing algorithm."""
    name = "hybrid"
    parts = ("collaborative", "content-based", "popularity", "discovery", "social")

    def weights(self, ctx: ScoringContext) -> Dict[str, float]:
        w = dict(ctx.config.hybrid_weights)
        for k, v in (ctx.model_config.get("weights") or {}).items():
            w[_WEIGHT_ALIASES.get(k, k)] = float(v)
        return w

    def score(self, ctx: ScoringContext) -> Dict[str, Scored]:
        cfg = ctx.config
        weights = self.weights(ctx)
        total: Dict[str, float] = defaultdict(float)
        sources: Dict[str, List[str]] = defaultdict(list)
        reasons: Dict[str, List[str]] = defaultdict(list)
        for name in self.parts:
            for item_id, sc in SCORERS[name]().score(ctx).items():
                total[item_id] += sc.score * weights.get(name, 0.0)
                sources[item_id].append(name)
                if sc.reasons:
                    reasons[item_id].append(sc.reasons[0])

        out: Dict[str, Scored] = {}
        for item_id, s in total.items():
            bonus = min(len(sources[item_id]) * cfg.hybrid_signal_bonus, cfg.hybrid_max_bonus)
            merged = list(dict.fromkeys(reasons[item_id]))[: cfg.max_reasons]
            out[item_id] = Scored(min(s + bonus, 1.0), merged or ["Recommended for you"])
        return out


def apply_context(
    scores: Dict[str, Scored],
    candidates: Dict[str, CatalogItem],
    features: UserFeatureSnapshot,
    context: Optional[RecommendationContext],
    config: EngineConfig,
) -> None:
    """Adjust scores in place for the request context (time of day, location, device, weekday)."""
    if context is None:
        return
    boost = config.context_boost
    favored_roasts = config.roast_time_affinity.get(context.time_of_day or "", [])
    uniform = 1.0
    if context.device_type and context.device_type == features.preferred_device_type:
        uniform += config.engagement_boost
    if context.day_of_week is not None and context.day_of_week in features.preferred_day_of_week:
        uniform += config.engagement_boost

    for item_id, sc in scores.items():
        item = candidates[item_id]
        s = sc.score * uniform
        if item.roast_level and item.roast_level in favored_roasts:
            s += boost
            sc.reasons.append(f"A good fit for the {context.time_of_day}")
        if (
            context.location and item.roaster_location
            and item.roaster_location.strip().lower() == context.location.strip().lower()
        ):
            s += boost
            sc.reasons.append(f"Roasted locally in {item.roaster_location}")
        sc.score = max(0.0, min(s, 1.0))
