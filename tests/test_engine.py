# =============================================
# File: tests/test_engine.py
# Purpose: Ranking, exclusions, cold start, algorithms, reasons and metric samples
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from datetime import datetime, timedelta, timezone

import pytest

from cuppa.errors import ConfigurationError, DependencyFailure
from cuppa.schemas import CatalogItem, DeployRequest, InteractionEvent, RecommendationContext
from cuppa.services.catalog import InMemoryCatalog, InMemorySocialGraph
from cuppa.services.engine import RecommendationEngine
from cuppa.services.features import FeatureService
from cuppa.services.monitoring import MonitoringService
from cuppa.services.registry import ModelRegistry
from cuppa.services.store import InMemoryEventStore
from cuppa.utils.events import EventBus

NOW = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)  # Monday, morning


def _item(id, roast=None, country=None, method=None, notes=(), rating=4.0, count=10,
          created="2024-01-01T00:00:00+00:00", roaster=None):
    return CatalogItem(
        id=id,
        name=id.title(),
        roast_level=roast,
        origin={"country": country},
        processing_details={"method": method},
        flavor_profile={"flavor_notes": list(notes)},
        avg_rating=rating,
        rating_count=count,
        created_at=created,
        roaster_location=roaster,
    )


def _ev(user, item, kind="view", value=None, days_ago=0.0, n=0):
    return InteractionEvent(
        event_id=f"{user}-{item}-{kind}-{days_ago}-{n}",
        user_id=user,
        item_id=item,
        interaction_type=kind,
        value=value,
        timestamp=NOW - timedelta(days=days_ago),
    )


def _engine(items, events=(), social=None, bus=None, features_cls=FeatureService, **engine_kw):
    store = InMemoryEventStore()
    store.add_many(list(events))
    catalog = InMemoryCatalog(items)
    bus = bus or EventBus()
    features = features_cls(store, catalog, bus=bus, clock=lambda: NOW)
    registry = ModelRegistry(bus=bus, clock=lambda: NOW)
    return RecommendationEngine(features, catalog, store, registry, social=social, bus=bus, clock=lambda: NOW,
                                **engine_kw)


def _ids(resp):
    return [i.item_id for i in resp.items]


# ---------- cold start & popularity ----------

def test_cold_start_uses_popularity():
    items = [_item("low", rating=3.0), _item("high", rating=5.0, count=50), _item("mid", rating=4.0)]
    resp = _engine(items).generate_recommendations("new-user", algorithm="content-based")
    assert resp.cold_start
    assert resp.algorithm == "popularity"
    assert _ids(resp) == ["high", "mid", "low"]


def test_feature_failure_degrades_to_cold_start():
    class _BrokenFeatures(FeatureService):
        def extract_user_features(self, user_id, force_refresh=False):
            raise DependencyFailure("catalog", "timeout")

    items = [_item("a", rating=4.5), _item("b", rating=3.5)]
    resp = _engine(items, events=[_ev("u1", "a", days_ago=40)], features_cls=_BrokenFeatures).generate_recommendations("u1")
    assert resp.cold_start
    assert resp.algorithm == "popularity"
    assert _ids(resp) == ["a", "b"]


def test_ties_break_by_catalog_recency_then_id():
    items = [
        _item("b-old", created="2023-01-01T00:00:00+00:00"),
        _item("a-new", created="2024-06-01T00:00:00+00:00"),
        _item("c-old", created="2023-01-01T00:00:00+00:00"),
    ]
    resp = _engine(items).generate_recommendations("u-tie", algorithm="popularity")
    assert _ids(resp) == ["a-new", "b-old", "c-old"]


def test_popular_this_week_reason():
    items = [_item("hot"), _item("cold")]
    events = [_ev("someone", "hot", "purchase", days_ago=2)]
    resp = _engine(items, events).generate_recommendations("u-new", include_reasons=True)
    hot = next(i for i in resp.items if i.item_id == "hot")
    assert "Popular this week" in hot.reasons
    assert resp.items[0].item_id == "hot"


# ---------- exclusions & limits ----------

def test_never_returns_excluded_items_or_more_than_limit():
    items = [_item(f"i{n}", rating=3 + n * 0.2) for n in range(8)]
    resp = _engine(items).generate_recommendations("u1", limit=3, exclude_item_ids=["i7", "i6"])
    assert len(resp.items) == 3
    assert not {"i7", "i6"} & set(_ids(resp))


def test_recent_interactions_are_excluded():
    items = [_item("seen-recently"), _item("seen-long-ago"), _item("never-seen")]
    events = [_ev("u1", "seen-recently", "view", days_ago=5), _ev("u1", "seen-long-ago", "view", days_ago=40)]
    resp = _engine(items, events).generate_recommendations("u1", algorithm="popularity")
    assert "seen-recently" not in _ids(resp)
    assert {"seen-long-ago", "never-seen"} <= set(_ids(resp))


@pytest.mark.parametrize("kwargs", [{"limit": 0}, {"limit": 51}, {"algorithm": "astrology"}])
def test_invalid_arguments_raise_configuration_error(kwargs):
    with pytest.raises(ConfigurationError):
        _engine([_item("a")]).generate_recommendations("u1", **kwargs)


def test_empty_catalog_returns_no_items():
    resp = _engine([]).generate_recommendations("u1")
    assert resp.items == []


# ---------- personalized algorithms ----------

def test_content_based_ranks_similar_coffees_first():
    liked = _item("liked", roast="light", country="Ethiopia", method="washed", notes=["jasmine", "lemon"])
    items = [
        liked,
        _item("same-origin", roast="light", country="Ethiopia", method="natural", notes=["blueberry"]),
        _item("same-process", roast="light", country="Kenya", method="washed", notes=["lemon"]),
        _item("unrelated-dark", roast="dark", country="Indonesia", method="wet-hulled", notes=["cedar"], rating=5.0),
        _item("unrelated-brazil", roast="medium-dark", country="Brazil", method="natural", notes=["peanut"]),
    ]
    events = [_ev("U", "liked", "rating", value=4 + (n % 2), days_ago=n / 2, n=n) for n in range(20)]
    engine = _engine(items, events)

    snap = engine.features.extract_user_features("U")
    assert 4 <= snap.average_rating <= 5
    light = next(a for a in snap.preferred_roast_levels if a.value == "light")
    assert light.score > 0

    resp = engine.generate_recommendations("U", algorithm="content-based", include_reasons=True)
    ids = _ids(resp)
    assert resp.algorithm == "content-based"
    assert "liked" not in ids
    assert set(ids[:2]) == {"same-origin", "same-process"}
    for unrelated in ("unrelated-dark", "unrelated-brazil"):
        if unrelated in ids:
            assert ids.index(unrelated) > 1
    assert any("light roast" in r for r in resp.items[0].reasons)


def test_collaborative_recommends_neighbor_likes():
    items = [_item("A"), _item("B"), _item("C")]
    events = [
        _ev("u1", "A", "purchase", days_ago=1),
        _ev("u2", "A", "purchase", days_ago=3),
        _ev("u2", "B", "favorite", days_ago=3),
    ]
    resp = _engine(items, events).generate_recommendations("u1", algorithm="collaborative", include_reasons=True)
    assert resp.algorithm == "collaborative"
    assert _ids(resp) == ["B"]
    assert "Recommended based on users with similar taste" in resp.items[0].reasons


def test_social_uses_connections_and_degrades_without_them():
    items = [_item("X"), _item("Y", rating=5.0, count=50), _item("Z")]
    events = [_ev("u1", "Z", "view", days_ago=40), _ev("f1", "X", "purchase", days_ago=2)]
    social = InMemorySocialGraph()
    social.connect("u1", "f1")

    resp = _engine(items, events, social=social).generate_recommendations("u1", algorithm="social",
                                                                          include_reasons=True)
    assert resp.algorithm == "social"
    assert _ids(resp) == ["X"]
    assert "A friend recommends this" in resp.items[0].reasons

    lonely = _engine(items, events).generate_recommendations("u1", algorithm="social")
    assert lonely.algorithm == "popularity"
    assert not lonely.cold_start
    assert lonely.items[0].item_id == "Y"


def test_discovery_prefers_unfamiliar_attributes():
    items = [
        _item("usual", roast="light", country="Ethiopia", method="washed", notes=["lemon"]),
        _item("usual-2", roast="light", country="Ethiopia", method="washed", notes=["lemon"]),
        _item("new", roast="dark", country="Sumatra", method="wet-hulled", notes=["cedar"]),
    ]
    events = [_ev("u1", "usual", "purchase", days_ago=40)]
    resp = _engine(items, events).generate_recommendations("u1", algorithm="discovery", include_reasons=True)
    assert resp.items[0].item_id == "new"
    assert any(r.startswith("Try a dark roast") for r in resp.items[0].reasons)


def test_default_algorithm_is_hybrid_with_bounded_scores():
    items = [_item("A", roast="light"), _item("B", roast="dark"), _item("C", roast="light")]
    events = [_ev("u1", "A", "purchase", days_ago=40), _ev("u2", "A", "purchase", days_ago=3),
              _ev("u2", "C", "purchase", days_ago=3)]
    resp = _engine(items, events).generate_recommendations("u1", include_reasons=True)
    assert resp.algorithm == "hybrid"
    assert resp.model_version == "default:1.0.0"
    scores = [i.score for i in resp.items]
    assert scores == sorted(scores, reverse=True)
    assert all(0 <= s <= 1 for s in scores)
    assert all(i.match_percentage == round(i.score * 100) for i in resp.items)
    assert all(1 <= len(i.reasons) <= 4 for i in resp.items)


# ---------- context, reasons ----------

def test_local_roaster_boost():
    items = [_item("a-denver", roaster="Denver"), _item("zz-portland", roaster="Portland")]
    resp = _engine(items).generate_recommendations(
        "u1", include_reasons=True, context=RecommendationContext(location="portland")
    )
    assert _ids(resp) == ["zz-portland", "a-denver"]
    assert "Roasted locally in Portland" in resp.items[0].reasons


def test_reasons_omitted_unless_requested():
    resp = _engine([_item("a"), _item("b")]).generate_recommendations("u1")
    assert all(i.reasons == [] for i in resp.items)


# ---------- registry & monitoring hooks ----------

def test_ab_test_assignment_overrides_requested_algorithm():
    items = [_item("A", created="2025-05-01T00:00:00+00:00"), _item("B")]
    engine = _engine(items, [_ev("u1", "B", "view", days_ago=40)])
    test = engine.registry.create_ab_test("explore", [
        {"modelVersion": "default:1.0.0", "algorithm": "discovery", "trafficShare": 1.0},
    ])
    resp = engine.generate_recommendations("u1", algorithm="popularity")
    assert resp.ab_test_id == test.test_id
    assert resp.algorithm == "discovery"
    assert engine.registry.get_ab_test(test.test_id).metrics["default:1.0.0"].requests == 1


def test_emits_one_metric_sample_per_call():
    bus = EventBus()
    samples = []
    bus.subscribe("recommendation.served", samples.append)
    engine = _engine([_item("a")], bus=bus)

    resp = engine.generate_recommendations("u1")
    bus.flush()
    assert len(samples) == 1
    s = samples[0]
    assert s.request_id == resp.request_id
    assert (s.model_version, s.algorithm) == ("default:1.0.0", "popularity")
    assert not s.errored
    assert s.context == {"timeOfDay": "morning", "dayOfWeek": "0"}


def test_failed_call_emits_errored_sample_and_raises():
    class _ExplodingCatalog(InMemoryCatalog):
        def find_items(self, filters=None, exclude_ids=None):
            raise RuntimeError("catalog exploded")

    bus = EventBus()
    samples = []
    bus.subscribe("recommendation.served", samples.append)
    store = InMemoryEventStore()
    catalog = _ExplodingCatalog()
    features = FeatureService(store, catalog, bus=bus, clock=lambda: NOW)
    engine = RecommendationEngine(features, catalog, store, ModelRegistry(bus=bus), bus=bus, clock=lambda: NOW)

    with pytest.raises(RuntimeError):
        engine.generate_recommendations("u1")
    bus.flush()
    assert len(samples) == 1 and samples[0].errored


def test_sample_reaches_monitoring_before_the_call_returns():
    mon = MonitoringService(clock=lambda: NOW, rules=())
    engine = _engine([_item("a")], monitoring=mon)

    resp = engine.generate_recommendations("u1")
    sample = mon.record_outcome(resp.request_id, clicked=True)
    assert sample.clicked
    assert sample.request_id == resp.request_id


# ---------- response cache ----------

class _Tick:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


def test_repeated_request_is_served_from_cache():
    bus = EventBus()
    samples = []
    bus.subscribe("recommendation.served", samples.append)
    engine = _engine([_item("a"), _item("b")], bus=bus)

    first = engine.generate_recommendations("u1", limit=2)
    second = engine.generate_recommendations("u1", limit=2)
    bus.flush()
    assert not first.cached
    assert second.cached
    assert _ids(second) == _ids(first)
    assert second.request_id != first.request_id
    assert [s.request_id for s in samples] == [first.request_id, second.request_id]

    # different arguments are a different entry
    assert not engine.generate_recommendations("u1", limit=1).cached
    assert not engine.generate_recommendations("u1", limit=2, use_cache=False).cached


def test_cached_response_expires_after_ttl():
    from cuppa.config import EngineConfig
    tick = _Tick()
    engine = _engine([_item("a")], config=EngineConfig(response_cache_ttl_seconds=60), cache_clock=tick)

    engine.generate_recommendations("u1")
    tick.t = 30.0
    assert engine.generate_recommendations("u1").cached
    tick.t = 61.0
    assert not engine.generate_recommendations("u1").cached


def test_model_replacement_clears_cached_responses():
    engine = _engine([_item("a"), _item("b")])
    engine.generate_recommendations("u1")
    assert engine.generate_recommendations("u1").cached

    engine.registry.deploy_model(DeployRequest(name="default", version="1.0.0", algorithm="hybrid",
                                               config={"weights": {"popularity": 1.0}},
                                               replace_current_deployment=True))
    assert len(engine.cache) == 0
    assert not engine.generate_recommendations("u1").cached


def test_invalidate_users_only_touches_their_entries():
    engine = _engine([_item("a")])
    engine.generate_recommendations("u1")
    engine.generate_recommendations("u2")
    assert engine.invalidate_users(["u1"]) == 1
    assert not engine.generate_recommendations("u1").cached
    assert engine.generate_recommendations("u2").cached
