# =============================================
# File: tests/test_monitoring.py
# Purpose: Rolling aggregates, alerts, baselines, drift detection and health
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import time
from datetime import datetime, timedelta, timezone

import pytest

from cuppa.errors import ConfigurationError, NotFoundError
from cuppa.schemas import AlertRule, MetricSample
from cuppa.services.monitoring import MonitoringService, psi
from cuppa.utils.events import EventBus

NOW = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)
MV, ALG = "default:1.0.0", "hybrid"


class _Clock:
    def __init__(self, t):
        self.t = t

    def __call__(self):
        return self.t


_seq = {"n": 0}


def _sample(clicked=False, converted=False, rating=None, errored=False, latency=100.0, when=NOW, **context):
    _seq["n"] += 1
    return MetricSample(
        request_id=f"r{_seq['n']}",
        timestamp=when,
        model_version=MV,
        algorithm=ALG,
        response_time_ms=latency,
        clicked=clicked,
        converted=converted,
        rating=rating,
        errored=errored,
        context={k: str(v) for k, v in context.items()},
    )


def _feed(mon, n, ctr, **kw):
    clicks = int(round(n * ctr))
    for i in range(n):
        mon.record_performance_metrics(_sample(clicked=i < clicks, **kw))


def _service(clock=None, rules=()):
    return MonitoringService(clock=clock or (lambda: NOW), rules=rules)


# ---------- aggregates ----------

def test_aggregates_over_window():
    mon = _service()
    mon.record_performance_metrics(_sample(clicked=True, rating=4, latency=100))
    mon.record_performance_metrics(_sample(converted=True, latency=300))
    mon.record_performance_metrics(_sample(errored=True, latency=200))
    mon.record_performance_metrics(_sample(latency=200))

    agg = mon.get_aggregates(MV, ALG)[0]["metrics"]
    assert agg["clickThroughRate"] == pytest.approx(0.25)
    assert agg["conversionRate"] == pytest.approx(0.25)
    assert agg["averageRating"] == pytest.approx(4.0)
    assert agg["responseTime"] == pytest.approx(200.0)
    assert agg["errorRate"] == pytest.approx(0.25)
    assert agg["userEngagement"] == pytest.approx(0.5)
    assert agg["sampleSize"] == 4


def test_window_is_bounded():
    from cuppa.config import MonitoringConfig
    mon = MonitoringService(config=MonitoringConfig(window_size=5), clock=lambda: NOW, rules=())
    _feed(mon, 12, 0.0)
    assert mon.get_aggregates()[0]["metrics"]["sampleSize"] == 5


def test_record_outcome_updates_sample():
    mon = _service()
    s = _sample()
    mon.record_performance_metrics(s)
    updated = mon.record_outcome(s.request_id, clicked=True, rating=5)
    assert updated.clicked and updated.rating == 5.0
    assert mon.get_aggregates()[0]["metrics"]["clickThroughRate"] == 1.0

    with pytest.raises(NotFoundError):
        mon.record_outcome("unknown-request", clicked=True)


# ---------- alerts ----------

def test_alert_fires_once_per_cooldown():
    clock = _Clock(NOW)
    bus = EventBus()
    fired = []
    bus.subscribe("alert.triggered", fired.append)
    rule = AlertRule(id="err", name="Errors", metric="error_rate", operator=">", threshold=0.05,
                     time_window_minutes=15, cooldown_minutes=30, severity="high")
    mon = MonitoringService(bus=bus, clock=clock, rules=[rule])

    assert len(mon.record_performance_metrics(_sample(errored=True))) == 1
    assert mon.record_performance_metrics(_sample(errored=True)) == []

    clock.t = NOW + timedelta(minutes=31)
    assert len(mon.record_performance_metrics(_sample(errored=True, when=clock.t))) == 1
    bus.flush()
    assert len(fired) == 2
    assert fired[0].model_version == MV


def test_alert_rule_only_sees_its_time_window():
    clock = _Clock(NOW)
    rule = AlertRule(id="slow", name="Slow", metric="response_time", operator=">", threshold=1000,
                     time_window_minutes=10, cooldown_minutes=15)
    mon = MonitoringService(clock=clock, rules=[rule])
    mon.record_performance_metrics(_sample(latency=5000, when=NOW - timedelta(minutes=30)))
    assert mon.record_performance_metrics(_sample(latency=50)) == []


def test_default_rules_are_installed():
    ids = {r.id for r in MonitoringService(clock=lambda: NOW).list_alert_rules()}
    assert ids == {"high_error_rate", "low_ctr", "slow_responses"}


def test_fresh_sample_without_feedback_raises_no_alert():
    mon = MonitoringService(clock=lambda: NOW)
    sample = MetricSample(request_id="fresh", timestamp=NOW, model_version=MV, algorithm=ALG,
                          response_time_ms=5.0)
    assert mon.record_performance_metrics(sample) == []
    assert mon.recent_alerts() == []


def test_low_ctr_waits_for_enough_samples():
    mon = MonitoringService(clock=lambda: NOW)
    _feed(mon, 49, ctr=0.0)
    assert mon.recent_alerts() == []
    fired = mon.record_performance_metrics(_sample())
    assert [a.name for a in fired] == ["Low click-through rate"]


def test_cooldown_is_tracked_per_model_key():
    rule = AlertRule(id="err", name="Errors", metric="error_rate", operator=">", threshold=0.05,
                     time_window_minutes=15, cooldown_minutes=30)
    mon = MonitoringService(clock=lambda: NOW, rules=[rule])
    assert len(mon.record_performance_metrics(_sample(errored=True))) == 1

    other = _sample(errored=True).model_copy(update={"algorithm": "popularity"})
    fired = mon.record_performance_metrics(other)
    assert len(fired) == 1
    assert fired[0].algorithm == "popularity"


def test_add_alert_rule_rejects_unknown_metric():
    mon = _service()
    with pytest.raises(ConfigurationError):
        mon.add_alert_rule({"id": "x", "name": "x", "metric": "vibes", "operator": ">", "threshold": 1})


# ---------- baselines ----------

def test_set_baseline_requires_five_samples():
    mon = _service()
    _feed(mon, 4, 0.5)
    res = mon.set_baseline(MV, ALG)
    assert not res.created
    assert mon.get_baseline(MV, ALG) is None


def test_insufficient_samples_do_not_overwrite_baseline():
    mon = _service(clock=_Clock(NOW))
    _feed(mon, 5, 0.4, when=NOW - timedelta(days=40))
    assert mon.set_baseline(MV, ALG).created
    original = mon.get_baseline(MV, ALG)

    # retention empties the window; the baseline survives
    assert mon.cleanup_old_metrics() == 5
    _feed(mon, 2, 0.0)
    res = mon.set_baseline(MV, ALG)
    assert not res.created
    assert mon.get_baseline(MV, ALG) == original


# ---------- drift ----------

def test_drift_without_baseline_is_insufficient_data():
    mon = _service()
    _feed(mon, 30, 0.3)
    res = mon.detect_model_drift(MV, ALG)
    assert not res.is_drift_detected
    assert res.drift_type == "none"
    assert res.details.detection_method == "insufficient_data"


def test_drift_with_too_few_samples_is_insufficient_data():
    mon = _service()
    _feed(mon, 5, 0.3)
    mon.set_baseline(MV, ALG)
    _feed(mon, 4, 0.3)
    res = mon.detect_model_drift(MV, ALG)
    assert not res.is_drift_detected
    assert res.details.detection_method == "insufficient_data"


def test_ctr_collapse_is_performance_drift():
    mon = _service()
    _feed(mon, 50, 0.30)
    assert mon.set_baseline(MV, ALG).created
    _feed(mon, 20, 0.05)

    res = mon.detect_model_drift(MV, ALG)
    assert res.is_drift_detected
    assert res.drift_type == "performance"
    assert res.recommendation in ("retrain", "adjust_parameters")
    assert "click_through_rate" in res.affected_features
    assert res.confidence == pytest.approx(min(2 * res.drift_score, 1.0))


def test_stable_metrics_report_no_drift():
    mon = _service()
    _feed(mon, 40, 0.25)
    mon.set_baseline(MV, ALG)
    _feed(mon, 20, 0.25)
    res = mon.detect_model_drift(MV, ALG)
    assert not res.is_drift_detected
    assert res.recommendation == "no_action"


def test_context_shift_is_data_drift():
    mon = _service()
    # same CTR before and after; only the device mix moves
    for i in range(40):
        mon.record_performance_metrics(_sample(clicked=i % 4 == 0, deviceType="desktop" if i % 2 else "mobile"))
    mon.set_baseline(MV, ALG)
    for i in range(20):
        mon.record_performance_metrics(_sample(clicked=i % 4 == 0, deviceType="tablet"))

    res = mon.detect_model_drift(MV, ALG)
    assert res.is_drift_detected
    assert res.drift_type == "data"
    assert res.recommendation == "investigate"
    assert "deviceType" in res.affected_features
    assert res.details.signals["psi:deviceType"] > 0.1


def test_psi_is_zero_for_identical_distributions():
    d = {"a": 0.5, "b": 0.5}
    assert psi(d, dict(d)) == pytest.approx(0.0)
    assert psi(d, {"a": 0.9, "b": 0.1}) > 0


def test_run_drift_checks_covers_keys_with_baselines():
    mon = _service()
    _feed(mon, 20, 0.3)
    mon.set_baseline(MV, ALG)
    mon.record_performance_metrics(MetricSample(request_id="other", model_version="x:1", algorithm="social"))
    results = mon.run_drift_checks()
    assert list(results) == [f"{MV}/{ALG}"]


# ---------- retention ----------

def test_cleanup_drops_old_samples():
    clock = _Clock(NOW)
    mon = _service(clock=clock)
    mon.record_performance_metrics(_sample(when=NOW - timedelta(days=40)))
    mon.record_performance_metrics(_sample(when=NOW - timedelta(days=1)))
    assert mon.cleanup_old_metrics() == 1
    assert mon.get_aggregates()[0]["metrics"]["sampleSize"] == 1


# ---------- health ----------

def test_health_worst_status_wins():
    mon = _service()
    mon.register_health_check("fast", lambda: None)
    assert mon.get_system_health().status == "healthy"

    def _broken():
        raise ConnectionError("refused")

    mon.register_health_check("db", _broken, database=True)
    report = mon.get_system_health()
    assert report.status == "critical"
    assert report.services["db"].error == "refused"
    assert report.services["fast"].status == "healthy"


def test_slow_check_is_degraded():
    from cuppa.config import MonitoringConfig
    mon = MonitoringService(config=MonitoringConfig(service_degraded_ms=1.0), clock=lambda: NOW, rules=())
    mon.register_health_check("slow", lambda: time.sleep(0.02))
    report = mon.get_system_health()
    assert report.services["slow"].status == "degraded"
    assert report.status == "degraded"


def test_monitoring_stats_summary():
    mon = _service()
    _feed(mon, 6, 0.5)
    mon.set_baseline(MV, ALG)
    stats = mon.get_monitoring_stats()
    assert stats["trackedKeys"] == 1
    assert stats["totalSamples"] == 6
    assert stats["baselines"] == 1
    assert stats["keys"][0]["hasBaseline"] is True
