# =============================================
# File: cuppa/services/monitoring.py
# Purpose: Rolling serving metrics, alert rules, baselines, drift scoring, health
# =============================================

from __future__ import annotations
import math
import threading
import uuid
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger

from cuppa.config import MonitoringConfig
from cuppa.errors import ConfigurationError, InsufficientDataError, NotFoundError
from cuppa.schemas import (
    Alert,
    AlertRule,
    Baseline,
    BaselineResult,
    DriftDetails,
    DriftResult,
    MetricAggregate,
    MetricSample,
    ServiceHealth,
    SystemHealth,
)
from cuppa.utils.events import EventBus
from cuppa.utils.timing import as_utc, timer, utcnow

Key = Tuple[str, str]
HealthCheck = Callable[[], Any]

_SEVERITY = {"healthy": 0, "degraded": 1, "critical": 2}
_OPS: Dict[str, Callable[[float, float], bool]] = {
    ">": lambda a, b: a > b,
    "<": lambda a, b: a < b,
    ">=": lambda a, b: a >= b,
    "<=": lambda a, b: a <= b,
    "=": lambda a, b: a == b,
}

DEFAULT_ALERT_RULES: Tuple[AlertRule, ...] = (
    AlertRule(id="high_error_rate", name="High error rate", type="error", metric="error_rate",
              operator=">", threshold=0.05, time_window_minutes=15, severity="high", cooldown_minutes=30),
    AlertRule(id="low_ctr", name="Low click-through rate", type="performance", metric="click_through_rate",
              operator="<", threshold=0.1, time_window_minutes=60, severity="medium", cooldown_minutes=60,
              min_samples=50),
    AlertRule(id="slow_responses", name="Slow responses", type="performance", metric="response_time",
              operator=">", threshold=1000.0, time_window_minutes=10, severity="medium", cooldown_minutes=15),
)


def aggregate(samples: Sequence[MetricSample]) -> MetricAggregate:
    n = len(samples)
    if n == 0:
        return MetricAggregate()
    ratings = [s.rating for s in samples if s.rating is not None]
    return MetricAggregate(
        click_through_rate=sum(s.clicked for s in samples) / n,
        conversion_rate=sum(s.converted for s in samples) / n,
        average_rating=sum(ratings) / len(ratings) if ratings else 0.0,
        response_time=sum(s.response_time_ms for s in samples) / n,
        error_rate=sum(s.errored for s in samples) / n,
        user_engagement=sum(1 for s in samples if s.clicked or s.converted or s.rating is not None) / n,
        sample_size=n,
        rated_samples=len(ratings),
    )


def distributions(samples: Sequence[MetricSample], features: Sequence[str]) -> Dict[str, Dict[str, float]]:
    """Share of each categorical context value per feature; features never seen are omitted."""
    out: Dict[str, Dict[str, float]] = {}
    for feat in features:
        counts = Counter(s.context[feat] for s in samples if s.context.get(feat) is not None)
        total = sum(counts.values())
        if total:
            out[feat] = {k: v / total for k, v in sorted(counts.items())}
    return out


def psi(expected: Dict[str, float], actual: Dict[str, float], epsilon: float = 1e-4) -> float:
    """Population stability index over the union of categories (epsilon floors empty bins)."""
    total = 0.0
    for cat in set(expected) | set(actual):
        e = max(expected.get(cat, 0.0), epsilon)
        a = max(actual.get(cat, 0.0), epsilon)
        total += (a - e) * math.log(a / e)
    return total


def _relative_change(metric: str, base: MetricAggregate, cur: MetricAggregate) -> Optional[float]:
    if metric == "average_rating" and (base.rated_samples == 0 or cur.rated_samples == 0):
        return None
    b, c = getattr(base, metric), getattr(cur, metric)
    if b == 0:
        return abs(c - b)
    return abs(c - b) / abs(b)


def _require(samples: Sequence[MetricSample], minimum: int, what: str) -> None:
    if len(samples) < minimum:
        raise InsufficientDataError(f"Insufficient samples {what}: {len(samples)} < {minimum}")


class MonitoringService:
    """
    Per (modelVersion, algorithm) rolling window of metric samples. Everything here is
    in-process and bounded: `window_size` samples per key, retention cleanup for the rest.
    """
    def __init__(
        self,
        bus: Optional[EventBus] = None,
        config: Optional[MonitoringConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        rules: Optional[Sequence[AlertRule]] = None,
    ) -> None:
        self.bus = bus or EventBus()
        self.cfg = config or MonitoringConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._windows: Dict[Key, Deque[MetricSample]] = {}
        self._request_keys: Dict[str, Key] = {}
        self._baselines: Dict[Key, Baseline] = {}
        self._rules: Dict[str, AlertRule] = {}
        self._alerts: Deque[Alert] = deque(maxlen=1000)
        # cooldowns run per (rule, key); one noisy model does not silence the rest
        self._last_fired: Dict[Tuple[str, Key], datetime] = {}
        self._checks: Dict[str, Tuple[HealthCheck, float]] = {}
        for r in (DEFAULT_ALERT_RULES if rules is None else rules):
            self._rules[r.id] = r.model_copy()

    # ---------- samples ----------

    def record_performance_metrics(self, sample: Union[MetricSample, Dict[str, Any]]) -> List[Alert]:
        """Fold a sample into its window and evaluate alert rules. Returns alerts fired now."""
        if not isinstance(sample, MetricSample):
            sample = MetricSample.model_validate(sample)
        key = (sample.model_version, sample.algorithm)
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                window = self._windows[key] = deque(maxlen=self.cfg.window_size)
            if len(window) == window.maxlen:
                self._request_keys.pop(window[0].request_id, None)
            window.append(sample)
            self._request_keys[sample.request_id] = key
            fired = self._evaluate_rules(key, window)

        self.bus.emit("metrics.recorded", {
            "requestId": sample.request_id,
            "modelVersion": sample.model_version,
            "algorithm": sample.algorithm,
        })
        for alert in fired:
            self.bus.emit("alert.triggered", alert)
        return fired

    def record_outcome(
        self,
        request_id: str,
        clicked: Optional[bool] = None,
        converted: Optional[bool] = None,
        rating: Optional[float] = None,
    ) -> MetricSample:
        """Attach user feedback to a recorded sample. Flags only ever turn on."""
        with self._lock:
            key = self._request_keys.get(request_id)
            window = self._windows.get(key) if key else None
            if window is None:
                raise NotFoundError("metric sample", request_id)
            for i, s in enumerate(window):
                if s.request_id == request_id:
                    update: Dict[str, Any] = {}
                    if clicked:
                        update["clicked"] = True
                    if converted:
                        update["converted"] = True
                    if rating is not None:
                        update["rating"] = float(rating)
                    window[i] = s.model_copy(update=update)
                    return window[i]
        raise NotFoundError("metric sample", request_id)

    def get_aggregates(
        self, model_version: Optional[str] = None, algorithm: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        with self._lock:
            keys = sorted(self._windows)
            out = []
            for mv, alg in keys:
                if model_version and mv != model_version:
                    continue
                if algorithm and alg != algorithm:
                    continue
                out.append({
                    "modelVersion": mv,
                    "algorithm": alg,
                    "metrics": aggregate(list(self._windows[(mv, alg)])).model_dump(by_alias=True),
                    "hasBaseline": (mv, alg) in self._baselines,
                })
            return out

    def _samples(self, key: Key) -> List[MetricSample]:
        with self._lock:
            return list(self._windows.get(key, ()))

    # ---------- alerts ----------

    def add_alert_rule(self, rule: Union[AlertRule, Dict[str, Any]]) -> AlertRule:
        if not isinstance(rule, AlertRule):
            rule = AlertRule.model_validate(rule)
        if rule.metric not in MetricAggregate.model_fields:
            raise ConfigurationError([f"Unknown metric: {rule.metric}"])
        with self._lock:
            self._rules[rule.id] = rule.model_copy()
        logger.info(f"[monitoring] alert rule {rule.id} ({rule.metric} {rule.operator} {rule.threshold}) added")
        return rule

    def list_alert_rules(self) -> List[AlertRule]:
        with self._lock:
            return [r.model_copy() for r in self._rules.values()]

    def _evaluate_rules(self, key: Key, window: Deque[MetricSample]) -> List[Alert]:
        now = self._clock()
        fired: List[Alert] = []
        for rule in self._rules.values():
            if not rule.enabled:
                continue
            last = self._last_fired.get((rule.id, key))
            if last is not None and now - last < timedelta(minutes=rule.cooldown_minutes):
                continue
            since = now - timedelta(minutes=rule.time_window_minutes)
            recent = [s for s in window if as_utc(s.timestamp) >= since]
            if not recent or len(recent) < rule.min_samples:
                continue
            value = getattr(aggregate(recent), rule.metric)
            if not _OPS[rule.operator](value, rule.threshold):
                continue
            rule.last_triggered = now
            self._last_fired[(rule.id, key)] = now
            alert = Alert(
                id=f"alert_{uuid.uuid4().hex[:12]}",
                name=rule.name,
                severity=rule.severity,
                message=f"{rule.name}: {rule.metric}={value:.4f} {rule.operator} {rule.threshold}",
                model_version=key[0],
                algorithm=key[1],
                current_value=value,
                threshold=rule.threshold,
                timestamp=now,
            )
            self._alerts.append(alert)
            fired.append(alert)
            logger.warning(f"[monitoring] {alert.message} ({key[0]}/{key[1]})")
        return fired

    def recent_alerts(self, hours: Optional[int] = None) -> List[Alert]:
        since = self._clock() - timedelta(hours=hours or self.cfg.alert_lookback_hours)
        with self._lock:
            return [a for a in self._alerts if as_utc(a.timestamp) >= since]

    # ---------- baselines & drift ----------

    def set_baseline(self, model_version: str, algorithm: str) -> BaselineResult:
        key = (model_version, algorithm)
        samples = self._samples(key)
        try:
            _require(samples, self.cfg.min_baseline_samples, f"to set baseline for {model_version}/{algorithm}")
        except InsufficientDataError as e:
            logger.warning(f"[monitoring] {e}")
            with self._lock:
                existing = self._baselines.get(key)
            return BaselineResult(created=False, message=str(e), baseline=existing)

        baseline = Baseline(
            model_version=model_version,
            algorithm=algorithm,
            metrics=aggregate(samples),
            distributions=distributions(samples, self.cfg.data_drift_features),
            created_at=self._clock(),
        )
        with self._lock:
            self._baselines[key] = baseline
        self.bus.emit("baseline.set", {"modelVersion": model_version, "algorithm": algorithm,
                                       "sampleSize": len(samples)})
        logger.info(f"[monitoring] baseline set for {model_version}/{algorithm} from {len(samples)} samples")
        return BaselineResult(created=True, message=f"Baseline set from {len(samples)} samples", baseline=baseline)

    def get_baseline(self, model_version: str, algorithm: str) -> Optional[Baseline]:
        with self._lock:
            return self._baselines.get((model_version, algorithm))

    def detect_model_drift(self, model_version: str, algorithm: str) -> DriftResult:
        cfg = self.cfg
        key = (model_version, algorithm)
        samples = self._samples(key)
        baseline = self.get_baseline(model_version, algorithm)
        try:
            if baseline is None:
                raise InsufficientDataError(f"no baseline for {model_version}/{algorithm}")
            _require(samples, cfg.min_drift_samples, f"for drift check on {model_version}/{algorithm}")
        except InsufficientDataError as e:
            logger.debug(f"[monitoring] drift skipped: {e}")
            return DriftResult(details=DriftDetails(
                baseline=baseline.metrics if baseline else None,
                threshold=cfg.drift_threshold,
                detection_method="insufficient_data",
            ))

        recent = samples[-cfg.drift_window:]
        current = aggregate(recent)
        base = baseline.metrics

        affected: List[str] = []
        performance = 0.0
        for metric, limit in cfg.performance_thresholds.items():
            change = _relative_change(metric, base, current)
            if change is not None and change > limit:
                performance = max(performance, change)
                affected.append(metric)

        concept = 0.0
        for metric in cfg.concept_metrics:
            change = _relative_change(metric, base, current)
            if change is not None and change > cfg.concept_threshold:
                concept = max(concept, change)
                if metric not in affected:
                    affected.append(metric)

        data = 0.0
        signals: Dict[str, float] = {}
        current_dist = distributions(recent, cfg.data_drift_features)
        for feat, expected in baseline.distributions.items():
            actual = current_dist.get(feat)
            if not actual:
                continue
            score = psi(expected, actual, cfg.psi_epsilon)
            signals[f"psi:{feat}"] = score
            data = max(data, score)
            if score > cfg.psi_feature_threshold:
                affected.append(feat)

        signals.update({"performance": performance, "data": data, "concept": concept})
        overall = max(performance, data, concept)
        detected = overall > cfg.drift_threshold

        drift_type = "none"
        recommendation = "no_action"
        if detected:
            # ties resolve in this order
            for name, score in (("performance", performance), ("data", data), ("concept", concept)):
                if score == overall:
                    drift_type = name
                    break
            if performance > cfg.retrain_threshold or concept > 0:
                recommendation = "retrain"
            elif drift_type == "performance":
                recommendation = "adjust_parameters"
            else:
                recommendation = "investigate"

        result = DriftResult(
            is_drift_detected=detected,
            drift_score=overall,
            drift_type=drift_type,
            confidence=min(2 * overall, 1.0),
            affected_features=affected if detected else [],
            recommendation=recommendation,
            details=DriftDetails(
                baseline=base,
                current=current,
                threshold=cfg.drift_threshold,
                detection_method="relative_change+psi",
                signals=signals,
            ),
        )
        if detected:
            self.bus.emit("drift.detected", {
                "modelVersion": model_version,
                "algorithm": algorithm,
                "driftType": drift_type,
                "driftScore": overall,
                "recommendation": recommendation,
            })
            logger.warning(
                f"[monitoring] {drift_type} drift {overall:.3f} on {model_version}/{algorithm} -> {recommendation}"
            )
        return result

    def run_drift_checks(self) -> Dict[str, DriftResult]:
        """Drift check for every key that has a baseline (scheduled job)."""
        with self._lock:
            keys = sorted(self._baselines)
        return {f"{mv}/{alg}": self.detect_model_drift(mv, alg) for mv, alg in keys}

    # ---------- retention ----------

    def cleanup_old_metrics(self) -> int:
        cutoff = self._clock() - timedelta(days=self.cfg.retention_days)
        removed = 0
        with self._lock:
            for key in list(self._windows):
                window = self._windows[key]
                while window and as_utc(window[0].timestamp) < cutoff:
                    self._request_keys.pop(window.popleft().request_id, None)
                    removed += 1
                if not window:
                    del self._windows[key]
            for fired_key in [k for k in self._last_fired if k[1] not in self._windows]:
                del self._last_fired[fired_key]
            kept = [a for a in self._alerts if as_utc(a.timestamp) >= cutoff]
            self._alerts.clear()
            self._alerts.extend(kept)
        if removed:
            logger.info(f"[monitoring] removed {removed} samples older than {self.cfg.retention_days} days")
        return removed

    # ---------- health ----------

    def register_health_check(self, name: str, check: HealthCheck, database: bool = False) -> None:
        limit = self.cfg.database_degraded_ms if database else self.cfg.service_degraded_ms
        with self._lock:
            self._checks[name] = (check, limit)

    def get_system_health(self) -> SystemHealth:
        with self._lock:
            checks = dict(self._checks)
        services: Dict[str, ServiceHealth] = {}
        for name, (check, limit_ms) in checks.items():
            with timer() as elapsed:
                try:
                    check()
                    error = None
                except Exception as e:
                    error = str(e) or e.__class__.__name__
                took = elapsed()
            if error is not None:
                logger.warning(f"[monitoring] health check {name} failed: {error}")
                services[name] = ServiceHealth(status="critical", response_time_ms=took, error_rate=1.0,
                                               error=error, last_check=self._clock())
            else:
                status = "degraded" if took > limit_ms else "healthy"
                services[name] = ServiceHealth(status=status, response_time_ms=took, last_check=self._clock())

        overall = max((s.status for s in services.values()), key=_SEVERITY.__getitem__, default="healthy")
        return SystemHealth(status=overall, timestamp=self._clock(), services=services, alerts=self.recent_alerts())

    def get_monitoring_stats(self) -> Dict[str, Any]:
        with self._lock:
            keys = sorted(self._windows)
            per_key = [
                {
                    "modelVersion": mv,
                    "algorithm": alg,
                    "samples": len(self._windows[(mv, alg)]),
                    "hasBaseline": (mv, alg) in self._baselines,
                }
                for mv, alg in keys
            ]
            rules = len(self._rules)
            baselines = len(self._baselines)
        recent = self.recent_alerts()
        return {
            "trackedKeys": len(per_key),
            "totalSamples": sum(k["samples"] for k in per_key),
            "baselines": baselines,
            "alertRules": rules,
            "alertsLast24h": len(recent),
            "recentAlerts": [a.model_dump(by_alias=True, mode="json") for a in recent[-10:]],
            "keys": per_key,
        }
