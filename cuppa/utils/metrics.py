# =============================================
# File: cuppa/utils/metrics.py
# Purpose: Process-wide service counters for GET /metrics
# =============================================
from __future__ import annotations
from typing import Dict, Any, List
import bisect
import threading
import time

_lock = threading.Lock()
_started_at = time.time()

# Upper bounds (ms) for serving latency; one extra overflow slot at the end
LATENCY_BOUNDS_MS: List[int] = [10, 25, 50, 100, 250, 500, 1000, 2500]

_counters: Dict[str, int] = {}
_by_algorithm: Dict[str, int] = {}
_latency_hist: List[int] = [0] * (len(LATENCY_BOUNDS_MS) + 1)

# "METHOD /route" -> bounded latency ring and status tallies
_ROUTE_SAMPLES = 500
_route_latency: Dict[str, List[float]] = {}
_route_status: Dict[str, Dict[str, int]] = {}


def _inc(name: str, by: int = 1) -> None:
    _counters[name] = _counters.get(name, 0) + by


def _percentile(values: List[float], q: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    return ordered[min(len(ordered) - 1, int(round(q * (len(ordered) - 1))))]


def record_recommendation(latency_ms: float, algorithm: str | None, cold_start: bool) -> None:
    with _lock:
        _inc("recommendations_total")
        if cold_start:
            _inc("cold_starts_total")
        if algorithm:
            _by_algorithm[algorithm] = _by_algorithm.get(algorithm, 0) + 1
        _latency_hist[bisect.bisect_left(LATENCY_BOUNDS_MS, latency_ms)] += 1


def record_ingestion(accepted: int, rejected: int = 0, duplicates: int = 0) -> None:
    with _lock:
        _inc("events_accepted_total", accepted)
        _inc("events_rejected_total", rejected)
        _inc("events_duplicate_total", duplicates)


def record_rate_limit_hit() -> None:
    with _lock:
        _inc("rate_limit_hits_total")


def record_endpoint(method: str, route: str, status: int, latency_ms: float) -> None:
    key = f"{method.upper()} {route}"
    with _lock:
        _inc("http_requests_total")
        ring = _route_latency.setdefault(key, [])
        ring.append(float(latency_ms))
        if len(ring) > _ROUTE_SAMPLES:
            del ring[0]
        tally = _route_status.setdefault(key, {})
        klass = f"{status // 100}xx"
        tally[klass] = tally.get(klass, 0) + 1


def snapshot() -> Dict[str, Any]:
    with _lock:
        routes = {
            key: {
                "samples": len(ring),
                "p50_ms": _percentile(ring, 0.50),
                "p95_ms": _percentile(ring, 0.95),
                "status": dict(_route_status.get(key, {})),
            }
            for key, ring in _route_latency.items()
        }
        return {
            "uptime_seconds": round(time.time() - _started_at, 3),
            "counters": dict(_counters),
            "algorithm_usage": dict(_by_algorithm),
            "serving_latency_ms": {
                "le": [*LATENCY_BOUNDS_MS, "+Inf"],
                "counts": list(_latency_hist),
            },
            "routes": routes,
        }


def reset() -> None:
    with _lock:
        _counters.clear()
        _by_algorithm.clear()
        _latency_hist[:] = [0] * len(_latency_hist)
        _route_latency.clear()
        _route_status.clear()
