# =============================================
# File: cuppa/services/registry.py
# Purpose: Deployed model descriptors + A/B traffic assignment (metadata only)
# =============================================

from __future__ import annotations
import hashlib
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from loguru import logger

from cuppa.config import ALGORITHMS, EngineConfig, RegistryConfig
from cuppa.errors import ConfigurationError, NotFoundError
from cuppa.schemas import (
    ABTest,
    ABVariant,
    Assignment,
    DeploymentResult,
    DeployRequest,
    ModelDescriptor,
    VariantMetrics,
)
from cuppa.utils.events import EventBus
from cuppa.utils.timing import utcnow

_SHARE_TOLERANCE = 1e-6


def bucket(user_id: str, salt: str) -> float:
    """Stable position of a user in [0, 100) for a given salt."""
    digest = hashlib.sha256(f"{salt}:{user_id}".encode("utf-8")).hexdigest()
    return (int(digest[:8], 16) % 10000) / 100.0


class ModelRegistry:
    """
    Answers "which model version / algorithm / config serves this user". Never runs a model.
    All mutations happen under one lock, so no caller observes two active descriptors for a name.
    """
    def __init__(
        self,
        bus: Optional[EventBus] = None,
        config: Optional[RegistryConfig] = None,
        default_model_config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.bus = bus or EventBus()
        self.cfg = config or RegistryConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._models: Dict[str, ModelDescriptor] = {}
        self._tests: Dict[str, ABTest] = {}
        self._requests: Dict[str, int] = {}
        self._deploy_listeners: List[Callable[[DeploymentResult], None]] = []
        if default_model_config is None:
            default_model_config = {"weights": dict(EngineConfig().hybrid_weights)}
        self.deploy_model(DeployRequest(
            name=self.cfg.primary_model,
            version=self.cfg.default_version,
            algorithm=self.cfg.default_algorithm,
            config=default_model_config,
            replace_current_deployment=True,
        ))

    # ---------- deployments ----------

    def _active_for(self, name: str) -> Optional[ModelDescriptor]:
        for d in self._models.values():
            if d.name == name and d.is_active:
                return d
        return None

    def deploy_model(self, request: DeployRequest) -> DeploymentResult:
        errors: List[str] = []
        for field in ("name", "version", "algorithm"):
            if not getattr(request, field):
                errors.append(f"{field} is required")
        if request.algorithm and request.algorithm not in ALGORITHMS:
            errors.append(f"Unknown algorithm: {request.algorithm}")
        if errors:
            raise ConfigurationError(errors)

        model_id = f"{request.name}:{request.version}"
        superseded: Optional[str] = None
        with self._lock:
            current = self._active_for(request.name)
            if request.replace_current_deployment:
                activate = True
                if current is not None and current.model_id != model_id:
                    self._models[current.model_id] = current.model_copy(update={"is_active": False})
                    superseded = current.model_id
            else:
                activate = current is None or current.model_id == model_id
            self._models[model_id] = ModelDescriptor(
                model_id=model_id,
                name=request.name,
                version=request.version,
                algorithm=request.algorithm,
                config=dict(request.config),
                deployed_at=self._clock(),
                is_active=activate,
            )

        if activate:
            message = f"Model {model_id} deployed and active"
            if superseded:
                message += f" (replaced {superseded})"
        else:
            message = f"Model {model_id} registered inactive; {current.model_id} remains active"
        result = DeploymentResult(
            success=True, model_id=model_id, message=message, is_active=activate, superseded=superseded
        )
        for listener in list(self._deploy_listeners):
            try:
                listener(result)
            except Exception as e:
                logger.warning(f"[registry] deploy listener failed for {model_id}: {e!r}")
        self.bus.emit("model.deployed", {"modelId": model_id, "isActive": activate, "superseded": superseded})
        logger.info(f"[registry] {message}")
        return result

    def on_deploy(self, listener: Callable[[DeploymentResult], None]) -> None:
        """Run `listener` synchronously after every deployment, before `deploy_model` returns."""
        self._deploy_listeners.append(listener)

    def get_model(self, model_id: str) -> ModelDescriptor:
        with self._lock:
            d = self._models.get(model_id)
        if d is None:
            raise NotFoundError("model", model_id)
        return d

    def list_models(self) -> List[ModelDescriptor]:
        with self._lock:
            return sorted(self._models.values(), key=lambda d: (d.name, d.deployed_at))

    # ---------- A/B tests ----------

    def create_ab_test(
        self,
        name: str,
        variants: Sequence[Union[ABVariant, Dict[str, Any]]],
        target_percentage: float = 100.0,
        duration_days: Optional[float] = None,
    ) -> ABTest:
        parsed = [v if isinstance(v, ABVariant) else ABVariant.model_validate(v) for v in variants]
        errors: List[str] = []
        if not name:
            errors.append("name is required")
        if not parsed:
            errors.append("at least one variant is required")
        total = sum(v.traffic_share for v in parsed)
        if parsed and abs(total - 1.0) > _SHARE_TOLERANCE:
            errors.append(f"variant traffic shares must sum to 1.0 (got {total:.4f})")
        for v in parsed:
            if v.traffic_share <= 0:
                errors.append(f"traffic share for {v.model_version} must be positive")
            if v.algorithm not in ALGORITHMS:
                errors.append(f"Unknown algorithm: {v.algorithm}")
        if not 0 < target_percentage <= 100:
            errors.append("targetPercentage must be in (0, 100]")
        with self._lock:
            for v in parsed:
                if v.model_version not in self._models:
                    errors.append(f"model version {v.model_version} not found")
            if errors:
                raise ConfigurationError(errors)

            now = self._clock()
            test = ABTest(
                test_id=f"ab_{uuid.uuid4().hex[:12]}",
                name=name,
                variants=parsed,
                target_percentage=target_percentage,
                started_at=now,
                ends_at=now + timedelta(days=duration_days) if duration_days else None,
                metrics={v.model_version: VariantMetrics() for v in parsed},
            )
            self._tests[test.test_id] = test
        self.bus.emit("abtest.started", {"testId": test.test_id, "name": name})
        logger.info(f"[registry] A/B test {test.test_id} started with {len(parsed)} variants")
        return test.model_copy(deep=True)

    def get_ab_test(self, test_id: str) -> ABTest:
        with self._lock:
            test = self._tests.get(test_id)
            if test is None:
                raise NotFoundError("A/B test", test_id)
            return test.model_copy(deep=True)

    def list_ab_tests(self) -> List[ABTest]:
        with self._lock:
            return [t.model_copy(deep=True) for t in self._tests.values()]

    def stop_ab_test(self, test_id: str) -> ABTest:
        with self._lock:
            test = self._tests.get(test_id)
            if test is None:
                raise NotFoundError("A/B test", test_id)
            test.status = "stopped"
        logger.info(f"[registry] A/B test {test_id} stopped")
        return self.get_ab_test(test_id)

    def _running_tests(self) -> List[ABTest]:
        now = self._clock()
        running = []
        for t in self._tests.values():
            if t.status != "running":
                continue
            if t.ends_at is not None and now >= t.ends_at:
                t.status = "completed"
                continue
            running.append(t)
        return sorted(running, key=lambda t: t.started_at)

    @staticmethod
    def _pick_variant(user_id: str, test: ABTest) -> ABVariant:
        point = bucket(user_id, test.test_id)
        edge = 0.0
        for v in test.variants:
            edge += v.traffic_share * 100.0
            if point < edge:
                return v
        return test.variants[-1]

    # ---------- serving ----------

    def resolve(self, user_id: str, algorithm: Optional[str] = None) -> Assignment:
        """Running A/B tests take precedence over the caller's algorithm choice."""
        with self._lock:
            for test in self._running_tests():
                if bucket(user_id, f"{test.test_id}:target") < test.target_percentage:
                    v = self._pick_variant(user_id, test)
                    desc = self._models.get(v.model_version)
                    return Assignment(
                        model_version=v.model_version,
                        algorithm=v.algorithm,
                        config=dict(desc.config) if desc else {},
                        ab_test_id=test.test_id,
                    )
            active = self._active_for(self.cfg.primary_model)
            if active is None:
                return Assignment(
                    model_version=f"{self.cfg.primary_model}:{self.cfg.default_version}",
                    algorithm=algorithm or self.cfg.default_algorithm,
                )
            return Assignment(
                model_version=active.model_id,
                algorithm=algorithm or active.algorithm,
                config=dict(active.config),
            )

    def record_request(self, assignment: Assignment) -> None:
        with self._lock:
            self._requests[assignment.model_version] = self._requests.get(assignment.model_version, 0) + 1
            test = self._tests.get(assignment.ab_test_id) if assignment.ab_test_id else None
            if test is not None:
                test.metrics.setdefault(assignment.model_version, VariantMetrics()).requests += 1

    def record_variant_outcome(
        self, test_id: str, model_version: str, clicked: bool = False, converted: bool = False
    ) -> None:
        with self._lock:
            test = self._tests.get(test_id)
            if test is None:
                raise NotFoundError("A/B test", test_id)
            m = test.metrics.setdefault(model_version, VariantMetrics())
            m.clicks += int(clicked)
            m.conversions += int(converted)

    def get_serving_stats(self) -> Dict[str, Any]:
        with self._lock:
            active = [d for d in self._models.values() if d.is_active]
            return {
                "primaryModel": self.cfg.primary_model,
                "activeDescriptors": [d.model_dump(by_alias=True, mode="json") for d in active],
                "modelVersions": len(self._models),
                "requestCounts": dict(self._requests),
                "activeABTests": sum(1 for t in self._tests.values() if t.status == "running"),
            }

    def ping(self) -> int:
        with self._lock:
            return len(self._models)
