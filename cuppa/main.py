# =============================================
# File: cuppa/main.py
# Purpose: FastAPI app: lifespan, request logging middleware, error mapping, routers
# =============================================
from __future__ import annotations
import math
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from cuppa.errors import ConfigurationError, DependencyFailure, EventValidationError, NotFoundError
from cuppa.routers import features, ingest, metrics, models, monitoring, recommendations
from cuppa.services.container import get_container, set_container
from cuppa.utils import slog
from cuppa.utils.logging import configure_logging
from cuppa.utils.metrics import record_endpoint, record_rate_limit_hit
from cuppa.utils.ratelimit import RateLimitExceeded


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    container = get_container()
    if container.settings.maintenance_enabled:
        container.scheduler.start()
    logger.info("[app] cuppa started")
    try:
        yield
    finally:
        container.close()
        set_container(None)
        logger.info("[app] cuppa stopped")


app = FastAPI(title="Cuppa Personalization API", lifespan=lifespan)


@app.middleware("http")
async def _logging_middleware(request: Request, call_next):
    start = time.perf_counter()
    req_id = request.headers.get("X-Request-ID") or slog.new_request_id()
    token = slog.bind_request_id(req_id)
    client_ip = request.client.host if request.client else None
    try:
        response = await call_next(request)
    except Exception as e:
        latency_ms = int((time.perf_counter() - start) * 1000)
        slog.log_event(
            "request.error",
            method=request.method,
            path=str(request.url.path),
            latency_ms=latency_ms,
            client_ip=client_ip,
            error=str(e),
            **(getattr(request.state, "log_context", None) or {}),
        )
        raise
    finally:
        slog.unbind_request_id(token)

    latency_ms = int((time.perf_counter() - start) * 1000)
    ctx = dict(getattr(request.state, "log_context", None) or {})
    ctx.setdefault("rate_limited", response.status_code == 429)
    slog.finalize_request_log(
        request_id=req_id,
        method=request.method,
        path=str(request.url.path),
        status=response.status_code,
        latency_ms=latency_ms,
        client_ip=client_ip,
        ctx=ctx,
    )
    # label by route template so /features/{user_id} is one series
    route = request.scope.get("route")
    record_endpoint(request.method, getattr(route, "path", request.url.path), response.status_code, latency_ms)
    response.headers["X-Request-ID"] = req_id
    return response


# ---------- error mapping ----------

@app.exception_handler(ConfigurationError)
async def _configuration_error(request: Request, exc: ConfigurationError):
    return JSONResponse(status_code=422, content={"detail": str(exc), "errors": exc.errors})


@app.exception_handler(EventValidationError)
async def _validation_error(request: Request, exc: EventValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc), "errors": exc.errors})


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc), "kind": exc.kind, "key": exc.key})


@app.exception_handler(DependencyFailure)
async def _dependency_failure(request: Request, exc: DependencyFailure):
    logger.warning(f"[app] {request.method} {request.url.path} -> 503: {exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc), "dependency": exc.dependency})


@app.exception_handler(RateLimitExceeded)
async def _rate_limited(request: Request, exc: RateLimitExceeded):
    record_rate_limit_hit()
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Please try again later."},
        headers={"Retry-After": str(max(1, math.ceil(exc.retry_after)))},
    )


app.include_router(ingest.router)
app.include_router(recommendations.router)
app.include_router(features.router)
app.include_router(models.router)
app.include_router(monitoring.router)
app.include_router(metrics.router)
