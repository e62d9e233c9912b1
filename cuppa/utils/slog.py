# =============================================
# File: cuppa/utils/slog.py
# Purpose: JSON request/event lines on the "cuppa" stdlib logger
# =============================================
from __future__ import annotations
import contextvars
import hashlib
import json
import logging
import os
import uuid
from typing import Any, Dict, Optional

_logger = logging.getLogger("cuppa")
if not _logger.handlers:
    _logger.setLevel(getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _logger.addHandler(_handler)
    _logger.propagate = True  # pytest caplog

# Set by the HTTP middleware; events logged while serving a request inherit it
_request_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("cuppa_request_id", default=None)


def new_request_id() -> str:
    return uuid.uuid4().hex


def bind_request_id(request_id: str) -> contextvars.Token:
    return _request_id.set(request_id)


def unbind_request_id(token: contextvars.Token) -> None:
    _request_id.reset(token)


def current_request_id() -> Optional[str]:
    return _request_id.get()


def uhash(user_id: str) -> str:
    """Stable short digest of a user id, so log lines don't carry raw identifiers."""
    return hashlib.sha256((user_id or "").encode("utf-8")).hexdigest()[:12]


def _emit(payload: Dict[str, Any]) -> None:
    _logger.info(json.dumps(payload, ensure_ascii=False, default=str))


def log_event(event: str, **fields: Any) -> None:
    rec: Dict[str, Any] = {"event": event}
    rid = _request_id.get()
    if rid and "request_id" not in fields:
        rec["request_id"] = rid
    rec.update(fields)
    _emit(rec)


def finalize_request_log(
    request_id: str,
    method: str,
    path: str,
    status: int,
    latency_ms: int,
    client_ip: str | None,
    ctx: Dict[str, Any] | None = None,
) -> None:
    payload: Dict[str, Any] = {
        "event": "request.completed",
        "request_id": request_id,
        "method": method,
        "path": path,
        "status": status,
        "latency_ms": latency_ms,
        "client_ip": client_ip or "",
    }
    if ctx:
        payload.update(ctx)
    _emit(payload)
