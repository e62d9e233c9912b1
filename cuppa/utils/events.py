# =============================================
# File: cuppa/utils/events.py
# Purpose: Fire-and-forget observer registry; producers never wait on handlers
# =============================================
from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Set

from loguru import logger

Handler = Callable[[Any], None]


class EventBus:
    """
    Topic -> handlers. `emit` hands each delivery to a small thread pool and returns
    immediately. Emitting on a topic nobody listens to is a no-op, and a failing handler
    is logged without reaching the producer.
    """
    def __init__(self, max_workers: int = 2) -> None:
        self._handlers: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()
        self._pending: Set[Future] = set()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cuppa-events")
        self._closed = False

    def subscribe(self, topic: str, handler: Handler) -> None:
        with self._lock:
            self._handlers.setdefault(topic, []).append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        with self._lock:
            hs = self._handlers.get(topic, [])
            if handler in hs:
                hs.remove(handler)

    def emit(self, topic: str, payload: Any = None) -> None:
        with self._lock:
            handlers = list(self._handlers.get(topic, ()))
            if self._closed or not handlers:
                return
            futures = [self._pool.submit(self._deliver, topic, h, payload) for h in handlers]
            self._pending.update(futures)
        # outside the lock: a future that is already done runs its callback inline
        for fut in futures:
            fut.add_done_callback(self._forget)

    def flush(self, timeout: float = 5.0) -> None:
        """Block until deliveries queued so far have run (shutdown and tests)."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def close(self) -> None:
        self.flush()
        with self._lock:
            self._closed = True
        self._pool.shutdown(wait=True)

    def _forget(self, fut: Future) -> None:
        with self._lock:
            self._pending.discard(fut)

    @staticmethod
    def _deliver(topic: str, handler: Handler, payload: Any) -> None:
        try:
            handler(payload)
        except Exception as e:
            logger.warning(f"[events] handler for '{topic}' failed: {e!r}")
