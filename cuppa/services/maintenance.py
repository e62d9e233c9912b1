# =============================================
# File: cuppa/services/maintenance.py
# Purpose: Background timers (cache sweep, drift checks, metric retention)
# =============================================

from __future__ import annotations
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from loguru import logger


@dataclass
class Job:
    name: str
    interval_seconds: float
    fn: Callable[[], Any]
    runs: int = 0
    failures: int = 0


class MaintenanceScheduler:
    """
    One daemon thread per job, each on its own interval. Jobs are maintenance only:
    a slow or failing run delays nothing on the request path and the timer keeps going.
    """
    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._threads: List[threading.Thread] = []
        self._stop = threading.Event()
        self._lock = threading.Lock()

    def add_job(self, name: str, interval_seconds: float, fn: Callable[[], Any]) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval for {name} must be positive")
        with self._lock:
            self._jobs[name] = Job(name, interval_seconds, fn)

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        with self._lock:
            if self._threads:
                return
            self._stop.clear()
            for job in self._jobs.values():
                t = threading.Thread(target=self._loop, args=(job,), name=f"cuppa-{job.name}", daemon=True)
                self._threads.append(t)
                t.start()
        logger.info(f"[maintenance] started {len(self._threads)} jobs")

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            threads, self._threads = self._threads, []
        if not threads:
            return
        self._stop.set()
        for t in threads:
            t.join(timeout=timeout)
        logger.info("[maintenance] stopped")

    def run_now(self, name: str) -> bool:
        """Run one job synchronously; True when it completed without raising."""
        with self._lock:
            job = self._jobs[name]
        return self._run(job)

    def stats(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                j.name: {"intervalSeconds": j.interval_seconds, "runs": j.runs, "failures": j.failures}
                for j in self._jobs.values()
            }

    def _loop(self, job: Job) -> None:
        # wait() doubles as the sleep and the shutdown signal
        while not self._stop.wait(job.interval_seconds):
            self._run(job)

    @staticmethod
    def _run(job: Job) -> bool:
        try:
            result = job.fn()
        except Exception as e:
            job.failures += 1
            logger.warning(f"[maintenance] job {job.name} failed: {e!r}")
            return False
        job.runs += 1
        logger.debug(f"[maintenance] job {job.name} done: {result!r}")
        return True
