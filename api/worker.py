"""
Dialectic Core — Worker Backends

Jobs live in the database; a backend only decides who drains them and
when. Dispatch calls `notify(job_ids)` after it creates a root PLAN.

  - InlineBackend:     drains on the calling thread (dev/testing)
  - ThreadPoolBackend: a bounded pool of JobWorkers in-process
  - ArqBackend:        enqueues a `drain_jobs` task on Redis; the arq
                       worker (api/arq_worker.py) runs it

The active backend is selected by DIALECTIC_WORKER_MODE:
  inline    → InlineBackend
  thread    → ThreadPoolBackend
  arq       → ArqBackend (default if arq+redis available)
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from scheduler.runtime import DialecticRuntime
from scheduler.worker import JobWorker, drain

logger = logging.getLogger("dialectic.api.worker")


# ═══════════════════════════════════════════════════════════════════
# Drain Tracking
# ═══════════════════════════════════════════════════════════════════

@dataclass
class DrainStats:
    notified: int = 0
    drains: int = 0
    jobs_handled: int = 0
    failures: int = 0
    last_drain_at: float = 0.0


class DrainTracker:
    """Thread-safe counters for /v1/stats."""

    def __init__(self):
        self._stats = DrainStats()
        self._lock = threading.Lock()

    def notified(self, n: int) -> None:
        with self._lock:
            self._stats.notified += n

    def drained(self, handled: int) -> None:
        with self._lock:
            self._stats.drains += 1
            self._stats.jobs_handled += handled
            self._stats.last_drain_at = time.time()

    def failed(self) -> None:
        with self._lock:
            self._stats.failures += 1

    @property
    def stats(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._stats.__dict__)


# ═══════════════════════════════════════════════════════════════════
# Worker Backend Interface
# ═══════════════════════════════════════════════════════════════════

class WorkerBackend:
    mode = "abstract"

    def __init__(self):
        self.tracker = DrainTracker()

    def notify(self, job_ids: list[str]) -> None:
        """New root jobs exist. Make sure someone drains the queue."""
        raise NotImplementedError

    def shutdown(self):
        pass


class InlineBackend(WorkerBackend):
    """Synchronous. notify() returns once the queue is empty."""
    mode = "inline"

    def __init__(self, runtime: DialecticRuntime):
        super().__init__()
        self.runtime = runtime

    def notify(self, job_ids):
        self.tracker.notified(len(job_ids))
        result = drain(self.runtime)
        self.tracker.drained(result["handled"])
        logger.info("Inline drain handled %d job(s) in %.3fs",
                    result["handled"], result["elapsed_s"])


class ThreadPoolBackend(WorkerBackend):
    """
    Each notify() starts up to `max_workers` JobWorkers that drain the
    queue concurrently. Claims are compare-and-swap, so overlapping
    drains are safe.
    """
    mode = "thread"

    def __init__(self, runtime: DialecticRuntime, max_workers: int = 4):
        super().__init__()
        self.runtime = runtime
        self.max_workers = max_workers
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dialectic_worker")
        self._futures: list[Future] = []
        self._lock = threading.Lock()
        logger.info("ThreadPoolBackend started: max_workers=%d", max_workers)

    def notify(self, job_ids):
        self.tracker.notified(len(job_ids))
        with self._lock:
            self._futures = [f for f in self._futures if not f.done()]
            for i in range(max(0, self.max_workers - len(self._futures))):
                self._futures.append(self._pool.submit(self._drain, i))

    def _drain(self, slot: int) -> int:
        worker = JobWorker(self.runtime, worker_id=f"thread-{slot}-{threading.get_ident()}")
        try:
            handled = worker.run_until_idle()
        except Exception:
            self.tracker.failed()
            logger.exception("Drain on %s failed", worker.worker_id)
            raise
        self.tracker.drained(handled)
        return handled

    def wait(self, timeout: float | None = None) -> None:
        """Block until every running drain finishes (tests, shutdown)."""
        with self._lock:
            futures = list(self._futures)
        for f in futures:
            f.result(timeout=timeout)

    def shutdown(self):
        logger.info("Shutting down ThreadPoolBackend...")
        self._pool.shutdown(wait=True, cancel_futures=False)


class ArqBackend(WorkerBackend):
    """
    Enqueues `drain_jobs` on Redis. Requires: pip install arq redis
    """
    mode = "arq"

    def __init__(self, redis_url: str = "redis://localhost:6379"):
        super().__init__()
        self.redis_url = redis_url
        self._arq_pool = None
        self._loop = None

    def _ensure_pool(self):
        if self._arq_pool is not None:
            return
        import asyncio
        from arq import create_pool
        from arq.connections import RedisSettings

        self._loop = asyncio.new_event_loop()
        try:
            self._arq_pool = self._loop.run_until_complete(
                create_pool(RedisSettings.from_dsn(self.redis_url)))
        except Exception as e:
            raise RuntimeError(f"Cannot connect to Redis at {self.redis_url}: {e}") from e

    def notify(self, job_ids):
        self._ensure_pool()
        self.tracker.notified(len(job_ids))
        self._loop.run_until_complete(self._arq_pool.enqueue_job("drain_jobs", job_ids=list(job_ids)))
        logger.info("Enqueued drain_jobs for %d root job(s)", len(job_ids))

    def shutdown(self):
        if self._arq_pool is not None:
            self._loop.run_until_complete(self._arq_pool.close())
            self._loop.close()


# ═══════════════════════════════════════════════════════════════════
# Backend Factory
# ═══════════════════════════════════════════════════════════════════

def create_backend(
    runtime: DialecticRuntime,
    mode: str | None = None,
    max_workers: int = 4,
    redis_url: str | None = None,
) -> WorkerBackend:
    """
    Mode comes from the argument or DIALECTIC_WORKER_MODE.
    "auto" (the default) picks arq when it is installed, else threads.
    """
    mode = (mode or os.environ.get("DIALECTIC_WORKER_MODE", "auto")).lower()
    redis_url = redis_url or os.environ.get("REDIS_URL", "redis://localhost:6379")

    if mode == "inline":
        logger.info("Worker backend: InlineBackend (synchronous)")
        return InlineBackend(runtime)
    if mode == "thread":
        logger.info("Worker backend: ThreadPoolBackend (max_workers=%d)", max_workers)
        return ThreadPoolBackend(runtime, max_workers=max_workers)
    if mode == "arq":
        logger.info("Worker backend: ArqBackend (redis=%s)", redis_url)
        return ArqBackend(redis_url=redis_url)

    try:
        import arq  # noqa: F401
        import redis  # noqa: F401
    except ImportError:
        logger.info("Worker backend: ThreadPoolBackend (arq not available)")
        return ThreadPoolBackend(runtime, max_workers=max_workers)
    logger.info("Worker backend: ArqBackend (auto-detected)")
    return ArqBackend(redis_url=redis_url)
