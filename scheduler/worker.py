"""
Dialectic Core — Job Worker

Stateless poller. Each pass claims one job by compare-and-swap (pending
jobs first, then root PLANs waiting to plan their next step), hands it to
the planner, executor or renderer by job type, and turns anything that
escapes the handler into a failed job. A worker never dies on a job.

Run as many as you like against the same database.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
import uuid
from typing import Any

from dialectic.errors import error_details
from dialectic.logging import JobLogger
from scheduler.runtime import DialecticRuntime
from scheduler.types import Job, JobStatus, JobType

logger = logging.getLogger("dialectic.worker")


class JobWorker:

    def __init__(self, runtime: DialecticRuntime, worker_id: str | None = None,
                 job_types: list[JobType] | None = None):
        self.rt = runtime
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:6]}"
        self.job_types = job_types
        self._stop = threading.Event()

    def run_once(self) -> Job | None:
        """Claim and handle one job. Returns the job, or None when idle."""
        job = self.rt.store.claim_next(self.worker_id, self.job_types)
        if job is None:
            return None
        JobLogger.for_job(job).on_job_claimed(self.worker_id)
        self.handle(job)
        return job

    def handle(self, job: Job) -> None:
        try:
            if job.job_type == JobType.PLAN:
                self.rt.planner.process(job)
            elif job.job_type == JobType.EXECUTE:
                self.rt.executor.process(job)
            elif job.job_type == JobType.RENDER:
                self.rt.renderer.process(job)
        except Exception as e:
            logger.exception("Job %s (%s) raised", job.id, job.job_type.value)
            self._fail_escaped(job, e)

    def _fail_escaped(self, job: Job, exc: Exception) -> None:
        current = self.rt.store.get_job(job.id)
        if current is None or current.status != JobStatus.PROCESSING:
            return
        details = error_details(exc)
        JobLogger.for_job(job).on_job_failed(details["code"], details["message"])
        self.rt.store.set_status(job.id, JobStatus.FAILED, JobStatus.PROCESSING,
                                 error_details=details)

    def run_until_idle(self, max_jobs: int = 10_000) -> int:
        """Drain the queue. Returns the number of jobs handled."""
        handled = 0
        while handled < max_jobs and self.run_once() is not None:
            handled += 1
        return handled

    def run_forever(self, poll_interval: float = 1.0) -> None:
        logger.info("Worker %s started (poll=%.1fs)", self.worker_id, poll_interval)
        while not self._stop.is_set():
            if self.run_once() is None:
                self._stop.wait(poll_interval)
        logger.info("Worker %s stopped", self.worker_id)

    def stop(self) -> None:
        self._stop.set()

    def reap_stuck(self, max_processing_seconds: float = 900) -> list[str]:
        """Fail jobs stuck in processing (their worker died). Returns their ids."""
        reaped = []
        for job in self.rt.store.find_stuck_jobs(max_processing_seconds):
            if job.job_type == JobType.PLAN and self.rt.store.list_children(job.id):
                continue
            if self.rt.store.set_status(job.id, JobStatus.FAILED, JobStatus.PROCESSING,
                                        error_details={
                                            "code": "WORKER_LOST",
                                            "message": f"No progress for {max_processing_seconds}s",
                                        }):
                reaped.append(job.id)
        if reaped:
            logger.warning("Reaped %d stuck job(s)", len(reaped))
        return reaped


def drain(runtime: DialecticRuntime, max_jobs: int = 10_000) -> dict[str, Any]:
    """Run one worker until the queue is empty. Used by the inline backend."""
    t0 = time.time()
    handled = JobWorker(runtime, worker_id="inline").run_until_idle(max_jobs)
    return {"handled": handled, "elapsed_s": round(time.time() - t0, 3)}
