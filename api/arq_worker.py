"""
Dialectic Core — arq Worker Entry Point

CMD target for the worker container. `drain_jobs` runs JobWorkers on a
thread pool until the job table has nothing left to claim; a periodic
`reap_stuck_jobs` fails jobs whose worker died mid-flight.

Usage:
    python -m api.arq_worker

    # Or via arq CLI:
    arq api.arq_worker.WorkerSettings
"""

from __future__ import annotations

import asyncio
import logging
import os
from concurrent.futures import ThreadPoolExecutor

from arq import cron, run_worker
from arq.connections import RedisSettings

from dialectic.config import get_config_value, load_config
from dialectic.logging import configure_logging
from scheduler.runtime import DialecticRuntime
from scheduler.worker import JobWorker

logger = logging.getLogger("dialectic.arq_worker")

MAX_WORKERS = int(os.environ.get("DIALECTIC_MAX_WORKERS", "4"))


async def drain_jobs(ctx: dict, *, job_ids: list[str] | None = None) -> int:
    """Drain the queue with up to MAX_WORKERS concurrent JobWorkers."""
    loop = asyncio.get_running_loop()
    runtime: DialecticRuntime = ctx["runtime"]
    pool: ThreadPoolExecutor = ctx["pool"]
    job_id = ctx.get("job_id", "drain")

    def _run(slot: int) -> int:
        return JobWorker(runtime, worker_id=f"arq-{job_id}-{slot}").run_until_idle()

    handled = await asyncio.gather(*(
        loop.run_in_executor(pool, _run, slot) for slot in range(MAX_WORKERS)
    ))
    total = sum(handled)
    logger.info("drain_jobs handled %d job(s) (roots: %s)", total, job_ids or [])
    return total


async def reap_stuck_jobs(ctx: dict) -> int:
    runtime: DialecticRuntime = ctx["runtime"]
    threshold = float(get_config_value("worker.stuck_after_seconds", runtime.config, 900))
    reaped = JobWorker(runtime, worker_id="arq-reaper").reap_stuck(threshold)
    return len(reaped)


async def startup(ctx: dict):
    config = load_config()
    configure_logging(level=get_config_value("logging.level", config, "INFO"))
    ctx["runtime"] = DialecticRuntime.from_config(config)
    ctx["pool"] = ThreadPoolExecutor(max_workers=MAX_WORKERS, thread_name_prefix="dialectic_worker")
    logger.info("arq worker started: max_workers=%d", MAX_WORKERS)


async def shutdown(ctx: dict):
    pool = ctx.get("pool")
    if pool:
        pool.shutdown(wait=True)
    runtime = ctx.get("runtime")
    if runtime:
        runtime.close()
    logger.info("arq worker shutdown complete")


class WorkerSettings:
    """arq worker configuration."""
    functions = [drain_jobs]
    cron_jobs = [cron(reap_stuck_jobs, minute=set(range(0, 60, 5)))]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = int(os.environ.get("DIALECTIC_MAX_DRAINS", "2"))
    job_timeout = int(os.environ.get("DIALECTIC_JOB_TIMEOUT", "1800"))
    redis_settings = RedisSettings.from_dsn(os.environ.get("REDIS_URL", "redis://localhost:6379"))


if __name__ == "__main__":
    run_worker(WorkerSettings)
