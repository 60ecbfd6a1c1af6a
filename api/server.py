"""
Dialectic Core — API Server

FastAPI application serving:
  POST /v1/dialectic   — {action, payload}; caller from the X-User-Id header
  GET  /v1/stats       — job and worker statistics
  GET  /health         — liveness
  GET  /ready          — readiness (database reachable, catalog seeded)

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080

    # Development (no Redis)
    DIALECTIC_WORKER_MODE=inline uvicorn api.server:app --reload
"""

from __future__ import annotations

import logging
import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.dispatch import DialecticService
from api.models import DispatchRequest
from api.worker import WorkerBackend, create_backend
from dialectic.config import get_config_value, load_config
from scheduler.runtime import DialecticRuntime

logger = logging.getLogger("dialectic.api")


def create_app(
    runtime: DialecticRuntime | None = None,
    backend: WorkerBackend | None = None,
    config: dict[str, Any] | None = None,
) -> FastAPI:
    """
    Build the application. Tests pass their own runtime (in-memory
    database, fake models) and an inline backend.
    """
    app = FastAPI(
        title="Dialectic Core API",
        version="0.1.0",
        description="Multi-model dialectic job orchestration",
    )

    # ── State ────────────────────────────────────────────────

    state: dict[str, Any] = {"runtime": runtime, "backend": backend, "service": None}

    def get_runtime() -> DialecticRuntime:
        if state["runtime"] is None:
            state["runtime"] = DialecticRuntime.from_config(config or load_config())
        return state["runtime"]

    def get_backend() -> WorkerBackend:
        if state["backend"] is None:
            rt = get_runtime()
            state["backend"] = create_backend(
                rt, max_workers=int(get_config_value("worker.max_workers", rt.config, 4)))
        return state["backend"]

    def get_service() -> DialecticService:
        if state["service"] is None:
            backend = get_backend()
            state["service"] = DialecticService(get_runtime(), on_jobs_created=backend.notify)
        return state["service"]

    # ── Lifecycle ─────────────────────────────────────────────

    @app.on_event("shutdown")
    async def shutdown():
        if state["backend"] is not None:
            state["backend"].shutdown()

    # ── Dispatch ──────────────────────────────────────────────

    @app.post("/v1/dialectic")
    def dialectic(body: dict[str, Any], request: Request):
        req = DispatchRequest(action=body.get("action", ""), payload=body.get("payload") or {})
        errors = req.validate()
        if errors:
            return JSONResponse(status_code=400, content={"error": {
                "code": "INVALID_PAYLOAD", "message": "; ".join(errors),
            }})
        user_id = request.headers.get("X-User-Id") or None
        result = get_service().dispatch(req.action, req.payload, user_id)
        return JSONResponse(status_code=result.status, content=result.to_dict())

    # ── Stats ─────────────────────────────────────────────────

    @app.get("/v1/stats")
    def get_stats():
        stats = get_runtime().store.stats()
        stats["worker"] = {"mode": get_backend().mode, **get_backend().tracker.stats}
        return JSONResponse(content=stats)

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={"status": "ok", "timestamp": time.time()})

    @app.get("/ready")
    def ready():
        try:
            rt = get_runtime()
            rt.store.stats()
            checks = {
                "database": rt.db.backend_type,
                "process_templates": len(rt.repo.list_process_templates()),
                "ai_models": len(rt.repo.list_ai_models()),
            }
        except Exception as e:
            logger.warning("Readiness check failed: %s", e)
            return JSONResponse(status_code=503, content={"status": "fail", "error": str(e)[:200]})
        if not checks["process_templates"] or not checks["ai_models"]:
            return JSONResponse(status_code=503, content={"status": "fail", "checks": checks})
        return JSONResponse(content={"status": "ok", "checks": checks})

    return app


app = create_app()
