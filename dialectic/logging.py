"""
Dialectic Core — Structured Logging

JSON-lines log output for every job event, with OTel-style fields so a
session can be followed end to end: every event of a session carries
the same trace_id, and every event of a job carries its span_id.

Usage:
    from dialectic.logging import JobLogger, configure_logging

    configure_logging(level="INFO")
    jlog = JobLogger.for_job(job)
    jlog.on_job_claimed(worker_id="w1")
    jlog.on_model_call_end(model_id, output_tokens=812, elapsed=3.2)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter (OTel-compatible)
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = "dialectic"):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("DIALECTIC_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = "dialectic",
) -> logging.Logger:
    """
    Configure the `dialectic` logger tree with JSON output.

    Child loggers (dialectic.store, dialectic.cascade, ...) inherit the
    handler; reconfiguring replaces it rather than stacking another.
    """
    logger = logging.getLogger("dialectic")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith("dialectic."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the dialectic namespace."""
    if name:
        return logging.getLogger(f"dialectic.{name}")
    return logging.getLogger("dialectic")


def trace_id_for(session_id: str) -> str:
    """Stable 32-hex trace id for a session."""
    try:
        return uuid.UUID(session_id).hex
    except (ValueError, AttributeError):
        return uuid.uuid5(uuid.NAMESPACE_URL, str(session_id)).hex


def span_id_for(job_id: str) -> str:
    try:
        return uuid.UUID(job_id).hex[:16]
    except (ValueError, AttributeError):
        return uuid.uuid5(uuid.NAMESPACE_URL, str(job_id)).hex[:16]


# ═══════════════════════════════════════════════════════════════════
# Job Logger
# ═══════════════════════════════════════════════════════════════════

class JobLogger:
    """Structured event emitter bound to one job."""

    def __init__(
        self,
        session_id: str = "",
        job_id: str = "",
        job_type: str = "",
        stage: str = "",
        iteration: int | None = None,
    ):
        self.session_id = session_id
        self.job_id = job_id
        self.job_type = job_type
        self.stage = stage
        self.iteration = iteration
        self.trace_id = trace_id_for(session_id) if session_id else uuid.uuid4().hex
        self.span_id = span_id_for(job_id) if job_id else ""
        self._logger = get_logger("jobs")

    @classmethod
    def for_job(cls, job) -> JobLogger:
        return cls(
            session_id=job.session_id,
            job_id=job.id,
            job_type=job.job_type.value,
            stage=job.stage_slug,
            iteration=job.iteration_number,
        )

    def _base_fields(self) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "trace_id": self.trace_id,
            "session_id": self.session_id,
        }
        if self.job_id:
            fields["span_id"] = self.span_id
            fields["job_id"] = self.job_id
            fields["job_type"] = self.job_type
        if self.stage:
            fields["stage"] = self.stage
        if self.iteration is not None:
            fields["iteration"] = self.iteration
        return fields

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = {**self._base_fields(), "action": action, **fields}
        self._logger.handle(record)

    # ── Scheduling ──────────────────────────────────────────────

    def on_job_claimed(self, worker_id: str) -> None:
        self._emit(logging.INFO, "job_claimed", worker_id=worker_id)

    def on_status_change(self, old: str, new: str) -> None:
        self._emit(logging.INFO, "status_change", old_status=old, new_status=new)

    def on_cascade_decision(self, parent_id: str, new_status: str,
                            children: int, failed: int) -> None:
        self._emit(
            logging.INFO, "cascade_decision",
            parent_job_id=parent_id,
            new_status=new_status,
            children=children,
            failed_children=failed,
        )

    def on_children_planned(self, step_key: str, child_ids: list[str]) -> None:
        self._emit(logging.INFO, "children_planned",
                   step_key=step_key, child_count=len(child_ids))

    def on_job_failed(self, code: str, message: str) -> None:
        self._emit(logging.WARNING, "job_failed", error_code=code, error=message[:500])

    # ── Execution ───────────────────────────────────────────────

    def on_prompt_resolved(self, tier: str, prompt_id: str | None,
                           overlay_id: str | None = None) -> None:
        self._emit(logging.INFO, "prompt_resolved",
                   prompt_tier=tier, prompt_id=prompt_id, overlay_id=overlay_id)

    def on_context_compressed(self, strategy: str, candidates: int,
                              selected: int, budget_tokens: int,
                              used_tokens: int) -> None:
        self._emit(
            logging.INFO, "context_compressed",
            strategy=strategy,
            candidates=candidates,
            selected=selected,
            budget_tokens=budget_tokens,
            used_tokens=used_tokens,
        )

    def on_model_call_start(self, model_id: str, prompt_chars: int) -> None:
        self._emit(logging.DEBUG, "model_call_start",
                   model_id=model_id, prompt_chars=prompt_chars)

    def on_model_call_end(self, model_id: str, output_tokens: int | None,
                          elapsed: float, finish_reason: str | None = None) -> None:
        self._emit(
            logging.INFO, "model_call_end",
            model_id=model_id,
            output_tokens=output_tokens,
            latency_ms=round(elapsed * 1000, 1),
            finish_reason=finish_reason,
        )

    def on_validation_failed(self, output_type: str, reason: str,
                             raw_path: str | None) -> None:
        self._emit(
            logging.WARNING, "validation_failed",
            output_type=output_type,
            reason=reason[:500],
            raw_response_path=raw_path,
        )

    def on_contribution_saved(self, contribution_id: str, path: str,
                              size_bytes: int) -> None:
        self._emit(
            logging.INFO, "contribution_saved",
            contribution_id=contribution_id,
            storage_path=path,
            size_bytes=size_bytes,
        )

    def on_continuation_queued(self, contribution_id: str, continuation_job_id: str,
                               continuation_count: int) -> None:
        self._emit(
            logging.INFO, "continuation_queued",
            contribution_id=contribution_id,
            continuation_job_id=continuation_job_id,
            continuation_count=continuation_count,
        )

    def on_render_complete(self, contribution_id: str, path: str) -> None:
        self._emit(logging.INFO, "render_complete",
                   contribution_id=contribution_id, storage_path=path)
