"""
Dialectic Core — Planner

Handles PLAN jobs a worker has claimed (status processing).

Root PLAN (one per stage run) walks the stage recipe one step at a time:
  - step left  → create the step's children, move to waiting_for_children
                 (same transaction), then let the cascade evaluate, which
                 covers a step that produced no children
  - no step left → completed; the stage manager hears about it through
                 the cascade's root listener

When the children settle the cascade moves the root to pending_next_step,
a worker re-claims it, and it comes back here with step_index advanced.

Nested PLAN (a recipe step of job_type PLAN) fans out its single inline
step once. pending_next_step is where it stops.
"""

from __future__ import annotations

import logging
from typing import Any

from dialectic.errors import ValidationError
from dialectic.logging import JobLogger
from scheduler.cascade import CompletionCascade
from scheduler.repository import ProjectRepository
from scheduler.stages import StageManager
from scheduler.store import JobStore
from scheduler.types import (
    ExecutePayload,
    Granularity,
    Job,
    JobStatus,
    JobType,
    PlanPayload,
    RecipeStep,
)

logger = logging.getLogger("dialectic.planner")


class Planner:

    def __init__(
        self,
        store: JobStore,
        repo: ProjectRepository,
        cascade: CompletionCascade,
        stages: StageManager,
    ):
        self.store = store
        self.repo = repo
        self.cascade = cascade
        self.stages = stages

    def process(self, job: Job) -> None:
        if job.job_type != JobType.PLAN or job.status != JobStatus.PROCESSING:
            raise ValidationError(f"Planner cannot process {job.job_type.value} job in {job.status.value}")
        payload: PlanPayload = job.typed_payload()
        jlog = JobLogger.for_job(job)

        if not job.is_root:
            step = RecipeStep.from_dict(payload.step or {})
            self._fan_out(job, payload, step, jlog)
            return

        stage = self.repo.get_stage_by_slug(payload.stage_slug)
        if stage is None:
            raise ValidationError(f"Stage '{payload.stage_slug}' not found", code="STAGE_NOT_FOUND")

        if payload.step_index == 0:
            self.stages.mark_stage_running(job.session_id, stage.slug)

        if payload.step_index >= len(stage.recipe):
            self.store.set_status(job.id, JobStatus.COMPLETED, JobStatus.PROCESSING)
            return

        step = stage.recipe[payload.step_index]
        self._fan_out(job, payload, step, jlog)

    def _fan_out(self, job: Job, payload: PlanPayload, step: RecipeStep, jlog: JobLogger) -> None:
        with self.store.transaction():
            child_ids = [
                self.store.create_job(
                    step.job_type, job.session_id, job.stage_slug, job.iteration_number,
                    child_payload, parent_job_id=job.id, owner_id=job.owner_id,
                ).id
                for child_payload in self._child_payloads(payload, step)
            ]
            if job.is_root:
                payload.step_index += 1
                self.store.update_payload(job.id, payload)
            self.store.set_status(job.id, JobStatus.WAITING_FOR_CHILDREN, JobStatus.PROCESSING)
            self.store.log_event(job.id, job.session_id, "children_planned", {
                "step_key": step.step_key,
                "children": child_ids,
            }, idempotency_key=f"plan:{job.id}:{step.step_key}:{payload.step_index}")
        jlog.on_children_planned(step.step_key, child_ids)
        # A step with no children settles immediately.
        self.cascade.evaluate_parent(job.id)

    def _child_payloads(self, payload: PlanPayload, step: RecipeStep) -> list[Any]:
        models = list(payload.model_ids)
        if step.granularity == Granularity.ALL_TO_ONE:
            models = models[:1]

        if step.job_type == JobType.PLAN:
            return [PlanPayload(
                project_id=payload.project_id,
                session_id=payload.session_id,
                stage_slug=payload.stage_slug,
                iteration_number=payload.iteration_number,
                model_ids=models,
                step=RecipeStep(
                    step_key=step.step_key,
                    output_type=step.output_type,
                    granularity=step.granularity,
                    document_key=step.document_key,
                    prompt_id=step.prompt_id,
                ).to_dict(),
                prompt_id=payload.prompt_id,
            )]

        return [
            ExecutePayload(
                project_id=payload.project_id,
                session_id=payload.session_id,
                stage_slug=payload.stage_slug,
                iteration_number=payload.iteration_number,
                model_id=model_id,
                output_type=step.output_type,
                step_key=step.step_key,
                document_key=step.document_key,
                prompt_id=step.prompt_id or payload.prompt_id,
            )
            for model_id in models
        ]
