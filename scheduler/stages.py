"""
Dialectic Core — Stage / Session Manager

Moves a session through its project's process template
(thesis → antithesis → synthesis → ...):

  start_session        validate the template and initial stage, create the
                       session in pending_{stage}, save the seed prompt
  start_stage          create the stage's root PLAN job
  on_root_settled      root-job listener on the completion cascade:
                         completed         → on_stage_complete
                         failed/cancelled  → {stage}_generation_failed
  on_stage_complete    follow the template transition; None when the
                       template is exhausted (iteration_complete)
  start_next_iteration bump the iteration and return to the starting stage

The iteration count never decreases.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from dialectic.config import get_config_value
from dialectic.errors import DialecticError, ForbiddenError, NotFoundError, ValidationError
from dialectic.storage import StorageAdapter, seed_prompt_path
from scheduler.repository import ProjectRepository
from scheduler.store import JobStore
from scheduler.types import (
    Job,
    JobStatus,
    JobType,
    PlanPayload,
    Project,
    Session,
    SessionStatus,
    Stage,
    TERMINAL_STATUSES,
    new_id,
)

logger = logging.getLogger("dialectic.stages")


def describe_session(project: Project, stage: Stage) -> str:
    return (
        f"{project.project_name or 'Unnamed Project'} - {stage.display_name} "
        f"({project.domain_name or 'General'})"
    )


class StageManager:

    def __init__(
        self,
        repo: ProjectRepository,
        store: JobStore,
        storage: StorageAdapter,
        config: dict[str, Any] | None = None,
    ):
        self.repo = repo
        self.store = store
        self.storage = storage
        self.auto_advance = bool(get_config_value("stages.auto_advance", config, False))

    # ─── Lookups ─────────────────────────────────────────────────────

    def _project(self, project_id: str, user_id: str | None = None) -> Project:
        project = self.repo.get_project(project_id)
        if project is None:
            raise NotFoundError(f"Project '{project_id}' not found")
        if user_id is not None and project.owner_id != user_id:
            raise ForbiddenError("You do not have access to this project")
        return project

    def _session(self, session_id: str) -> Session:
        session = self.repo.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session '{session_id}' not found")
        return session

    def _template_stages(self, project: Project) -> list[Stage]:
        template = self.repo.get_process_template(project.process_template_id)
        if template is None:
            raise ValidationError(
                f"Process template '{project.process_template_id}' not found for project",
                code="TEMPLATE_NOT_FOUND",
            )
        stages = self.repo.list_template_stages(template.id)
        if not stages:
            raise ValidationError(
                f"Process template '{template.name}' has no starting stage",
                code="STAGE_NOT_FOUND",
            )
        return stages

    def stage_in_template(self, project: Project, stage_slug: str) -> Stage:
        for stage in self._template_stages(project):
            if stage.slug.lower() == stage_slug.lower():
                return stage
        raise ValidationError(
            f"Stage '{stage_slug}' is not part of the project's process template",
            code="STAGE_NOT_FOUND",
        )

    # ─── Sessions ────────────────────────────────────────────────────

    def start_session(
        self,
        user_id: str,
        project_id: str,
        selected_model_ids: list[str],
        stage_slug: str | None = None,
        session_description: str | None = None,
        associated_chat_id: str | None = None,
    ) -> Session:
        project = self._project(project_id, user_id)
        if stage_slug:
            stage = self.stage_in_template(project, stage_slug)
        else:
            stage = self._template_stages(project)[0]

        if not selected_model_ids:
            raise ValidationError("At least one model must be selected")
        unknown = [m for m in selected_model_ids if self.repo.get_ai_model(m) is None]
        if unknown:
            raise ValidationError(
                f"Unknown model id(s): {', '.join(unknown)}", details={"model_ids": unknown})

        now = time.time()
        session = Session(
            id=new_id(),
            project_id=project.id,
            current_stage_id=stage.id,
            iteration_count=1,
            status=SessionStatus.pending(stage.slug),
            session_description=(session_description or "").strip() or describe_session(project, stage),
            associated_chat_id=associated_chat_id,
            selected_model_ids=list(selected_model_ids),
            created_at=now,
            updated_at=now,
        )
        self.storage.upload(
            seed_prompt_path(project.id, session.id, 1), project.initial_user_prompt)
        self.repo.save_session(session)
        logger.info("Started session %s for project %s at stage %s",
                    session.id, project.id, stage.slug)
        return session

    def start_stage(
        self,
        session_id: str,
        stage_slug: str | None = None,
        owner_id: str = "",
        prompt_id: str | None = None,
    ) -> str:
        """
        Create the root PLAN job for the session's current stage.

        The session row is locked for the whole check-and-insert, so two
        concurrent starts of the same stage yield one root PLAN and one
        STAGE_ALREADY_RUNNING.
        """
        with self.store.transaction():
            session = self.repo.get_session_for_update(session_id)
            if session is None:
                raise NotFoundError(f"Session '{session_id}' not found")
            project = self._project(session.project_id)
            current = self.repo.get_stage(session.current_stage_id)
            if current is None:
                raise ValidationError(f"Session stage '{session.current_stage_id}' not found",
                                      code="STAGE_NOT_FOUND")
            if stage_slug and stage_slug.lower() != current.slug.lower():
                self.stage_in_template(project, stage_slug)
                raise ValidationError(
                    f"Stage '{stage_slug}' is not the session's current stage '{current.slug}'",
                    code="STAGE_MISMATCH",
                )

            for job in self.store.list_jobs(session_id=session_id, job_type=JobType.PLAN):
                if (job.is_root and job.stage_slug == current.slug
                        and job.iteration_number == session.iteration_count
                        and job.status not in (TERMINAL_STATUSES - {JobStatus.PENDING_NEXT_STEP})):
                    raise DialecticError(
                        f"Stage '{current.slug}' is already running for iteration "
                        f"{session.iteration_count}",
                        code="STAGE_ALREADY_RUNNING", status=409,
                        details={"job_id": job.id},
                    )

            status_label = SessionStatus.pending(current.slug)
            payload = PlanPayload(
                project_id=project.id,
                session_id=session.id,
                stage_slug=current.slug,
                iteration_number=session.iteration_count,
                model_ids=list(session.selected_model_ids),
                status_label=status_label,
                prompt_id=prompt_id,
            )
            job = self.store.create_job(
                JobType.PLAN, session.id, current.slug, session.iteration_count,
                payload, owner_id=owner_id or project.owner_id,
            )
            self.repo.update_session_status(session.id, status_label)
            self.store.log_event(job.id, session.id, "stage_started", {
                "stage": current.slug,
                "iteration": session.iteration_count,
                "models": payload.model_ids,
            })
        logger.info("Root PLAN %s created for session %s stage %s",
                    job.id, session.id, current.slug)
        return job.id

    def mark_stage_running(self, session_id: str, stage_slug: str) -> None:
        self.repo.update_session_status(session_id, SessionStatus.running(stage_slug))

    # ─── Completion ──────────────────────────────────────────────────

    def on_root_settled(self, job: Job) -> None:
        """Root-job listener. Runs inside the status write's transaction."""
        if job.job_type != JobType.PLAN:
            return
        if job.status == JobStatus.COMPLETED:
            self.on_stage_complete(job.session_id)
        elif job.status in (JobStatus.FAILED, JobStatus.CANCELLED):
            self.repo.update_session_status(job.session_id, SessionStatus.failed(job.stage_slug))
            logger.warning("Stage %s failed for session %s", job.stage_slug, job.session_id)

    def on_stage_complete(self, session_id: str) -> str | None:
        """
        Advance to the next stage of the template. Returns its slug, or
        None when the current stage was the last one.
        """
        with self.repo.transaction():
            session = self.repo.get_session_for_update(session_id)
            if session is None:
                raise NotFoundError(f"Session '{session_id}' not found")
            project = self._project(session.project_id)
            nxt = self.repo.next_stage(project.process_template_id, session.current_stage_id)
            if nxt is None:
                session.status = SessionStatus.ITERATION_COMPLETE
                session.updated_at = time.time()
                self.repo.save_session(session)
                self.store.log_event(session.id, session.id, "iteration_complete",
                                     {"iteration": session.iteration_count})
                logger.info("Session %s finished iteration %d",
                            session.id, session.iteration_count)
                return None

            session.current_stage_id = nxt.id
            session.status = SessionStatus.pending(nxt.slug)
            session.updated_at = time.time()
            self.repo.save_session(session)
            logger.info("Session %s advanced to stage %s", session.id, nxt.slug)
            if self.auto_advance:
                self.start_stage(session.id, nxt.slug)
            return nxt.slug

    def start_next_iteration(self, session_id: str, user_id: str | None = None) -> Session:
        session = self._session(session_id)
        project = self._project(session.project_id, user_id)
        if session.status != SessionStatus.ITERATION_COMPLETE:
            raise ValidationError(
                f"Session is '{session.status}'; a new iteration can only start "
                f"after the current one completes",
                code="ITERATION_NOT_COMPLETE",
            )
        first = self._template_stages(project)[0]
        session.iteration_count += 1
        session.current_stage_id = first.id
        session.status = SessionStatus.pending(first.slug)
        session.updated_at = time.time()
        self.storage.upload(
            seed_prompt_path(project.id, session.id, session.iteration_count),
            project.initial_user_prompt,
        )
        self.repo.save_session(session)
        return session
