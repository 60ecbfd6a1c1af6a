"""
Dialectic Core — Document Renderer

RENDER jobs turn a stored markdown contribution into a standalone
document under {stage}/documents/. They are side effects: the cascade
ignores them, so a failed render never holds up or fails its parent.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from dialectic.errors import DialecticError, NotFoundError, error_details
from dialectic.logging import JobLogger
from dialectic.storage import StorageAdapter, rendered_document_path
from scheduler.repository import ProjectRepository
from scheduler.store import JobStore
from scheduler.types import Job, JobStatus, RenderPayload

logger = logging.getLogger("dialectic.renderer")


class DocumentRenderer:

    def __init__(self, store: JobStore, repo: ProjectRepository, storage: StorageAdapter):
        self.store = store
        self.repo = repo
        self.storage = storage

    def process(self, job: Job) -> str | None:
        jlog = JobLogger.for_job(job)
        try:
            path = self.render(job)
        except DialecticError as e:
            details = error_details(e)
            jlog.on_job_failed(details["code"], details["message"])
            self.store.set_status(job.id, JobStatus.FAILED, JobStatus.PROCESSING,
                                  error_details=details)
            return None
        self.store.set_status(job.id, JobStatus.COMPLETED, JobStatus.PROCESSING)
        return path

    def render(self, job: Job) -> str:
        payload: RenderPayload = job.typed_payload()
        contribution = self.repo.get_contribution(payload.contribution_id)
        if contribution is None:
            raise NotFoundError(f"Contribution '{payload.contribution_id}' not found")
        stage = self.repo.get_stage_by_slug(contribution.stage)
        body = self.storage.download_text(contribution.full_path)

        header = [
            f"# {(payload.document_key or contribution.document_key or 'Document').replace('_', ' ').title()}",
            "",
            f"- Stage: {stage.display_name if stage else contribution.stage}",
            f"- Iteration: {contribution.iteration_number}",
            f"- Model: {contribution.model_name or 'user edit'}",
            f"- Rendered: {datetime.now(timezone.utc).isoformat(timespec='seconds')}",
            "",
            "---",
            "",
        ]
        path = rendered_document_path(
            payload.project_id, contribution.session_id, contribution.iteration_number,
            contribution.stage, payload.document_key or contribution.document_key,
            contribution.model_name or "user",
        )
        self.storage.upload(path, "\n".join(header) + body.strip() + "\n", "text/markdown")
        JobLogger.for_job(job).on_render_complete(contribution.id, path)
        return path
