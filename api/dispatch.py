"""
Dialectic Core — Action Dispatch

Single entry point for client actions:

    service = DialecticService(runtime)
    result = service.dispatch("createProject", {...}, user_id="u-1")
    result.status, result.data, result.error

Every action runs as the calling user. Project-scoped actions check
ownership; with `api.collapse_forbidden` (default on) a foreign project
answers exactly like a missing one. Typed errors become
{code, message, details?} with their status; anything else is logged and
answered as a 500.

Jobs created by generateContributions are picked up by whichever worker
backend is running. `on_jobs_created` lets the inline and thread
backends drain right away.
"""

from __future__ import annotations

import dataclasses
import io
import json
import logging
import time
import zipfile
from typing import Any, Callable

from api.models import (
    ContributionSummary,
    CreateProjectRequest,
    DispatchResult,
    GenerateContributionsRequest,
    SaveContributionEditRequest,
    StartSessionRequest,
    UpdateProjectConfigurationRequest,
    UpdateProjectDomainRequest,
)
from dialectic.config import get_config_value
from dialectic.db import IntegrityConflict
from dialectic.errors import (
    DialecticError,
    ForbiddenError,
    NotFoundError,
    PersistenceError,
    UnauthenticatedError,
    ValidationError,
)
from dialectic.storage import contribution_file_name, export_path, project_root
from scheduler.runtime import DialecticRuntime
from scheduler.types import (
    Contribution,
    ContributionType,
    Job,
    JobStatus,
    JobType,
    Project,
    Session,
    new_id,
)

logger = logging.getLogger("dialectic.api.dispatch")

PUBLIC_ACTIONS = frozenset({"listAvailableDomainTags", "listAvailableDomainOverlays"})


def _require(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} is required", details={"field": key})
    return value


def _check(errors: list[str]) -> None:
    if errors:
        raise ValidationError("; ".join(errors), details={"errors": errors})


def _job_dict(job: Job) -> dict[str, Any]:
    d = dataclasses.asdict(job)
    d["job_type"] = job.job_type.value
    d["status"] = job.status.value
    return d


def _summary(c: Contribution) -> dict[str, Any]:
    return ContributionSummary(
        id=c.id,
        stage=c.stage,
        iteration_number=c.iteration_number,
        model_id=c.model_id,
        model_name=c.model_name,
        document_key=c.document_key,
        edit_version=c.edit_version,
        is_latest_edit=c.is_latest_edit,
        contribution_type=c.contribution_type.value,
        original_model_contribution_id=c.original_model_contribution_id,
        size_bytes=c.size_bytes,
        created_at=c.created_at,
    ).to_dict()


class DialecticService:

    def __init__(
        self,
        runtime: DialecticRuntime,
        config: dict[str, Any] | None = None,
        on_jobs_created: Callable[[list[str]], Any] | None = None,
    ):
        self.rt = runtime
        self.repo = runtime.repo
        self.store = runtime.store
        self.storage = runtime.storage
        self.stages = runtime.stages
        config = config if config is not None else runtime.config
        self.collapse_forbidden = bool(get_config_value("api.collapse_forbidden", config, True))
        self.default_template_id = get_config_value("projects.default_process_template_id", config, None)
        self.on_jobs_created = on_jobs_created
        self._handlers: dict[str, Callable[[dict[str, Any], str], Any]] = {
            "listAvailableDomainTags": self.list_domain_tags,
            "listAvailableDomainOverlays": self.list_domain_overlays,
            "createProject": self.create_project,
            "listProjects": self.list_projects,
            "getProjectDetails": self.get_project_details,
            "updateProjectDomainTag": self.update_project_domain,
            "updateProjectConfiguration": self.update_project_configuration,
            "startSession": self.start_session,
            "generateContributions": self.generate_contributions,
            "startNextIteration": self.start_next_iteration,
            "getSessionDetails": self.get_session_details,
            "listSessionJobs": self.list_session_jobs,
            "getContributionContent": self.get_contribution_content,
            "saveContributionEdit": self.save_contribution_edit,
            "exportProject": self.export_project,
            "cloneProject": self.clone_project,
            "deleteProject": self.delete_project,
        }

    @property
    def actions(self) -> list[str]:
        return sorted(self._handlers)

    # ─── Entry point ─────────────────────────────────────────────────

    def dispatch(self, action: str, payload: dict[str, Any] | None, user_id: str | None) -> DispatchResult:
        payload = payload or {}
        handler = self._handlers.get(action)
        try:
            if handler is None:
                raise ValidationError(f"Unknown action '{action}'", code="UNKNOWN_ACTION",
                                      details={"actions": self.actions})
            if not isinstance(payload, dict):
                raise ValidationError("payload must be an object")
            if action not in PUBLIC_ACTIONS and not user_id:
                raise UnauthenticatedError("User not authenticated")
            data = handler(payload, user_id or "")
            return DispatchResult(200, data=data)
        except ForbiddenError as e:
            if self.collapse_forbidden:
                hidden = NotFoundError("Resource not found")
                return DispatchResult(hidden.status, error=hidden.to_dict())
            return DispatchResult(e.status, error=e.to_dict())
        except PersistenceError as e:
            logger.error("Action %s persistence failure: %s (%s)", action, e.message, e.details)
            return DispatchResult(e.status, error=e.to_dict())
        except DialecticError as e:
            logger.info("Action %s rejected: %s %s", action, e.code, e.message)
            return DispatchResult(e.status, error=e.to_dict())
        except IntegrityConflict as e:
            conflict = PersistenceError("Write rejected by a database constraint",
                                        code="WRITE_CONFLICT", status=409,
                                        details={"cause": str(e)})
            logger.error("Action %s write conflict: %s", action, e)
            return DispatchResult(conflict.status, error=conflict.to_dict())
        except Exception as e:
            logger.exception("Action %s failed", action)
            return DispatchResult(500, error={
                "code": "INTERNAL_ERROR",
                "message": f"{type(e).__name__}: {e}",
            })

    # ─── Ownership ───────────────────────────────────────────────────

    def _owned_project(self, project_id: str, user_id: str) -> Project:
        project = self.repo.get_project(project_id)
        if project is None:
            raise NotFoundError(f"Project '{project_id}' not found")
        if project.owner_id != user_id:
            raise ForbiddenError("You do not have access to this project")
        return project

    def _owned_session(self, session_id: str, user_id: str) -> tuple[Session, Project]:
        session = self.repo.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session '{session_id}' not found")
        return session, self._owned_project(session.project_id, user_id)

    def _owned_contribution(self, contribution_id: str, user_id: str) -> tuple[Contribution, Project]:
        contribution = self.repo.get_contribution(contribution_id)
        if contribution is None:
            raise NotFoundError(f"Contribution '{contribution_id}' not found")
        _, project = self._owned_session(contribution.session_id, user_id)
        return contribution, project

    # ─── Catalog ─────────────────────────────────────────────────────

    def list_domain_tags(self, payload: dict[str, Any], user_id: str) -> list[dict[str, Any]]:
        domains = self.repo.list_domains()
        stage = payload.get("stageAssociation")
        if stage:
            linked = {o["domain_id"] for o in self.repo.list_domain_overlays(stage)}
            domains = [d for d in domains if d.id in linked]
        return [dataclasses.asdict(d) for d in domains]

    def list_domain_overlays(self, payload: dict[str, Any], user_id: str) -> list[dict[str, Any]]:
        return self.repo.list_domain_overlays(payload.get("stageAssociation"))

    # ─── Projects ────────────────────────────────────────────────────

    def _template_id(self, requested: str | None) -> str:
        if requested:
            if self.repo.get_process_template(requested) is None:
                raise ValidationError(f"Process template '{requested}' not found",
                                      code="TEMPLATE_NOT_FOUND")
            return requested
        if self.default_template_id:
            return self.default_template_id
        templates = self.repo.list_process_templates()
        if not templates:
            raise ValidationError("No process template is configured", code="TEMPLATE_NOT_FOUND")
        return templates[0].id

    def _check_overlay(self, overlay_id: str, domain_id: str | None) -> None:
        overlay = self.repo.get_domain_overlay(overlay_id)
        if overlay is None or not overlay.is_active:
            raise ValidationError(f"Domain overlay '{overlay_id}' not found",
                                  code="OVERLAY_NOT_FOUND")
        if domain_id and overlay.domain_id != domain_id:
            raise ValidationError(
                f"Domain overlay '{overlay_id}' does not belong to the project's domain",
                code="OVERLAY_DOMAIN_MISMATCH",
            )

    def create_project(self, payload: dict[str, Any], user_id: str) -> dict[str, Any]:
        req = CreateProjectRequest.from_payload(payload)
        _check(req.validate())
        if self.repo.get_domain(req.selected_domain_id) is None:
            raise ValidationError(f"Unknown domain tag '{req.selected_domain_id}'",
                                  code="UNKNOWN_DOMAIN")
        if req.selected_domain_overlay_id:
            self._check_overlay(req.selected_domain_overlay_id, req.selected_domain_id)
        now = time.time()
        project = Project(
            id=new_id(),
            owner_id=user_id,
            project_name=req.project_name.strip(),
            initial_user_prompt=req.initial_user_prompt,
            process_template_id=self._template_id(req.process_template_id),
            domain_id=req.selected_domain_id,
            selected_overlay_id=req.selected_domain_overlay_id,
            created_at=now,
            updated_at=now,
        )
        self.repo.save_project(project)
        logger.info("Project %s created by %s", project.id, user_id)
        return dataclasses.asdict(self.repo.get_project(project.id))

    def list_projects(self, payload: dict[str, Any], user_id: str) -> list[dict[str, Any]]:
        return [dataclasses.asdict(p) for p in self.repo.list_projects(user_id)]

    def get_project_details(self, payload: dict[str, Any], user_id: str) -> dict[str, Any]:
        project = self._owned_project(_require(payload, "projectId"), user_id)
        return {
            **dataclasses.asdict(project),
            "sessions": [dataclasses.asdict(s) for s in self.repo.list_sessions(project.id)],
        }

    def update_project_domain(self, payload: dict[str, Any], user_id: str) -> dict[str, Any]:
        req = UpdateProjectDomainRequest.from_payload(payload)
        _check(req.validate())
        project = self._owned_project(req.project_id, user_id)
        if self.repo.get_domain(req.selected_domain_id) is None:
            raise ValidationError(f"Unknown domain tag '{req.selected_domain_id}'",
                                  code="UNKNOWN_DOMAIN")
        project.domain_id = req.selected_domain_id
        if project.selected_overlay_id:
            overlay = self.repo.get_domain_overlay(project.selected_overlay_id)
            if overlay is None or overlay.domain_id != req.selected_domain_id:
                project.selected_overlay_id = None
        project.updated_at = time.time()
        self.repo.save_project(project)
        return dataclasses.asdict(self.repo.get_project(project.id))

    def update_project_configuration(self, payload: dict[str, Any], user_id: str) -> dict[str, Any]:
        req = UpdateProjectConfigurationRequest.from_payload(payload)
        _check(req.validate())
        project = self._owned_project(req.project_id, user_id)
        if req.project_name is not None:
            project.project_name = req.project_name.strip()
        if req.initial_user_prompt is not None:
            project.initial_user_prompt = req.initial_user_prompt
        if req.clear_overlay:
            project.selected_overlay_id = None
        elif req.selected_domain_overlay_id:
            self._check_overlay(req.selected_domain_overlay_id, project.domain_id)
            project.selected_overlay_id = req.selected_domain_overlay_id
        project.updated_at = time.time()
        self.repo.save_project(project)
        return dataclasses.asdict(self.repo.get_project(project.id))

    # ─── Sessions ────────────────────────────────────────────────────

    def start_session(self, payload: dict[str, Any], user_id: str) -> dict[str, Any]:
        req = StartSessionRequest.from_payload(payload)
        _check(req.validate())
        self._owned_project(req.project_id, user_id)
        session = self.stages.start_session(
            user_id, req.project_id, req.selected_model_ids,
            stage_slug=req.stage_slug,
            session_description=req.session_description,
            associated_chat_id=req.associated_chat_id,
        )
        return dataclasses.asdict(session)

    def generate_contributions(self, payload: dict[str, Any], user_id: str) -> dict[str, Any]:
        req = GenerateContributionsRequest.from_payload(payload)
        _check(req.validate())
        session, project = self._owned_session(req.session_id, user_id)
        if req.iteration_number is not None and req.iteration_number != session.iteration_count:
            raise ValidationError(
                f"Iteration {req.iteration_number} is not the session's current "
                f"iteration {session.iteration_count}",
                code="ITERATION_MISMATCH",
            )
        job_id = self.stages.start_stage(
            session.id, stage_slug=req.stage_slug, owner_id=user_id, prompt_id=req.prompt_id)
        if self.on_jobs_created is not None:
            self.on_jobs_created([job_id])
        session = self.repo.get_session(session.id)
        return {
            "job_id": job_id,
            "session_id": session.id,
            "iteration_number": session.iteration_count,
            "status": session.status,
        }

    def start_next_iteration(self, payload: dict[str, Any], user_id: str) -> dict[str, Any]:
        session, _ = self._owned_session(_require(payload, "sessionId"), user_id)
        return dataclasses.asdict(self.stages.start_next_iteration(session.id, user_id))

    def get_session_details(self, payload: dict[str, Any], user_id: str) -> dict[str, Any]:
        session, project = self._owned_session(_require(payload, "sessionId"), user_id)
        stage = self.repo.get_stage(session.current_stage_id)
        jobs = self.store.list_jobs(session_id=session.id)
        counts: dict[str, int] = {}
        for job in jobs:
            counts[job.status.value] = counts.get(job.status.value, 0) + 1
        return {
            **dataclasses.asdict(session),
            "project_name": project.project_name,
            "current_stage": {
                "id": stage.id,
                "slug": stage.slug,
                "display_name": stage.display_name,
            } if stage else None,
            "contributions": [_summary(c) for c in self.repo.list_contributions(session.id)],
            "job_counts": counts,
        }

    def list_session_jobs(self, payload: dict[str, Any], user_id: str) -> list[dict[str, Any]]:
        session, _ = self._owned_session(_require(payload, "sessionId"), user_id)
        try:
            status = JobStatus(payload["status"]) if payload.get("status") else None
            job_type = JobType(payload["jobType"]) if payload.get("jobType") else None
        except ValueError as e:
            raise ValidationError(str(e)) from e
        return [_job_dict(j) for j in self.store.list_jobs(
            session_id=session.id, status=status, job_type=job_type)]

    # ─── Contributions ───────────────────────────────────────────────

    def get_contribution_content(self, payload: dict[str, Any], user_id: str) -> dict[str, Any]:
        contribution, _ = self._owned_contribution(_require(payload, "contributionId"), user_id)
        content = self.storage.download_text(contribution.full_path)
        return {
            "content": content,
            "mime_type": contribution.mime_type,
            "file_name": contribution.file_name,
            "size_bytes": contribution.size_bytes,
        }

    def save_contribution_edit(self, payload: dict[str, Any], user_id: str) -> dict[str, Any]:
        req = SaveContributionEditRequest.from_payload(payload)
        _check(req.validate())
        previous, project = self._owned_contribution(req.original_contribution_id, user_id)

        lineage = [
            c for c in self.repo.list_contributions(
                previous.session_id, previous.stage, previous.iteration_number, latest_only=False)
            if c.lineage_root == previous.lineage_root
        ]
        version = max(c.edit_version for c in lineage) + 1
        edit_id = new_id()
        body = req.edited_content_text.encode("utf-8")
        edit = Contribution(
            id=edit_id,
            session_id=previous.session_id,
            stage=previous.stage,
            iteration_number=previous.iteration_number,
            storage_path=previous.storage_path,
            file_name=contribution_file_name(
                previous.model_name or "user", edit_id, previous.document_key, edit_version=version),
            mime_type="text/markdown",
            model_id=previous.model_id,
            model_name=previous.model_name,
            size_bytes=len(body),
            edit_version=version,
            is_latest_edit=True,
            original_model_contribution_id=previous.lineage_root,
            target_contribution_id=previous.id,
            contribution_type=ContributionType.USER_EDIT,
            document_key=previous.document_key,
            user_id=user_id,
            created_at=time.time(),
        )
        self.storage.upload(edit.full_path, body, "text/markdown")
        try:
            self.repo.save_edit(previous, edit)
        except Exception as e:
            self.storage.remove([edit.full_path])
            raise PersistenceError("Failed to save contribution edit",
                                   details={"cause": f"{type(e).__name__}: {e}"}) from e
        logger.info("Contribution %s edited as %s (v%d)", previous.id, edit.id, version)
        return edit.to_dict()

    # ─── Project lifecycle ───────────────────────────────────────────

    def _project_files(self, project_id: str) -> list[str]:
        exports = f"{project_root(project_id)}/exports/"
        return [p for p in self.storage.list(project_root(project_id) + "/")
                if not p.startswith(exports)]

    def export_project(self, payload: dict[str, Any], user_id: str) -> dict[str, Any]:
        project = self._owned_project(_require(payload, "projectId"), user_id)
        sessions = self.repo.list_sessions(project.id)
        manifest = {
            "project": dataclasses.asdict(project),
            "sessions": [
                {
                    **dataclasses.asdict(s),
                    "contributions": [
                        c.to_dict() for c in self.repo.list_contributions(s.id, latest_only=False)
                    ],
                }
                for s in sessions
            ],
            "exported_at": time.time(),
        }
        files = self._project_files(project.id)
        prefix = project_root(project.id) + "/"
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
            zf.writestr("project_manifest.json", json.dumps(manifest, indent=2, default=str))
            for path in files:
                zf.writestr(path[len(prefix):], self.storage.download(path))
        data = buffer.getvalue()
        path = export_path(project.id, project.project_name)
        self.storage.upload(path, data, "application/zip")
        logger.info("Exported project %s (%d files, %d bytes)", project.id, len(files), len(data))
        return {"export_path": path, "size_bytes": len(data), "file_count": len(files)}

    def clone_project(self, payload: dict[str, Any], user_id: str) -> dict[str, Any]:
        source = self._owned_project(_require(payload, "projectId"), user_id)
        now = time.time()
        clone = dataclasses.replace(
            source,
            id=new_id(),
            project_name=(payload.get("newProjectName") or f"{source.project_name} (Clone)").strip(),
            created_at=now,
            updated_at=now,
        )
        old_root, new_root = project_root(source.id) + "/", project_root(clone.id) + "/"
        session_ids: dict[str, str] = {}
        contribution_ids: dict[str, str] = {}

        def rehome(path: str | None) -> str | None:
            if not path or not path.startswith(old_root):
                return path
            path = new_root + path[len(old_root):]
            for old, new in session_ids.items():
                path = path.replace(f"/sessions/{old}/", f"/sessions/{new}/")
            return path

        sessions = self.repo.list_sessions(source.id)
        for s in sessions:
            session_ids[s.id] = new_id()
        contributions = {s.id: self.repo.list_contributions(s.id, latest_only=False) for s in sessions}
        for items in contributions.values():
            for c in items:
                contribution_ids[c.id] = new_id()

        copied = []
        try:
            for path in self._project_files(source.id):
                target = rehome(path)
                self.storage.upload(target, self.storage.download(path))
                copied.append(target)
            with self.repo.transaction():
                self.repo.save_project(clone)
                for s in sessions:
                    self.repo.save_session(dataclasses.replace(
                        s, id=session_ids[s.id], project_id=clone.id, created_at=now, updated_at=now))
                    for c in contributions[s.id]:
                        self.repo.insert_contribution(dataclasses.replace(
                            c,
                            id=contribution_ids[c.id],
                            session_id=session_ids[s.id],
                            storage_path=rehome(c.storage_path),
                            raw_response_storage_path=rehome(c.raw_response_storage_path),
                            original_model_contribution_id=contribution_ids.get(
                                c.original_model_contribution_id, c.original_model_contribution_id),
                            target_contribution_id=contribution_ids.get(
                                c.target_contribution_id, c.target_contribution_id),
                            job_id=None,
                        ))
        except DialecticError:
            self.storage.remove(copied)
            raise
        except Exception as e:
            self.storage.remove(copied)
            raise PersistenceError("Failed to clone project",
                                   details={"cause": f"{type(e).__name__}: {e}"}) from e
        logger.info("Project %s cloned as %s (%d sessions, %d files)",
                    source.id, clone.id, len(sessions), len(copied))
        return dataclasses.asdict(self.repo.get_project(clone.id))

    def delete_project(self, payload: dict[str, Any], user_id: str) -> dict[str, Any]:
        project = self._owned_project(_require(payload, "projectId"), user_id)
        session_ids = [s.id for s in self.repo.list_sessions(project.id)]
        removed = self.storage.remove(self.storage.list(project_root(project.id) + "/"))
        with self.repo.transaction():
            self.store.delete_session_jobs(session_ids)
            self.repo.delete_project(project.id)
        logger.info("Project %s deleted (%d sessions, %d files)",
                    project.id, len(session_ids), removed)
        return {"project_id": project.id, "deleted": True, "files_removed": removed}
