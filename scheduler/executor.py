"""
Dialectic Core — Contribution Executor

Turns one claimed EXECUTE job into one persisted contribution:

  1. resolve the prompt (direct → overlay → default) and render it
  2. gather prior material and compress it into the model's budget
  3. call the model with a timeout
  4. check the response shape for the step's output type
  5. invalid → store the raw response, fail the job, no contribution
     valid   → store content + raw response, insert the contribution,
               queue a RENDER job for documents, complete the job

A response cut off at the model's output limit is not rendered yet: a
continuation EXECUTE job under the same parent is queued instead, and
it replaces the contribution with the text extended by the next chunk,
up to `executor.max_continuations` times.

The job's final status write runs the completion cascade. Every failure
in here ends as a failed job with {code, message} error details; nothing
is retried in place.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from dialectic.compression import (
    Document,
    TokenCounter,
    compute_budget,
    estimate_tokens,
    format_context,
    get_strategy,
    tokens_used,
)
from dialectic.config import get_config_value
from dialectic.errors import (
    DialecticError,
    ModelCallError,
    ModelResponseValidationError,
    NotFoundError,
    error_details,
)
from dialectic.guards import should_enqueue_render, validate_response
from dialectic.llm import ModelAdapter, ModelCallConfig, ModelResponse
from dialectic.logging import JobLogger
from dialectic.prompts import PromptResolver, render_prompt
from dialectic.storage import (
    StorageAdapter,
    contribution_file_name,
    raw_response_path,
    stage_dir,
)
from scheduler.repository import ProjectRepository
from scheduler.store import JobStore
from scheduler.types import (
    AIModel,
    Contribution,
    ContributionType,
    ExecutePayload,
    Job,
    JobStatus,
    JobType,
    OutputType,
    Project,
    RenderPayload,
    Stage,
    new_id,
)

logger = logging.getLogger("dialectic.executor")

# Relevance weights for gathered context
SAME_STAGE_RELEVANCE = 2.0
PRIOR_ITERATION_RELEVANCE = 0.25

# Finish reasons meaning the model stopped at its output limit
TRUNCATED_FINISH_REASONS = frozenset({"length", "max_tokens"})


@dataclass
class ExecutionResult:
    job_id: str
    contribution: Contribution | None = None
    render_job_id: str | None = None
    error: dict[str, Any] | None = None
    continuation_job_id: str | None = None
    raw_response_path: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.contribution is not None


class ContributionExecutor:

    def __init__(
        self,
        store: JobStore,
        repo: ProjectRepository,
        storage: StorageAdapter,
        model_adapter: ModelAdapter,
        config: dict[str, Any] | None = None,
        token_counter: TokenCounter = estimate_tokens,
    ):
        self.store = store
        self.repo = repo
        self.storage = storage
        self.model_adapter = model_adapter
        self.resolver = PromptResolver(
            repo, default_context=get_config_value("prompts.default_context", config, "general"))
        self.count_tokens = token_counter
        self.timeout_seconds = float(get_config_value("executor.model_timeout_seconds", config, 120))
        self.render_documents = bool(get_config_value("executor.render_documents", config, True))
        self.continue_until_complete = bool(
            get_config_value("executor.continue_until_complete", config, True))
        self.max_continuations = int(get_config_value("executor.max_continuations", config, 5))
        self.default_strategy = get_config_value("compression.strategy", config, "relevance_ranked")
        self.output_reserve = int(get_config_value("compression.output_reserve_tokens", config, 2048))
        self.min_fragment = int(get_config_value("compression.min_fragment_tokens", config, 64))

    # ─── Worker entry point ──────────────────────────────────────────

    def process(self, job: Job) -> ExecutionResult:
        """Full unit of work for a claimed EXECUTE job."""
        jlog = JobLogger.for_job(job)
        try:
            payload: ExecutePayload = job.typed_payload()
            project, model, stage = self._load(payload)

            resolved = self.resolver.resolve(job, project)
            jlog.on_prompt_resolved(resolved.source_tier.name, resolved.prompt_id, resolved.overlay_id)
            self.store.log_event(job.id, job.session_id, "prompt_resolved", resolved.to_dict(),
                                 idempotency_key=f"prompt:{job.id}")

            session = self.repo.get_session(payload.session_id)
            prompt_text = render_prompt(
                resolved,
                stage_name=stage.display_name,
                user_input=payload.user_input or project.initial_user_prompt,
                variables={
                    "user_objective": project.initial_user_prompt,
                    "context_description": project.initial_user_prompt,
                    "domain": project.domain_name or "General",
                    "agent_count": len(session.selected_model_ids) if session else 1,
                    "stage_name": stage.display_name,
                    "iteration": payload.iteration_number,
                    "document_key": payload.document_key,
                },
            )
            candidates = self.gather_context(job, payload, project)
            context = self.compress(prompt_text, candidates, model,
                                    payload.compression_strategy, jlog)
        except DialecticError as e:
            return self._fail(job, e, jlog)

        return self.execute(job, prompt_text, context, project=project, model=model)

    def _load(self, payload: ExecutePayload) -> tuple[Project, AIModel, Stage]:
        project = self.repo.get_project(payload.project_id)
        if project is None:
            raise NotFoundError(f"Project '{payload.project_id}' not found")
        model = self.repo.get_ai_model(payload.model_id)
        if model is None:
            raise NotFoundError(f"AI model '{payload.model_id}' not found", code="MODEL_NOT_FOUND")
        stage = self.repo.get_stage_by_slug(payload.stage_slug)
        if stage is None:
            raise NotFoundError(f"Stage '{payload.stage_slug}' not found", code="STAGE_NOT_FOUND")
        return project, model, stage

    # ─── Context ─────────────────────────────────────────────────────

    def gather_context(self, job: Job, payload: ExecutePayload, project: Project) -> list[Document]:
        """
        Latest contributions of the session as candidates: earlier steps of
        this stage rank highest, then earlier stages (closer = higher),
        then earlier iterations.
        """
        order = {
            s.slug.lower(): i
            for i, s in enumerate(self.repo.list_template_stages(project.process_template_id))
        }
        here = order.get(payload.stage_slug.lower(), 0)
        docs: list[Document] = []
        for c in self.repo.list_contributions(payload.session_id, latest_only=True):
            if c.job_id == job.id or c.id == payload.target_contribution_id:
                continue
            pos = order.get(c.stage.lower(), 0)
            if c.iteration_number == payload.iteration_number:
                if pos > here:
                    continue
                relevance = SAME_STAGE_RELEVANCE if pos == here else 1.0 / (1 + here - pos)
            elif c.iteration_number < payload.iteration_number:
                relevance = PRIOR_ITERATION_RELEVANCE
            else:
                continue
            try:
                text = self.storage.download_text(c.full_path)
            except NotFoundError:
                logger.warning("Contribution %s content missing at %s; skipped", c.id, c.full_path)
                continue
            except UnicodeDecodeError:
                logger.warning("Contribution %s at %s is not UTF-8 text; skipped", c.id, c.full_path)
                continue
            docs.append(Document(
                id=c.id,
                content=text,
                relevance=relevance,
                created_at=c.created_at,
                metadata={
                    "title": f"{c.stage} / {c.model_name or 'user'} / {c.document_key or c.file_name}",
                    "iteration": c.iteration_number,
                },
            ))
        return docs

    def compress(self, prompt_text: str, candidates: list[Document], model: AIModel,
                 strategy_name: str | None = None, jlog: JobLogger | None = None) -> list[Document]:
        reserve = model.max_output_tokens or self.output_reserve
        budget = compute_budget(model.context_window_tokens, self.count_tokens(prompt_text), reserve)
        strategy = get_strategy(strategy_name or self.default_strategy,
                                token_counter=self.count_tokens,
                                min_fragment_tokens=self.min_fragment)
        selected = strategy.select_context(candidates, budget)
        if jlog:
            jlog.on_context_compressed(strategy.name, len(candidates), len(selected), budget,
                                       tokens_used(selected, self.count_tokens))
        return selected

    # ─── Execution ───────────────────────────────────────────────────

    def execute(
        self,
        job: Job,
        prompt: str,
        context: list[Document],
        project: Project | None = None,
        model: AIModel | None = None,
    ) -> ExecutionResult:
        jlog = JobLogger.for_job(job)
        try:
            payload: ExecutePayload = job.typed_payload()
            if project is None or model is None:
                project, model, _ = self._load(payload)
            previous, previous_text = self._continuation_target(payload)
        except DialecticError as e:
            return self._fail(job, e, jlog)

        request_text = prompt
        if context:
            request_text += "\n\n## Context\n\n" + format_context(context)
        if previous is not None:
            request_text += (
                "\n\n## Partial Response\n\n" + previous_text
                + "\n\nContinue the partial response exactly where it stops. Do not repeat any of it."
            )

        contribution_id = new_id()
        jlog.on_model_call_start(model.id, len(request_text))
        t0 = time.time()
        try:
            response = self.model_adapter.call_model(request_text, ModelCallConfig(
                model_id=model.id,
                api_identifier=model.api_identifier,
                provider=model.provider,
                max_output_tokens=model.max_output_tokens,
                timeout_seconds=self.timeout_seconds,
            ))
        except ModelCallError as e:
            return self._fail(job, e, jlog)
        elapsed = time.time() - t0
        jlog.on_model_call_end(model.id, response.output_tokens, elapsed, response.finish_reason)

        raw_path = raw_response_path(
            project.id, payload.session_id, payload.iteration_number, payload.stage_slug,
            model.name, contribution_id, payload.document_key)
        raw_body = json.dumps(response.raw or {"content": response.content}, default=str, indent=2)

        content = previous_text + response.content
        will_continue = self.should_continue(job, payload, response)
        try:
            # A partial response is kept as text; its shape is checked once it is whole.
            value = content if will_continue else validate_response(payload.output_type, content)
        except ModelResponseValidationError as e:
            try:
                self.storage.upload(raw_path, raw_body, "application/json")
            except DialecticError as store_err:
                logger.error("Could not keep raw response for job %s: %s", job.id, store_err)
                raw_path = None
            jlog.on_validation_failed(payload.output_type.value, e.message, raw_path)
            e.details = {**(e.details or {}), "raw_response_storage_path": raw_path}
            self.store.log_event(job.id, job.session_id, "validation_failed", e.to_dict())
            return self._fail(job, e, jlog, raw_path=raw_path)

        try:
            return self._persist(job, payload, project, model, contribution_id,
                                 value, response, raw_path, raw_body, elapsed, jlog,
                                 previous=previous, will_continue=will_continue)
        except DialecticError as e:
            logger.error("Persisting contribution for job %s failed: %s", job.id, e.message)
            return self._fail(job, e, jlog, raw_path=raw_path)

    # ─── Continuations ───────────────────────────────────────────────

    def _continuation_target(self, payload: ExecutePayload) -> tuple[Contribution | None, str]:
        if not payload.target_contribution_id:
            return None, ""
        previous = self.repo.get_contribution(payload.target_contribution_id)
        if previous is None:
            raise NotFoundError(
                f"Contribution '{payload.target_contribution_id}' to continue not found",
                code="CONTRIBUTION_NOT_FOUND")
        try:
            return previous, self.storage.download_text(previous.full_path)
        except UnicodeDecodeError as e:
            raise ModelResponseValidationError(
                f"Contribution '{previous.id}' to continue is not UTF-8 text") from e

    def should_continue(self, job: Job, payload: ExecutePayload, response: ModelResponse) -> bool:
        """
        True when the model stopped at its output limit, continuations are
        enabled, the chain is under `max_continuations` and the parent
        is still waiting on this branch.
        """
        if (response.finish_reason or "").lower() not in TRUNCATED_FINISH_REASONS:
            return False
        if not self.continue_until_complete:
            return False
        if payload.continuation_count >= self.max_continuations:
            logger.warning("Job %s still truncated after %d continuations; keeping it as is",
                           job.id, payload.continuation_count)
            return False
        if job.parent_job_id:
            parent = self.store.get_job(job.parent_job_id)
            if parent is not None and parent.status in (JobStatus.FAILED, JobStatus.CANCELLED):
                return False
        return True

    # ─── Persistence ─────────────────────────────────────────────────

    def _persist(self, job: Job, payload: ExecutePayload, project: Project, model: AIModel,
                 contribution_id: str, value: Any, response: ModelResponse,
                 raw_path: str, raw_body: str, elapsed: float,
                 jlog: JobLogger, previous: Contribution | None = None,
                 will_continue: bool = False) -> ExecutionResult:
        if payload.output_type == OutputType.HEADER_CONTEXT:
            body = value if isinstance(value, str) else json.dumps(value, indent=2)
            mime, ext = "application/json", "json"
        else:
            body, mime, ext = value, "text/markdown", "md"

        directory = stage_dir(project.id, payload.session_id, payload.iteration_number,
                              payload.stage_slug)
        file_name = contribution_file_name(model.name, contribution_id, payload.document_key,
                                           extension=ext)
        uploaded = self.storage.upload(f"{directory}/{file_name}", body, mime)
        self.storage.upload(raw_path, raw_body, "application/json")

        processing_ms = response.processing_time_ms or int(elapsed * 1000)
        contribution = Contribution(
            id=contribution_id,
            session_id=payload.session_id,
            stage=payload.stage_slug,
            iteration_number=payload.iteration_number,
            storage_path=directory,
            file_name=file_name,
            mime_type=mime,
            model_id=model.id,
            model_name=model.name,
            raw_response_storage_path=raw_path,
            size_bytes=uploaded.size_bytes,
            tokens_used_input=response.input_tokens,
            tokens_used_output=response.output_tokens,
            processing_time_ms=processing_ms,
            original_model_contribution_id=contribution_id,
            contribution_type=ContributionType.MODEL_GENERATED,
            document_key=payload.document_key,
            job_id=job.id,
            user_id=job.owner_id or None,
            created_at=time.time(),
        )
        if previous is not None:
            contribution.original_model_contribution_id = previous.lineage_root
            contribution.target_contribution_id = previous.id
            contribution.edit_version = previous.edit_version
            contribution.tokens_used_input = _add(previous.tokens_used_input, response.input_tokens)
            contribution.tokens_used_output = _add(previous.tokens_used_output, response.output_tokens)
            contribution.processing_time_ms = _add(previous.processing_time_ms, processing_ms)

        render, reason = should_enqueue_render(payload.output_type)
        render_job_id = continuation_job_id = None
        with self.store.transaction():
            if previous is not None:
                self.repo.save_continuation(previous, contribution)
            else:
                self.repo.insert_contribution(contribution)
            if will_continue:
                # Same parent as this job, so the parent keeps waiting for the chain.
                continuation_job_id = self.store.create_job(
                    JobType.EXECUTE, job.session_id, job.stage_slug, job.iteration_number,
                    dataclasses.replace(
                        payload,
                        target_contribution_id=contribution.id,
                        continuation_count=payload.continuation_count + 1,
                    ),
                    parent_job_id=job.parent_job_id,
                    owner_id=job.owner_id,
                ).id
                self.store.log_event(job.id, job.session_id, "continuation_queued", {
                    "contribution_id": contribution.id,
                    "continuation_job_id": continuation_job_id,
                    "continuation_count": payload.continuation_count + 1,
                    "finish_reason": response.finish_reason,
                }, idempotency_key=f"continuation:{job.id}")
            elif render and self.render_documents:
                render_job_id = self.store.create_job(
                    JobType.RENDER, job.session_id, job.stage_slug, job.iteration_number,
                    RenderPayload(
                        project_id=project.id,
                        session_id=payload.session_id,
                        stage_slug=payload.stage_slug,
                        iteration_number=payload.iteration_number,
                        contribution_id=contribution.id,
                        document_key=payload.document_key,
                    ),
                    parent_job_id=job.id,
                    owner_id=job.owner_id,
                ).id
            self.store.log_event(job.id, job.session_id, "contribution_saved", {
                "contribution_id": contribution.id,
                "path": contribution.full_path,
                "render": reason,
                "continues": will_continue,
            }, idempotency_key=f"contribution:{job.id}")
            if not self.store.set_status(job.id, JobStatus.COMPLETED, JobStatus.PROCESSING):
                # Rolls back the contribution row; the job was cancelled meanwhile.
                raise DialecticError(f"Job {job.id} left processing during execution",
                                     code="STATUS_CONFLICT", status=409)

        jlog.on_contribution_saved(contribution.id, contribution.full_path, uploaded.size_bytes)
        if continuation_job_id:
            jlog.on_continuation_queued(contribution.id, continuation_job_id,
                                        payload.continuation_count + 1)
        return ExecutionResult(job.id, contribution=contribution, render_job_id=render_job_id,
                               continuation_job_id=continuation_job_id,
                               raw_response_path=raw_path)

    def _fail(self, job: Job, exc: DialecticError, jlog: JobLogger,
              raw_path: str | None = None) -> ExecutionResult:
        details = error_details(exc)
        jlog.on_job_failed(details["code"], details["message"])
        if not self.store.set_status(job.id, JobStatus.FAILED, JobStatus.PROCESSING,
                                     error_details=details):
            logger.warning("Job %s left processing before it could be failed", job.id)
        return ExecutionResult(job.id, error=details, raw_response_path=raw_path)


def _add(a: int | None, b: int | None) -> int | None:
    if a is None and b is None:
        return None
    return (a or 0) + (b or 0)
