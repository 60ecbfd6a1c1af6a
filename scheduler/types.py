"""
Dialectic Core — Scheduler Type Definitions

Jobs, their status graph and tagged payloads, plus the catalog records
(projects, stages, prompts, sessions, contributions) the scheduler and
executor read and write.
"""

from __future__ import annotations

import dataclasses
import enum
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar


def new_id() -> str:
    return str(uuid.uuid4())


# ─── Jobs ────────────────────────────────────────────────────────────

class JobType(str, enum.Enum):
    PLAN = "PLAN"          # decomposes a stage step into children
    EXECUTE = "EXECUTE"    # one model call producing one contribution
    RENDER = "RENDER"      # side effect; never gates its parent


class JobStatus(str, enum.Enum):
    """Lifecycle states for a job."""
    PENDING = "pending"
    PROCESSING = "processing"
    WAITING_FOR_CHILDREN = "waiting_for_children"
    PENDING_NEXT_STEP = "pending_next_step"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Terminal from the parent's point of view. A PLAN that reached
# pending_next_step has finished its part for its parent.
TERMINAL_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
    JobStatus.PENDING_NEXT_STEP,
})

FAILURE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.CANCELLED})

# Children that gate their parent's transition.
RECIPE_RELEVANT_TYPES = (JobType.PLAN, JobType.EXECUTE)

TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({
        JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED,
        JobStatus.WAITING_FOR_CHILDREN,
    }),
    JobStatus.WAITING_FOR_CHILDREN: frozenset({
        JobStatus.PENDING_NEXT_STEP, JobStatus.FAILED, JobStatus.CANCELLED,
    }),
    JobStatus.PENDING_NEXT_STEP: frozenset({JobStatus.PROCESSING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def is_legal_transition(
    job_type: JobType,
    current: JobStatus,
    new: JobStatus,
    is_root: bool = True,
) -> bool:
    if new not in TRANSITIONS[current]:
        return False
    if new == JobStatus.WAITING_FOR_CHILDREN or current == JobStatus.WAITING_FOR_CHILDREN:
        return job_type == JobType.PLAN
    if current == JobStatus.PENDING_NEXT_STEP:
        # Only a stage's root PLAN is resumed for its next step.
        return job_type == JobType.PLAN and is_root
    return True


class OutputType(str, enum.Enum):
    HEADER_CONTEXT = "header_context"
    MARKDOWN_DOCUMENT = "markdown_document"


class Granularity(str, enum.Enum):
    PER_MODEL = "per_model"
    ALL_TO_ONE = "all_to_one"


@dataclass
class PlanPayload:
    """
    Root PLAN: walks the stage recipe, one step per waiting period.
    Nested PLAN: carries a single inline `step` and fans it out once.
    """
    job_type: ClassVar[JobType] = JobType.PLAN

    project_id: str
    session_id: str
    stage_slug: str
    iteration_number: int
    model_ids: list[str] = field(default_factory=list)
    step_index: int = 0
    step: dict[str, Any] | None = None
    status_label: str = ""
    prompt_id: str | None = None


@dataclass
class ExecutePayload:
    job_type: ClassVar[JobType] = JobType.EXECUTE

    project_id: str
    session_id: str
    stage_slug: str
    iteration_number: int
    model_id: str
    output_type: OutputType = OutputType.MARKDOWN_DOCUMENT
    step_key: str = ""
    document_key: str = ""
    prompt_id: str | None = None
    compression_strategy: str | None = None
    user_input: str | None = None
    # Continuation of a truncated response: the contribution to extend
    target_contribution_id: str | None = None
    continuation_count: int = 0


@dataclass
class RenderPayload:
    job_type: ClassVar[JobType] = JobType.RENDER

    project_id: str
    session_id: str
    stage_slug: str
    iteration_number: int
    contribution_id: str
    document_key: str = ""


JobPayload = PlanPayload | ExecutePayload | RenderPayload

_PAYLOAD_TYPES: dict[JobType, type] = {
    JobType.PLAN: PlanPayload,
    JobType.EXECUTE: ExecutePayload,
    JobType.RENDER: RenderPayload,
}


def payload_to_dict(payload: JobPayload) -> dict[str, Any]:
    d = dataclasses.asdict(payload)
    for k, v in d.items():
        if isinstance(v, enum.Enum):
            d[k] = v.value
    return d


def payload_from_dict(job_type: JobType | str, data: dict[str, Any]) -> JobPayload:
    """Pick the payload variant by job type. Unknown keys are ignored."""
    cls = _PAYLOAD_TYPES[JobType(job_type)]
    names = {f.name for f in dataclasses.fields(cls)}
    kwargs = {k: v for k, v in data.items() if k in names}
    if cls is ExecutePayload and "output_type" in kwargs:
        kwargs["output_type"] = OutputType(kwargs["output_type"])
    try:
        return cls(**kwargs)
    except TypeError as e:
        from dialectic.errors import ValidationError
        raise ValidationError(f"Malformed {JobType(job_type).value} payload: {e}") from e


@dataclass
class Job:
    id: str
    session_id: str
    stage_slug: str
    iteration_number: int
    job_type: JobType
    status: JobStatus
    payload: dict[str, Any]
    parent_job_id: str | None = None
    owner_id: str = ""
    error_details: dict[str, Any] | None = None
    worker_id: str = ""
    created_at: float = 0.0
    updated_at: float = 0.0
    started_at: float | None = None
    completed_at: float | None = None

    @property
    def is_root(self) -> bool:
        return self.parent_job_id is None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def typed_payload(self) -> JobPayload:
        return payload_from_dict(self.job_type, self.payload)

    @staticmethod
    def create(
        job_type: JobType,
        session_id: str,
        stage_slug: str,
        iteration_number: int,
        payload: JobPayload | dict[str, Any],
        parent_job_id: str | None = None,
        owner_id: str = "",
    ) -> Job:
        now = time.time()
        if not isinstance(payload, dict):
            payload = payload_to_dict(payload)
        return Job(
            id=new_id(),
            session_id=session_id,
            stage_slug=stage_slug,
            iteration_number=iteration_number,
            job_type=job_type,
            status=JobStatus.PENDING,
            payload=payload,
            parent_job_id=parent_job_id,
            owner_id=owner_id,
            created_at=now,
            updated_at=now,
        )


# ─── Catalog ────────────────────────────────────────────────────────

@dataclass
class Domain:
    id: str
    name: str
    description: str = ""


@dataclass
class ProcessTemplate:
    id: str
    name: str
    starting_stage_id: str
    description: str = ""


@dataclass
class RecipeStep:
    step_key: str
    job_type: JobType = JobType.EXECUTE
    output_type: OutputType = OutputType.MARKDOWN_DOCUMENT
    granularity: Granularity = Granularity.PER_MODEL
    document_key: str = ""
    prompt_id: str | None = None

    @staticmethod
    def from_dict(d: dict[str, Any]) -> RecipeStep:
        return RecipeStep(
            step_key=d["step_key"],
            job_type=JobType(d.get("job_type", "EXECUTE")),
            output_type=OutputType(d.get("output_type", "markdown_document")),
            granularity=Granularity(d.get("granularity", "per_model")),
            document_key=d.get("document_key", "") or d["step_key"],
            prompt_id=d.get("prompt_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_key": self.step_key,
            "job_type": self.job_type.value,
            "output_type": self.output_type.value,
            "granularity": self.granularity.value,
            "document_key": self.document_key,
            "prompt_id": self.prompt_id,
        }


@dataclass
class Stage:
    id: str
    slug: str
    display_name: str
    default_system_prompt_id: str | None = None
    recipe: list[RecipeStep] = field(default_factory=list)
    description: str = ""


@dataclass
class SystemPrompt:
    id: str
    name: str
    prompt_text: str
    is_active: bool = True
    stage_slug: str | None = None
    context: str | None = None
    is_stage_default: bool = False
    version: int = 1


@dataclass
class DomainOverlay:
    id: str
    system_prompt_id: str
    domain_id: str
    overlay_values: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    is_active: bool = True


@dataclass
class AIModel:
    id: str
    name: str
    api_identifier: str
    provider: str = ""
    context_window_tokens: int = 8192
    max_output_tokens: int = 2048
    is_active: bool = True


@dataclass
class Project:
    id: str
    owner_id: str
    project_name: str
    initial_user_prompt: str
    process_template_id: str
    domain_id: str | None = None
    domain_name: str | None = None
    selected_overlay_id: str | None = None
    status: str = "active"
    created_at: float = 0.0
    updated_at: float = 0.0


def slugify_stage(stage_slug: str) -> str:
    """`Antithesis Review` → `antithesis_review`."""
    return re.sub(r"\s+", "_", stage_slug.strip().lower())


def stage_status(prefix: str, stage_slug: str) -> str:
    return f"{prefix}_{slugify_stage(stage_slug)}"


class SessionStatus:
    ITERATION_COMPLETE = "iteration_complete"

    @staticmethod
    def pending(stage_slug: str) -> str:
        return stage_status("pending", stage_slug)

    @staticmethod
    def running(stage_slug: str) -> str:
        return stage_status("running", stage_slug)

    @staticmethod
    def failed(stage_slug: str) -> str:
        return f"{slugify_stage(stage_slug)}_generation_failed"


@dataclass
class Session:
    id: str
    project_id: str
    current_stage_id: str
    iteration_count: int
    status: str
    session_description: str = ""
    associated_chat_id: str | None = None
    selected_model_ids: list[str] = field(default_factory=list)
    created_at: float = 0.0
    updated_at: float = 0.0


class ContributionType(str, enum.Enum):
    MODEL_GENERATED = "model_generated"
    USER_EDIT = "user_edit"


@dataclass
class Contribution:
    id: str
    session_id: str
    stage: str
    iteration_number: int
    storage_path: str
    file_name: str
    mime_type: str = "text/markdown"
    model_id: str | None = None
    model_name: str | None = None
    raw_response_storage_path: str | None = None
    size_bytes: int = 0
    tokens_used_input: int | None = None
    tokens_used_output: int | None = None
    processing_time_ms: int | None = None
    edit_version: int = 1
    is_latest_edit: bool = True
    original_model_contribution_id: str | None = None
    target_contribution_id: str | None = None
    contribution_type: ContributionType = ContributionType.MODEL_GENERATED
    document_key: str = ""
    job_id: str | None = None
    user_id: str | None = None
    citations: list[dict[str, Any]] | None = None
    error: str | None = None
    created_at: float = 0.0

    @property
    def full_path(self) -> str:
        return f"{self.storage_path.rstrip('/')}/{self.file_name}"

    @property
    def lineage_root(self) -> str:
        return self.original_model_contribution_id or self.id

    def to_dict(self) -> dict[str, Any]:
        d = dataclasses.asdict(self)
        d["contribution_type"] = self.contribution_type.value
        return d
