"""
Dialectic Core — API Models

Action payloads and the dispatch envelope. Wire keys are camelCase
(`projectId`, `selectedModelIds`); each payload class reads them with
`from_payload` and reports problems through `validate()`.
No FastAPI dependency. Used by dispatch, server, CLI and tests.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


@dataclass
class DispatchRequest:
    """POST /v1/dialectic body."""
    action: str
    payload: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> list[str]:
        errors = []
        if not _is_text(self.action):
            errors.append("action is required and must be a string")
        if not isinstance(self.payload, dict):
            errors.append("payload must be an object")
        return errors


@dataclass
class DispatchResult:
    status: int
    data: Any = None
    error: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        if self.error is not None:
            return {"error": self.error}
        return {"data": self.data}


# ─── Projects ────────────────────────────────────────────────────────

@dataclass
class CreateProjectRequest:
    project_name: str
    initial_user_prompt: str
    selected_domain_id: str
    process_template_id: str | None = None
    selected_domain_overlay_id: str | None = None

    @staticmethod
    def from_payload(p: dict[str, Any]) -> CreateProjectRequest:
        return CreateProjectRequest(
            project_name=p.get("projectName", ""),
            initial_user_prompt=p.get("initialUserPrompt", ""),
            selected_domain_id=p.get("selectedDomainId", ""),
            process_template_id=p.get("processTemplateId"),
            selected_domain_overlay_id=p.get("selectedDomainOverlayId"),
        )

    def validate(self) -> list[str]:
        errors = []
        if not _is_text(self.project_name):
            errors.append("projectName is required")
        if not _is_text(self.initial_user_prompt):
            errors.append("initialUserPrompt is required")
        if not _is_text(self.selected_domain_id):
            errors.append("selectedDomainId is required")
        return errors


@dataclass
class UpdateProjectDomainRequest:
    project_id: str
    selected_domain_id: str

    @staticmethod
    def from_payload(p: dict[str, Any]) -> UpdateProjectDomainRequest:
        return UpdateProjectDomainRequest(
            project_id=p.get("projectId", ""),
            selected_domain_id=p.get("selectedDomainId", ""),
        )

    def validate(self) -> list[str]:
        errors = []
        if not _is_text(self.project_id):
            errors.append("projectId is required")
        if not _is_text(self.selected_domain_id):
            errors.append("selectedDomainId is required")
        return errors


@dataclass
class UpdateProjectConfigurationRequest:
    project_id: str
    project_name: str | None = None
    initial_user_prompt: str | None = None
    selected_domain_overlay_id: str | None = None
    clear_overlay: bool = False

    @staticmethod
    def from_payload(p: dict[str, Any]) -> UpdateProjectConfigurationRequest:
        return UpdateProjectConfigurationRequest(
            project_id=p.get("projectId", ""),
            project_name=p.get("projectName"),
            initial_user_prompt=p.get("initialUserPrompt"),
            selected_domain_overlay_id=p.get("selectedDomainOverlayId"),
            # An explicit null clears the overlay.
            clear_overlay="selectedDomainOverlayId" in p and p["selectedDomainOverlayId"] is None,
        )

    def validate(self) -> list[str]:
        errors = []
        if not _is_text(self.project_id):
            errors.append("projectId is required")
        if self.project_name is not None and not _is_text(self.project_name):
            errors.append("projectName must be a non-empty string")
        if self.initial_user_prompt is not None and not _is_text(self.initial_user_prompt):
            errors.append("initialUserPrompt must be a non-empty string")
        return errors


# ─── Sessions ────────────────────────────────────────────────────────

@dataclass
class StartSessionRequest:
    project_id: str
    selected_model_ids: list[str]
    stage_slug: str | None = None
    session_description: str | None = None
    associated_chat_id: str | None = None

    @staticmethod
    def from_payload(p: dict[str, Any]) -> StartSessionRequest:
        return StartSessionRequest(
            project_id=p.get("projectId", ""),
            selected_model_ids=p.get("selectedModelIds") or [],
            stage_slug=p.get("stageSlug"),
            session_description=p.get("sessionDescription"),
            associated_chat_id=p.get("associatedChatId"),
        )

    def validate(self) -> list[str]:
        errors = []
        if not _is_text(self.project_id):
            errors.append("projectId is required")
        if (not isinstance(self.selected_model_ids, list) or not self.selected_model_ids
                or not all(_is_text(m) for m in self.selected_model_ids)):
            errors.append("selectedModelIds must be a non-empty list of model ids")
        return errors


@dataclass
class GenerateContributionsRequest:
    session_id: str
    stage_slug: str | None = None
    iteration_number: int | None = None
    prompt_id: str | None = None

    @staticmethod
    def from_payload(p: dict[str, Any]) -> GenerateContributionsRequest:
        return GenerateContributionsRequest(
            session_id=p.get("sessionId", ""),
            stage_slug=p.get("stageSlug"),
            iteration_number=p.get("iterationNumber"),
            prompt_id=p.get("promptId"),
        )

    def validate(self) -> list[str]:
        errors = []
        if not _is_text(self.session_id):
            errors.append("sessionId is required")
        if self.iteration_number is not None and (
                not isinstance(self.iteration_number, int) or self.iteration_number < 1):
            errors.append("iterationNumber must be a positive integer")
        return errors


# ─── Contributions ───────────────────────────────────────────────────

@dataclass
class SaveContributionEditRequest:
    original_contribution_id: str
    edited_content_text: str

    @staticmethod
    def from_payload(p: dict[str, Any]) -> SaveContributionEditRequest:
        return SaveContributionEditRequest(
            original_contribution_id=p.get("originalContributionIdToEdit", ""),
            edited_content_text=p.get("editedContentText", ""),
        )

    def validate(self) -> list[str]:
        errors = []
        if not _is_text(self.original_contribution_id):
            errors.append("originalContributionIdToEdit is required")
        if not isinstance(self.edited_content_text, str):
            errors.append("editedContentText must be a string")
        elif not self.edited_content_text.strip():
            errors.append("editedContentText must not be empty")
        return errors


@dataclass
class ContributionSummary:
    """getSessionDetails contribution entry."""
    id: str
    stage: str
    iteration_number: int
    model_id: str | None
    model_name: str | None
    document_key: str
    edit_version: int
    is_latest_edit: bool
    contribution_type: str
    original_model_contribution_id: str | None
    size_bytes: int
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
