"""
Dialectic Core — Prompt Resolver

Decides which system prompt a job runs with. Three tiers, tried in a
fixed order; the first tier that APPLIES wins, and if it then fails the
job fails with that tier's error (no falling through to the next one):

    DIRECT   the job payload names a prompt_id
    OVERLAY  the project selected a domain overlay
    DEFAULT  the active stage-default prompt for (stage, context)

Templates are Jinja2 (`{{ domain }}`, `{{ user_objective }}`, ...). The
overlay's values are the first layer of variables; per-call variables
override them.

Usage:
    resolver = PromptResolver(repository)
    resolved = resolver.resolve(job, project)
    text = render_prompt(resolved, stage_name="Thesis", user_input=project.initial_user_prompt)
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateError, UndefinedError

from dialectic.errors import (
    DefaultPromptNotFoundError,
    DirectPromptNotFoundError,
    OverlayResolutionError,
    PromptRenderError,
)

logger = logging.getLogger("dialectic.prompts")

DEFAULT_CONTEXT = "general"


class PromptTier(enum.IntEnum):
    """Lower value = higher precedence."""
    DIRECT = 1
    OVERLAY = 2
    DEFAULT = 3


@dataclass
class ResolvedPrompt:
    text: str
    source_tier: PromptTier
    prompt_id: str
    overlay_id: str | None = None
    overlay_values: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_tier": self.source_tier.name,
            "prompt_id": self.prompt_id,
            "overlay_id": self.overlay_id,
        }


class PromptCatalog(Protocol):
    """What the resolver needs from the repository."""

    def get_system_prompt(self, prompt_id: str): ...

    def get_domain_overlay(self, overlay_id: str): ...

    def find_stage_default_prompts(self, stage_slug: str): ...


# ═══════════════════════════════════════════════════════════════════
# Tiers
# ═══════════════════════════════════════════════════════════════════

class DirectPromptTier:
    tier = PromptTier.DIRECT

    def applies(self, job, project) -> bool:
        return bool(_payload_prompt_id(job))

    def resolve(self, job, project, catalog: PromptCatalog, context: str) -> ResolvedPrompt:
        prompt_id = _payload_prompt_id(job)
        prompt = catalog.get_system_prompt(prompt_id)
        if prompt is None or not prompt.is_active:
            raise DirectPromptNotFoundError(
                f"System prompt with ID '{prompt_id}' not found or inactive",
                details={"prompt_id": prompt_id},
            )
        return ResolvedPrompt(prompt.prompt_text, self.tier, prompt.id)


class OverlayPromptTier:
    tier = PromptTier.OVERLAY

    def applies(self, job, project) -> bool:
        return bool(getattr(project, "selected_overlay_id", None))

    def resolve(self, job, project, catalog: PromptCatalog, context: str) -> ResolvedPrompt:
        overlay_id = project.selected_overlay_id
        overlay = catalog.get_domain_overlay(overlay_id)
        if overlay is None or not overlay.is_active:
            raise OverlayResolutionError(
                f"Domain-specific prompt overlay with ID '{overlay_id}' not found",
                details={"overlay_id": overlay_id},
            )
        prompt = catalog.get_system_prompt(overlay.system_prompt_id)
        if prompt is None or not prompt.is_active:
            raise OverlayResolutionError(
                f"Domain-specific prompt overlay with ID '{overlay_id}' "
                f"links to a missing or inactive prompt",
                details={"overlay_id": overlay_id, "prompt_id": overlay.system_prompt_id},
            )
        return ResolvedPrompt(
            prompt.prompt_text, self.tier, prompt.id,
            overlay_id=overlay.id,
            overlay_values=dict(overlay.overlay_values or {}),
        )


class DefaultPromptTier:
    tier = PromptTier.DEFAULT

    def applies(self, job, project) -> bool:
        return True

    def resolve(self, job, project, catalog: PromptCatalog, context: str) -> ResolvedPrompt:
        stage = job.stage_slug
        candidates = [
            p for p in catalog.find_stage_default_prompts(stage)
            if p.is_active and p.is_stage_default
            and (p.stage_slug or "").lower() == stage.lower()
        ]
        wanted = context.lower()
        exact = [p for p in candidates if (p.context or DEFAULT_CONTEXT).lower() == wanted]
        general = [p for p in candidates if (p.context or DEFAULT_CONTEXT).lower() == DEFAULT_CONTEXT]
        matches = exact or general
        if not matches:
            raise DefaultPromptNotFoundError(
                f"No suitable default prompt found for stage '{stage}' and context '{context}'",
                details={"stage": stage, "context": context},
            )
        prompt = sorted(matches, key=lambda p: (-p.version, p.id))[0]
        return ResolvedPrompt(prompt.prompt_text, self.tier, prompt.id)


TIERS = (DirectPromptTier(), OverlayPromptTier(), DefaultPromptTier())


def _payload_prompt_id(job) -> str | None:
    payload = getattr(job, "payload", None) or {}
    return payload.get("prompt_id") or None


class PromptResolver:

    def __init__(self, catalog: PromptCatalog, default_context: str = DEFAULT_CONTEXT):
        self.catalog = catalog
        self.default_context = default_context

    def context_for(self, project) -> str:
        return (getattr(project, "domain_name", None) or self.default_context).strip()

    def resolve(self, job, project) -> ResolvedPrompt:
        context = self.context_for(project)
        for tier in TIERS:
            if tier.applies(job, project):
                resolved = tier.resolve(job, project, self.catalog, context)
                logger.debug("Job %s resolved prompt %s via %s",
                             getattr(job, "id", "?"), resolved.prompt_id, tier.tier.name)
                return resolved
        # DefaultPromptTier always applies.
        raise AssertionError("no prompt tier applied")


def resolve_prompt(job, project, catalog: PromptCatalog) -> ResolvedPrompt:
    return PromptResolver(catalog).resolve(job, project)


# ═══════════════════════════════════════════════════════════════════
# Rendering
# ═══════════════════════════════════════════════════════════════════

_env = Environment(
    loader=BaseLoader(),
    autoescape=False,
    trim_blocks=True,
    lstrip_blocks=True,
    undefined=StrictUndefined,
)


def render_template(template: str, variables: dict[str, Any]) -> str:
    try:
        return _env.from_string(template).render(**variables).strip()
    except UndefinedError as e:
        raise PromptRenderError(f"Prompt template references an unknown variable: {e}") from e
    except TemplateError as e:
        raise PromptRenderError(f"Prompt template error: {e}") from e


def render_prompt(
    resolved: ResolvedPrompt,
    stage_name: str,
    user_input: str,
    variables: dict[str, Any] | None = None,
) -> str:
    values = {**resolved.overlay_values, **(variables or {})}
    system = render_template(resolved.text, values)
    return (
        f"Rendered System Prompt for {stage_name}:\n{system}\n\n"
        f"Initial User Prompt:\n{user_input}"
    )
