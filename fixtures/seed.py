"""
Dialectic Core — Catalog Seed

Loads a working catalog into a fresh database: domains, the
thesis → antithesis → synthesis process template with a recipe per
stage, stage default prompts, one domain overlay and a few AI models
that run on the offline "fake" provider.

Prompt templates only use variables the executor supplies
(user_objective, context_description, domain, agent_count, stage_name,
iteration, document_key) plus overlay values guarded with `default`.

Usage:
    from fixtures.seed import seed_catalog
    ids = seed_catalog(ProjectRepository(db))
    ids["template_id"], ids["model_ids"]

    python -m scheduler.cli seed
"""

from __future__ import annotations

import logging
from typing import Any

from scheduler.repository import ProjectRepository
from scheduler.types import (
    AIModel,
    Domain,
    DomainOverlay,
    Granularity,
    JobType,
    OutputType,
    ProcessTemplate,
    RecipeStep,
    Stage,
    SystemPrompt,
)

logger = logging.getLogger("dialectic.seed")

TEMPLATE_ID = "tpl-dialectic"

DOMAINS = [
    Domain("dom-general", "General", "Any problem statement"),
    Domain("dom-software", "Software Development", "Product and system design"),
    Domain("dom-finance", "Financial Analysis", "Investment and budgeting questions"),
]

THESIS_PROMPT = """\
You are one of {{ agent_count }} independent agents drafting an initial position.
Domain: {{ domain }}. Iteration {{ iteration }}.

Objective:
{{ user_objective }}

Write the {{ document_key | replace('_', ' ') }} as a well-structured markdown document.
{{ style_guide | default('') }}
"""

ANTITHESIS_PROMPT = """\
You are a critical reviewer in the {{ stage_name }} stage ({{ domain }}).
Examine the prior proposals in the supplied context. Identify weaknesses,
missing assumptions and risks, and propose concrete alternatives.

Original objective:
{{ context_description }}

Produce the {{ document_key | replace('_', ' ') }} in markdown.
"""

SYNTHESIS_PROMPT = """\
You are the synthesizer for the {{ stage_name }} stage ({{ domain }}).
Reconcile the proposals and critiques in the supplied context into one
coherent plan that answers:

{{ user_objective }}

Write the {{ document_key | replace('_', ' ') }} in markdown.
"""

SOFTWARE_OVERLAY = {
    "style_guide": (
        "Cover architecture, data model, delivery milestones and "
        "operational concerns. Prefer tables for comparisons."
    ),
}


def _stages() -> list[Stage]:
    return [
        Stage(
            id="stage-thesis",
            slug="thesis",
            display_name="Thesis",
            default_system_prompt_id="prompt-thesis",
            description="Independent proposals from each selected model",
            recipe=[
                RecipeStep("business_case", JobType.EXECUTE,
                           OutputType.MARKDOWN_DOCUMENT, Granularity.PER_MODEL,
                           "business_case"),
            ],
        ),
        Stage(
            id="stage-antithesis",
            slug="antithesis",
            display_name="Antithesis",
            default_system_prompt_id="prompt-antithesis",
            description="Each model critiques the thesis material",
            recipe=[
                RecipeStep("business_case_critique", JobType.EXECUTE,
                           OutputType.MARKDOWN_DOCUMENT, Granularity.PER_MODEL,
                           "business_case_critique"),
            ],
        ),
        Stage(
            id="stage-synthesis",
            slug="synthesis",
            display_name="Synthesis",
            default_system_prompt_id="prompt-synthesis",
            description="Pairwise synthesis followed by one reduced document",
            recipe=[
                RecipeStep("pairwise_synthesis", JobType.PLAN,
                           OutputType.MARKDOWN_DOCUMENT, Granularity.PER_MODEL,
                           "pairwise_synthesis_chunk"),
                RecipeStep("reduced_synthesis", JobType.EXECUTE,
                           OutputType.MARKDOWN_DOCUMENT, Granularity.ALL_TO_ONE,
                           "synthesis"),
            ],
        ),
    ]


def _prompts() -> list[SystemPrompt]:
    return [
        SystemPrompt("prompt-thesis", "Thesis default", THESIS_PROMPT,
                     stage_slug="thesis", context="general", is_stage_default=True),
        SystemPrompt("prompt-antithesis", "Antithesis default", ANTITHESIS_PROMPT,
                     stage_slug="antithesis", context="general", is_stage_default=True),
        SystemPrompt("prompt-synthesis", "Synthesis default", SYNTHESIS_PROMPT,
                     stage_slug="synthesis", context="general", is_stage_default=True),
    ]


def _models() -> list[AIModel]:
    return [
        AIModel("model-alpha", "Model Alpha", "fake-alpha", provider="fake",
                context_window_tokens=8192, max_output_tokens=1024),
        AIModel("model-beta", "Model Beta", "fake-beta", provider="fake",
                context_window_tokens=8192, max_output_tokens=1024),
        AIModel("model-gpt4o", "GPT-4o", "gpt-4o", provider="openai",
                context_window_tokens=128000, max_output_tokens=4096, is_active=False),
    ]


def seed_catalog(repo: ProjectRepository) -> dict[str, Any]:
    """Upsert the catalog. Safe to run repeatedly."""
    stages = _stages()
    with repo.transaction():
        for domain in DOMAINS:
            repo.upsert_domain(domain)
        for prompt in _prompts():
            repo.upsert_system_prompt(prompt)
        for stage in stages:
            repo.upsert_stage(stage)
        repo.upsert_process_template(ProcessTemplate(
            TEMPLATE_ID, "Dialectic", starting_stage_id=stages[0].id,
            description="Thesis, antithesis, synthesis"))
        for source, target in zip(stages, stages[1:]):
            repo.add_transition(TEMPLATE_ID, source.id, target.id)
        repo.upsert_domain_overlay(DomainOverlay(
            "overlay-software-thesis", "prompt-thesis", "dom-software",
            overlay_values=SOFTWARE_OVERLAY,
            description="Software delivery emphasis for thesis proposals"))
        models = _models()
        for model in models:
            repo.upsert_ai_model(model)

    logger.info("Seeded %d domains, %d stages, %d models",
                len(DOMAINS), len(stages), len(models))
    return {
        "template_id": TEMPLATE_ID,
        "domain_ids": [d.id for d in DOMAINS],
        "stage_slugs": [s.slug for s in stages],
        "model_ids": [m.id for m in models if m.is_active],
        "overlay_id": "overlay-software-thesis",
    }
