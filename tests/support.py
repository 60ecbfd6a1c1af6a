"""
Shared test doubles: a scripted model adapter and a seeded in-memory
runtime. No network, no files.
"""

import os
import sys
import time

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from dialectic.db import SQLiteBackend
from dialectic.llm import ModelAdapter, ModelResponse
from dialectic.storage import InMemoryStorage
from fixtures.seed import TEMPLATE_ID, seed_catalog
from scheduler.runtime import DialecticRuntime
from scheduler.types import Project, new_id

DEFAULT_REPLY = "# Draft\n\nA considered position with supporting arguments."

HEADER_REPLY = (
    '{"system_materials": {"agent_notes": "focus"}, '
    '"header_context_artifact": {"type": "header_context"}, '
    '"context_for_documents": []}'
)


class ScriptedModelAdapter(ModelAdapter):
    """
    Replies by model id. A reply may be a string, a ModelResponse (returned
    as is), an exception instance (raised) or a callable(prompt_text, config)
    returning any of those.
    """

    def __init__(self, default=DEFAULT_REPLY, by_model=None):
        self.default = default
        self.by_model = dict(by_model or {})
        self.calls = []

    def call_model(self, prompt_text, config):
        self.calls.append((prompt_text, config))
        reply = self.by_model.get(config.model_id, self.default)
        if callable(reply):
            reply = reply(prompt_text, config)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, ModelResponse):
            return reply
        return ModelResponse(
            content=reply,
            input_tokens=len(prompt_text) // 4,
            output_tokens=len(reply) // 4,
            finish_reason="stop",
            processing_time_ms=5,
            raw={"content": reply, "model": config.api_identifier},
        )


def make_runtime(adapter=None, config=None, seed=True):
    rt = DialecticRuntime(
        db=SQLiteBackend(path=":memory:"),
        storage=InMemoryStorage(),
        model_adapter=adapter or ScriptedModelAdapter(),
        config=config or {},
    )
    if seed:
        seed_catalog(rt.repo)
    return rt


def make_project(rt, owner_id="user-1", domain_id="dom-general", overlay_id=None,
                 prompt="Design a shared ledger for a small credit union."):
    now = time.time()
    project = Project(
        id=new_id(),
        owner_id=owner_id,
        project_name="Ledger",
        initial_user_prompt=prompt,
        process_template_id=TEMPLATE_ID,
        domain_id=domain_id,
        selected_overlay_id=overlay_id,
        created_at=now,
        updated_at=now,
    )
    rt.repo.save_project(project)
    return rt.repo.get_project(project.id)


def start_session(rt, project, models=("model-alpha", "model-beta")):
    return rt.stages.start_session(project.owner_id, project.id, list(models))
