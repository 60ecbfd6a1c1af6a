"""
Dialectic Core — Runtime

Wires the pieces together over one database backend:

    db → JobStore + ProjectRepository
         CompletionCascade (terminal hook on the store)
         StageManager      (root listener on the cascade)
         Planner / ContributionExecutor / DocumentRenderer

Usage:
    rt = DialecticRuntime.from_config()                 # dialectic.yaml + env
    rt = DialecticRuntime(db=create_backend("sqlite", path=":memory:"),
                          storage=InMemoryStorage(), model_adapter=fake)
"""

from __future__ import annotations

import logging
import os
from typing import Any

from dialectic.config import get_config_value, load_config
from dialectic.db import DatabaseBackend, create_backend
from dialectic.llm import LangChainModelAdapter, ModelAdapter
from dialectic.storage import StorageAdapter, create_storage
from scheduler.cascade import CompletionCascade
from scheduler.executor import ContributionExecutor
from scheduler.planner import Planner
from scheduler.renderer import DocumentRenderer
from scheduler.repository import ProjectRepository
from scheduler.stages import StageManager
from scheduler.store import JobStore

logger = logging.getLogger("dialectic.runtime")


class DialecticRuntime:

    def __init__(
        self,
        db: DatabaseBackend,
        storage: StorageAdapter,
        model_adapter: ModelAdapter | None = None,
        config: dict[str, Any] | None = None,
    ):
        self.config = config or {}
        self.db = db
        self.storage = storage
        self.store = JobStore(db)
        self.repo = ProjectRepository(db)
        self.cascade = CompletionCascade(self.store)
        self.stages = StageManager(self.repo, self.store, storage, self.config)
        self.cascade.add_root_listener(self.stages.on_root_settled)
        self.planner = Planner(self.store, self.repo, self.cascade, self.stages)
        self.model_adapter = model_adapter or LangChainModelAdapter(config=self.config)
        self.executor = ContributionExecutor(
            self.store, self.repo, storage, self.model_adapter, self.config)
        self.renderer = DocumentRenderer(self.store, self.repo, storage)

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any] | None = None,
        model_adapter: ModelAdapter | None = None,
    ) -> DialecticRuntime:
        config = config or load_config()
        db = create_backend(
            os.environ.get("DIALECTIC_DB_BACKEND") or get_config_value("db.backend", config, None),
            path=get_config_value("db.path", config, "dialectic.db"),
            dsn=get_config_value("db.dsn", config, "") or "",
        )
        return cls(db, create_storage(config), model_adapter, config)

    def close(self) -> None:
        self.db.close()
