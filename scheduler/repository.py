"""
Dialectic Core — Project Repository

Catalog and artifact persistence: domains, process templates, stages and
their transitions, system prompts, domain overlays, the AI model catalog,
projects, sessions and contributions.

Contribution edits never touch stored content. An edit inserts a new row
and, in the same transaction, clears is_latest_edit on the previous
latest row of the lineage.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from dialectic.db import DatabaseBackend
from scheduler.types import (
    AIModel,
    Contribution,
    ContributionType,
    Domain,
    DomainOverlay,
    ProcessTemplate,
    Project,
    RecipeStep,
    Session,
    Stage,
    SystemPrompt,
)

logger = logging.getLogger("dialectic.repository")


class ProjectRepository:

    def __init__(self, db: DatabaseBackend):
        self.db = db
        self._create_tables()

    def transaction(self):
        return self.db.transaction()

    def _create_tables(self):
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS domains (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                description TEXT DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS process_templates (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT DEFAULT '',
                starting_stage_id TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS stages (
                id TEXT PRIMARY KEY,
                slug TEXT NOT NULL UNIQUE,
                display_name TEXT NOT NULL,
                description TEXT DEFAULT '',
                default_system_prompt_id TEXT,
                recipe TEXT NOT NULL DEFAULT '[]'
            );

            CREATE TABLE IF NOT EXISTS stage_transitions (
                process_template_id TEXT NOT NULL,
                source_stage_id TEXT NOT NULL,
                target_stage_id TEXT NOT NULL,
                PRIMARY KEY (process_template_id, source_stage_id)
            );

            CREATE TABLE IF NOT EXISTS system_prompts (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                prompt_text TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                stage_slug TEXT,
                context TEXT,
                is_stage_default INTEGER NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS domain_overlays (
                id TEXT PRIMARY KEY,
                system_prompt_id TEXT NOT NULL,
                domain_id TEXT NOT NULL,
                overlay_values TEXT NOT NULL DEFAULT '{}',
                description TEXT DEFAULT '',
                is_active INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS ai_models (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                api_identifier TEXT NOT NULL,
                provider TEXT DEFAULT '',
                context_window_tokens INTEGER NOT NULL DEFAULT 8192,
                max_output_tokens INTEGER NOT NULL DEFAULT 2048,
                is_active INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                project_name TEXT NOT NULL,
                initial_user_prompt TEXT NOT NULL,
                process_template_id TEXT NOT NULL,
                domain_id TEXT,
                selected_overlay_id TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                current_stage_id TEXT NOT NULL,
                iteration_count INTEGER NOT NULL DEFAULT 1,
                status TEXT NOT NULL,
                session_description TEXT DEFAULT '',
                associated_chat_id TEXT,
                selected_model_ids TEXT NOT NULL DEFAULT '[]',
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS contributions (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                stage TEXT NOT NULL,
                iteration_number INTEGER NOT NULL,
                model_id TEXT,
                model_name TEXT,
                storage_path TEXT NOT NULL,
                file_name TEXT NOT NULL,
                mime_type TEXT NOT NULL DEFAULT 'text/markdown',
                raw_response_storage_path TEXT,
                size_bytes INTEGER DEFAULT 0,
                tokens_used_input INTEGER,
                tokens_used_output INTEGER,
                processing_time_ms INTEGER,
                edit_version INTEGER NOT NULL DEFAULT 1,
                is_latest_edit INTEGER NOT NULL DEFAULT 1,
                original_model_contribution_id TEXT,
                target_contribution_id TEXT,
                contribution_type TEXT NOT NULL DEFAULT 'model_generated',
                document_key TEXT DEFAULT '',
                job_id TEXT,
                user_id TEXT,
                citations TEXT,
                error TEXT,
                created_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_id);
            CREATE INDEX IF NOT EXISTS idx_contrib_session ON contributions(session_id, stage, iteration_number);
            CREATE INDEX IF NOT EXISTS idx_contrib_lineage ON contributions(original_model_contribution_id);
            CREATE INDEX IF NOT EXISTS idx_prompts_stage ON system_prompts(stage_slug);
        """)

    # ─── Domains ─────────────────────────────────────────────────────

    def upsert_domain(self, domain: Domain) -> None:
        self.db.execute(
            "INSERT OR REPLACE INTO domains (id, name, description) VALUES (?, ?, ?)",
            (domain.id, domain.name, domain.description),
        )

    def get_domain(self, domain_id: str) -> Domain | None:
        row = self.db.fetchone("SELECT * FROM domains WHERE id = ?", (domain_id,))
        return Domain(**row) if row else None

    def get_domain_by_name(self, name: str) -> Domain | None:
        row = self.db.fetchone("SELECT * FROM domains WHERE LOWER(name) = LOWER(?)", (name,))
        return Domain(**row) if row else None

    def list_domains(self) -> list[Domain]:
        return [Domain(**r) for r in self.db.fetchall("SELECT * FROM domains ORDER BY name")]

    # ─── Process templates & stages ──────────────────────────────────

    def upsert_process_template(self, template: ProcessTemplate) -> None:
        self.db.execute("""
            INSERT OR REPLACE INTO process_templates (id, name, description, starting_stage_id)
            VALUES (?, ?, ?, ?)
        """, (template.id, template.name, template.description, template.starting_stage_id))

    def get_process_template(self, template_id: str) -> ProcessTemplate | None:
        row = self.db.fetchone("SELECT * FROM process_templates WHERE id = ?", (template_id,))
        return ProcessTemplate(**row) if row else None

    def list_process_templates(self) -> list[ProcessTemplate]:
        rows = self.db.fetchall("SELECT * FROM process_templates ORDER BY name, id")
        return [ProcessTemplate(**r) for r in rows]

    def upsert_stage(self, stage: Stage) -> None:
        self.db.execute("""
            INSERT OR REPLACE INTO stages
            (id, slug, display_name, description, default_system_prompt_id, recipe)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            stage.id, stage.slug, stage.display_name, stage.description,
            stage.default_system_prompt_id,
            json.dumps([s.to_dict() for s in stage.recipe]),
        ))

    def get_stage(self, stage_id: str) -> Stage | None:
        row = self.db.fetchone("SELECT * FROM stages WHERE id = ?", (stage_id,))
        return self._row_to_stage(row) if row else None

    def get_stage_by_slug(self, slug: str) -> Stage | None:
        row = self.db.fetchone("SELECT * FROM stages WHERE LOWER(slug) = LOWER(?)", (slug,))
        return self._row_to_stage(row) if row else None

    def _row_to_stage(self, row) -> Stage:
        return Stage(
            id=row["id"],
            slug=row["slug"],
            display_name=row["display_name"],
            description=row["description"] or "",
            default_system_prompt_id=row["default_system_prompt_id"],
            recipe=[RecipeStep.from_dict(s) for s in json.loads(row["recipe"] or "[]")],
        )

    def add_transition(self, template_id: str, source_stage_id: str, target_stage_id: str) -> None:
        self.db.execute("""
            INSERT INTO stage_transitions (process_template_id, source_stage_id, target_stage_id)
            VALUES (?, ?, ?)
            ON CONFLICT (process_template_id, source_stage_id)
            DO UPDATE SET target_stage_id = excluded.target_stage_id
        """, (template_id, source_stage_id, target_stage_id))

    def next_stage(self, template_id: str, stage_id: str) -> Stage | None:
        row = self.db.fetchone("""
            SELECT target_stage_id FROM stage_transitions
            WHERE process_template_id = ? AND source_stage_id = ?
        """, (template_id, stage_id))
        return self.get_stage(row["target_stage_id"]) if row else None

    def list_template_stages(self, template_id: str) -> list[Stage]:
        """Stages of a template in transition order, starting stage first."""
        template = self.get_process_template(template_id)
        if template is None:
            return []
        ordered: list[Stage] = []
        seen: set[str] = set()
        stage = self.get_stage(template.starting_stage_id)
        while stage is not None and stage.id not in seen:
            ordered.append(stage)
            seen.add(stage.id)
            stage = self.next_stage(template_id, stage.id)
        return ordered

    # ─── Prompts & overlays ──────────────────────────────────────────

    def upsert_system_prompt(self, prompt: SystemPrompt) -> None:
        self.db.execute("""
            INSERT OR REPLACE INTO system_prompts
            (id, name, prompt_text, is_active, stage_slug, context, is_stage_default, version)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            prompt.id, prompt.name, prompt.prompt_text, int(prompt.is_active),
            prompt.stage_slug, prompt.context, int(prompt.is_stage_default), prompt.version,
        ))

    def get_system_prompt(self, prompt_id: str) -> SystemPrompt | None:
        row = self.db.fetchone("SELECT * FROM system_prompts WHERE id = ?", (prompt_id,))
        return self._row_to_prompt(row) if row else None

    def find_stage_default_prompts(self, stage_slug: str) -> list[SystemPrompt]:
        rows = self.db.fetchall("""
            SELECT * FROM system_prompts
            WHERE LOWER(stage_slug) = LOWER(?) AND is_active = 1 AND is_stage_default = 1
            ORDER BY id
        """, (stage_slug,))
        return [self._row_to_prompt(r) for r in rows]

    def _row_to_prompt(self, row) -> SystemPrompt:
        return SystemPrompt(
            id=row["id"],
            name=row["name"],
            prompt_text=row["prompt_text"],
            is_active=bool(row["is_active"]),
            stage_slug=row["stage_slug"],
            context=row["context"],
            is_stage_default=bool(row["is_stage_default"]),
            version=row["version"],
        )

    def upsert_domain_overlay(self, overlay: DomainOverlay) -> None:
        self.db.execute("""
            INSERT OR REPLACE INTO domain_overlays
            (id, system_prompt_id, domain_id, overlay_values, description, is_active)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            overlay.id, overlay.system_prompt_id, overlay.domain_id,
            json.dumps(overlay.overlay_values), overlay.description, int(overlay.is_active),
        ))

    def get_domain_overlay(self, overlay_id: str) -> DomainOverlay | None:
        row = self.db.fetchone("SELECT * FROM domain_overlays WHERE id = ?", (overlay_id,))
        if not row:
            return None
        return DomainOverlay(
            id=row["id"],
            system_prompt_id=row["system_prompt_id"],
            domain_id=row["domain_id"],
            overlay_values=json.loads(row["overlay_values"] or "{}"),
            description=row["description"] or "",
            is_active=bool(row["is_active"]),
        )

    def list_domain_overlays(self, stage_slug: str | None = None) -> list[dict[str, Any]]:
        """Active overlays with their domain name, optionally for one stage."""
        query = """
            SELECT o.id, o.domain_id, d.name AS domain_name, o.description,
                   o.overlay_values, o.system_prompt_id, p.stage_slug
            FROM domain_overlays o
            JOIN system_prompts p ON p.id = o.system_prompt_id
            LEFT JOIN domains d ON d.id = o.domain_id
            WHERE o.is_active = 1
        """
        params: tuple = ()
        if stage_slug:
            query += " AND LOWER(p.stage_slug) = LOWER(?)"
            params = (stage_slug,)
        query += " ORDER BY d.name, o.id"
        return [
            {**r, "overlay_values": json.loads(r["overlay_values"] or "{}")}
            for r in self.db.fetchall(query, params)
        ]

    # ─── AI models ───────────────────────────────────────────────────

    def upsert_ai_model(self, model: AIModel) -> None:
        self.db.execute("""
            INSERT OR REPLACE INTO ai_models
            (id, name, api_identifier, provider, context_window_tokens, max_output_tokens, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            model.id, model.name, model.api_identifier, model.provider,
            model.context_window_tokens, model.max_output_tokens, int(model.is_active),
        ))

    def get_ai_model(self, model_id: str) -> AIModel | None:
        row = self.db.fetchone("SELECT * FROM ai_models WHERE id = ?", (model_id,))
        return self._row_to_model(row) if row else None

    def list_ai_models(self, active_only: bool = True) -> list[AIModel]:
        query = "SELECT * FROM ai_models"
        if active_only:
            query += " WHERE is_active = 1"
        return [self._row_to_model(r) for r in self.db.fetchall(query + " ORDER BY name")]

    def _row_to_model(self, row) -> AIModel:
        return AIModel(
            id=row["id"],
            name=row["name"],
            api_identifier=row["api_identifier"],
            provider=row["provider"] or "",
            context_window_tokens=row["context_window_tokens"],
            max_output_tokens=row["max_output_tokens"],
            is_active=bool(row["is_active"]),
        )

    # ─── Projects ────────────────────────────────────────────────────

    def save_project(self, project: Project) -> None:
        self.db.execute("""
            INSERT OR REPLACE INTO projects
            (id, owner_id, project_name, initial_user_prompt, process_template_id,
             domain_id, selected_overlay_id, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            project.id, project.owner_id, project.project_name,
            project.initial_user_prompt, project.process_template_id,
            project.domain_id, project.selected_overlay_id, project.status,
            project.created_at, project.updated_at,
        ))

    def get_project(self, project_id: str) -> Project | None:
        row = self.db.fetchone("""
            SELECT p.*, d.name AS domain_name FROM projects p
            LEFT JOIN domains d ON d.id = p.domain_id
            WHERE p.id = ?
        """, (project_id,))
        return self._row_to_project(row) if row else None

    def list_projects(self, owner_id: str) -> list[Project]:
        rows = self.db.fetchall("""
            SELECT p.*, d.name AS domain_name FROM projects p
            LEFT JOIN domains d ON d.id = p.domain_id
            WHERE p.owner_id = ?
            ORDER BY p.created_at DESC
        """, (owner_id,))
        return [self._row_to_project(r) for r in rows]

    def delete_project(self, project_id: str) -> None:
        """Remove a project and everything under it (sessions, contributions)."""
        with self.db.transaction():
            self.db.execute("""
                DELETE FROM contributions WHERE session_id IN
                (SELECT id FROM sessions WHERE project_id = ?)
            """, (project_id,))
            self.db.execute("DELETE FROM sessions WHERE project_id = ?", (project_id,))
            self.db.execute("DELETE FROM projects WHERE id = ?", (project_id,))

    def _row_to_project(self, row) -> Project:
        return Project(
            id=row["id"],
            owner_id=row["owner_id"],
            project_name=row["project_name"],
            initial_user_prompt=row["initial_user_prompt"],
            process_template_id=row["process_template_id"],
            domain_id=row["domain_id"],
            domain_name=row.get("domain_name"),
            selected_overlay_id=row["selected_overlay_id"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ─── Sessions ────────────────────────────────────────────────────

    def save_session(self, session: Session) -> None:
        self.db.execute("""
            INSERT OR REPLACE INTO sessions
            (id, project_id, current_stage_id, iteration_count, status,
             session_description, associated_chat_id, selected_model_ids,
             created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            session.id, session.project_id, session.current_stage_id,
            session.iteration_count, session.status, session.session_description,
            session.associated_chat_id, json.dumps(session.selected_model_ids),
            session.created_at, session.updated_at,
        ))

    def get_session(self, session_id: str) -> Session | None:
        row = self.db.fetchone("SELECT * FROM sessions WHERE id = ?", (session_id,))
        return self._row_to_session(row) if row else None

    def get_session_for_update(self, session_id: str) -> Session | None:
        row = self.db.fetchone(
            "SELECT * FROM sessions WHERE id = ?" + self.db.for_update(), (session_id,))
        return self._row_to_session(row) if row else None

    def list_sessions(self, project_id: str) -> list[Session]:
        rows = self.db.fetchall(
            "SELECT * FROM sessions WHERE project_id = ? ORDER BY created_at", (project_id,))
        return [self._row_to_session(r) for r in rows]

    def update_session_status(self, session_id: str, status: str) -> None:
        self.db.execute(
            "UPDATE sessions SET status = ?, updated_at = ? WHERE id = ?",
            (status, time.time(), session_id),
        )

    def _row_to_session(self, row) -> Session:
        return Session(
            id=row["id"],
            project_id=row["project_id"],
            current_stage_id=row["current_stage_id"],
            iteration_count=row["iteration_count"],
            status=row["status"],
            session_description=row["session_description"] or "",
            associated_chat_id=row["associated_chat_id"],
            selected_model_ids=json.loads(row["selected_model_ids"] or "[]"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ─── Contributions ───────────────────────────────────────────────

    def insert_contribution(self, c: Contribution) -> None:
        self.db.execute("""
            INSERT INTO contributions
            (id, session_id, stage, iteration_number, model_id, model_name,
             storage_path, file_name, mime_type, raw_response_storage_path,
             size_bytes, tokens_used_input, tokens_used_output, processing_time_ms,
             edit_version, is_latest_edit, original_model_contribution_id,
             target_contribution_id, contribution_type, document_key, job_id,
             user_id, citations, error, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            c.id, c.session_id, c.stage, c.iteration_number, c.model_id, c.model_name,
            c.storage_path, c.file_name, c.mime_type, c.raw_response_storage_path,
            c.size_bytes, c.tokens_used_input, c.tokens_used_output, c.processing_time_ms,
            c.edit_version, int(c.is_latest_edit), c.original_model_contribution_id,
            c.target_contribution_id, c.contribution_type.value, c.document_key, c.job_id,
            c.user_id, json.dumps(c.citations) if c.citations is not None else None,
            c.error, c.created_at,
        ))

    def get_contribution(self, contribution_id: str) -> Contribution | None:
        row = self.db.fetchone("SELECT * FROM contributions WHERE id = ?", (contribution_id,))
        return self._row_to_contribution(row) if row else None

    def list_contributions(
        self,
        session_id: str,
        stage: str | None = None,
        iteration_number: int | None = None,
        latest_only: bool = True,
    ) -> list[Contribution]:
        query = "SELECT * FROM contributions WHERE session_id = ?"
        params: list[Any] = [session_id]
        if stage:
            query += " AND LOWER(stage) = LOWER(?)"
            params.append(stage)
        if iteration_number is not None:
            query += " AND iteration_number = ?"
            params.append(iteration_number)
        if latest_only:
            query += " AND is_latest_edit = 1"
        query += " ORDER BY created_at, id"
        return [self._row_to_contribution(r) for r in self.db.fetchall(query, tuple(params))]

    def save_edit(self, previous: Contribution, edit: Contribution) -> None:
        """Insert `edit` as the new latest version of `previous`'s lineage."""
        with self.db.transaction():
            self.db.execute("""
                UPDATE contributions SET is_latest_edit = 0
                WHERE is_latest_edit = 1 AND session_id = ? AND stage = ?
                  AND (id = ? OR original_model_contribution_id = ?)
            """, (previous.session_id, previous.stage,
                  previous.lineage_root, previous.lineage_root))
            self.insert_contribution(edit)

    def save_continuation(self, previous: Contribution, extended: Contribution) -> None:
        """`extended` carries previous's text plus the next chunk and replaces it as latest."""
        self.save_edit(previous, extended)

    def _row_to_contribution(self, row) -> Contribution:
        return Contribution(
            id=row["id"],
            session_id=row["session_id"],
            stage=row["stage"],
            iteration_number=row["iteration_number"],
            storage_path=row["storage_path"],
            file_name=row["file_name"],
            mime_type=row["mime_type"],
            model_id=row["model_id"],
            model_name=row["model_name"],
            raw_response_storage_path=row["raw_response_storage_path"],
            size_bytes=row["size_bytes"] or 0,
            tokens_used_input=row["tokens_used_input"],
            tokens_used_output=row["tokens_used_output"],
            processing_time_ms=row["processing_time_ms"],
            edit_version=row["edit_version"],
            is_latest_edit=bool(row["is_latest_edit"]),
            original_model_contribution_id=row["original_model_contribution_id"],
            target_contribution_id=row["target_contribution_id"],
            contribution_type=ContributionType(row["contribution_type"]),
            document_key=row["document_key"] or "",
            job_id=row["job_id"],
            user_id=row["user_id"],
            citations=json.loads(row["citations"]) if row["citations"] else None,
            error=row["error"],
            created_at=row["created_at"],
        )
