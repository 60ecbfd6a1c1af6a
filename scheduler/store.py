"""
Dialectic Core — Job Store

Persistence for jobs and the job ledger. Every status write is a
compare-and-swap on the current status: it succeeds only if the row
still holds `expected`, otherwise it reports a conflict and leaves the
row alone. Writes into a terminal status run the registered terminal
hooks (the completion cascade) inside the same transaction.

Usage:
    store = JobStore(create_backend("sqlite", path=":memory:"))
    job = store.create_job(JobType.PLAN, session_id, "thesis", 1, payload)
    if store.set_status(job.id, JobStatus.PROCESSING, JobStatus.PENDING):
        ...
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Iterable

from dialectic.db import DatabaseBackend
from dialectic.errors import InvalidTransitionError, NotFoundError
from dialectic.logging import JobLogger
from scheduler.types import (
    Job,
    JobPayload,
    JobStatus,
    JobType,
    TERMINAL_STATUSES,
    TRANSITIONS,
    is_legal_transition,
    payload_to_dict,
)

logger = logging.getLogger("dialectic.store")

TerminalHook = Callable[[Job], None]


class JobStore:
    """Job rows, status CAS and the append-only job ledger."""

    def __init__(self, db: DatabaseBackend):
        self.db = db
        self._terminal_hooks: list[TerminalHook] = []
        self._create_tables()

    def transaction(self):
        """
        Explicit transaction boundary. Nested calls join the outer one.

            with store.transaction():
                store.create_job(...)
                store.set_status(...)
        """
        return self.db.transaction()

    def add_terminal_hook(self, hook: TerminalHook) -> None:
        """Register a callback run for every job written into a terminal status."""
        self._terminal_hooks.append(hook)

    def _create_tables(self):
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                stage_slug TEXT NOT NULL,
                iteration_number INTEGER NOT NULL DEFAULT 1,
                job_type TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                parent_job_id TEXT,
                payload TEXT NOT NULL DEFAULT '{}',
                owner_id TEXT DEFAULT '',
                error_details TEXT,
                worker_id TEXT DEFAULT '',
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                started_at REAL,
                completed_at REAL
            );

            CREATE TABLE IF NOT EXISTS job_ledger (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                session_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                details TEXT NOT NULL,
                idempotency_key TEXT UNIQUE,
                created_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
            CREATE INDEX IF NOT EXISTS idx_jobs_parent ON jobs(parent_job_id);
            CREATE INDEX IF NOT EXISTS idx_jobs_session ON jobs(session_id);
            CREATE INDEX IF NOT EXISTS idx_ledger_job ON job_ledger(job_id);
            CREATE INDEX IF NOT EXISTS idx_ledger_session ON job_ledger(session_id);
        """)

    # ─── Job CRUD ────────────────────────────────────────────────────

    def create_job(
        self,
        job_type: JobType,
        session_id: str,
        stage_slug: str,
        iteration_number: int,
        payload: JobPayload | dict[str, Any],
        parent_job_id: str | None = None,
        owner_id: str = "",
    ) -> Job:
        job = Job.create(
            job_type, session_id, stage_slug, iteration_number, payload,
            parent_job_id=parent_job_id, owner_id=owner_id,
        )
        self.insert_job(job)
        logger.debug("Created %s job %s (parent=%s)", job_type.value, job.id, parent_job_id)
        return job

    def insert_job(self, job: Job) -> None:
        self.db.execute("""
            INSERT INTO jobs
            (id, session_id, stage_slug, iteration_number, job_type, status,
             parent_job_id, payload, owner_id, error_details, worker_id,
             created_at, updated_at, started_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            job.id, job.session_id, job.stage_slug, job.iteration_number,
            job.job_type.value, job.status.value, job.parent_job_id,
            json.dumps(job.payload, default=str), job.owner_id,
            json.dumps(job.error_details) if job.error_details else None,
            job.worker_id, job.created_at, job.updated_at,
            job.started_at, job.completed_at,
        ))

    def get_job(self, job_id: str) -> Job | None:
        row = self.db.fetchone("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return self._row_to_job(row) if row else None

    def get_job_for_update(self, job_id: str) -> Job | None:
        """Read a job under a row lock. Call inside transaction()."""
        row = self.db.fetchone(
            "SELECT * FROM jobs WHERE id = ?" + self.db.for_update(), (job_id,))
        return self._row_to_job(row) if row else None

    def list_children(
        self,
        parent_id: str,
        job_types: Iterable[JobType] | None = None,
    ) -> list[Job]:
        query = "SELECT * FROM jobs WHERE parent_job_id = ?"
        params: list[Any] = [parent_id]
        if job_types is not None:
            types = [t.value for t in job_types]
            query += f" AND job_type IN ({', '.join('?' for _ in types)})"
            params.extend(types)
        query += " ORDER BY created_at, id"
        return [self._row_to_job(r) for r in self.db.fetchall(query, tuple(params))]

    def list_jobs(
        self,
        session_id: str | None = None,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        limit: int = 500,
    ) -> list[Job]:
        query = "SELECT * FROM jobs WHERE 1=1"
        params: list[Any] = []
        if session_id:
            query += " AND session_id = ?"
            params.append(session_id)
        if status:
            query += " AND status = ?"
            params.append(status.value)
        if job_type:
            query += " AND job_type = ?"
            params.append(job_type.value)
        query += " ORDER BY created_at, id LIMIT ?"
        params.append(limit)
        return [self._row_to_job(r) for r in self.db.fetchall(query, tuple(params))]

    def update_payload(self, job_id: str, payload: JobPayload | dict[str, Any]) -> None:
        if not isinstance(payload, dict):
            payload = payload_to_dict(payload)
        self.db.execute(
            "UPDATE jobs SET payload = ?, updated_at = ? WHERE id = ?",
            (json.dumps(payload, default=str), time.time(), job_id),
        )

    def _row_to_job(self, row) -> Job:
        return Job(
            id=row["id"],
            session_id=row["session_id"],
            stage_slug=row["stage_slug"],
            iteration_number=row["iteration_number"],
            job_type=JobType(row["job_type"]),
            status=JobStatus(row["status"]),
            payload=json.loads(row["payload"]) if row["payload"] else {},
            parent_job_id=row["parent_job_id"],
            owner_id=row["owner_id"] or "",
            error_details=json.loads(row["error_details"]) if row["error_details"] else None,
            worker_id=row["worker_id"] or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    # ─── Status CAS ──────────────────────────────────────────────────

    def set_status(
        self,
        job_id: str,
        new_status: JobStatus,
        expected_status: JobStatus,
        error_details: dict[str, Any] | None = None,
        worker_id: str | None = None,
    ) -> bool:
        """
        Conditional status write. Returns False when the row no longer
        holds `expected_status` (another writer got there first).

        Raises InvalidTransitionError for edges outside the transition
        graph and NotFoundError for unknown jobs. A write into a terminal
        status runs the terminal hooks before the transaction commits.
        """
        with self.db.transaction():
            job = self.get_job_for_update(job_id)
            if job is None:
                raise NotFoundError(f"Job '{job_id}' not found")
            if not is_legal_transition(job.job_type, expected_status, new_status, job.is_root):
                raise InvalidTransitionError(
                    f"Illegal transition {expected_status.value} -> {new_status.value} "
                    f"for {job.job_type.value} job {job_id}",
                    details={"job_id": job_id, "current": job.status.value},
                )
            if job.status != expected_status:
                logger.debug(
                    "Status conflict on %s: expected %s, found %s",
                    job_id, expected_status.value, job.status.value,
                )
                return False

            now = time.time()
            started_at = job.started_at
            completed_at = job.completed_at
            if new_status == JobStatus.PROCESSING:
                started_at = started_at or now
                completed_at = None
            elif new_status in TERMINAL_STATUSES:
                completed_at = now

            self.db.execute("""
                UPDATE jobs SET status = ?, updated_at = ?, started_at = ?,
                    completed_at = ?, error_details = COALESCE(?, error_details),
                    worker_id = COALESCE(?, worker_id)
                WHERE id = ? AND status = ?
            """, (
                new_status.value, now, started_at, completed_at,
                json.dumps(error_details, default=str) if error_details else None,
                worker_id, job_id, expected_status.value,
            ))
            if self.db.rowcount != 1:
                return False

            job.status = new_status
            job.updated_at = now
            job.started_at = started_at
            job.completed_at = completed_at
            if error_details:
                job.error_details = error_details
            JobLogger.for_job(job).on_status_change(expected_status.value, new_status.value)

            if new_status in TERMINAL_STATUSES:
                for hook in self._terminal_hooks:
                    hook(job)
        return True

    def claim_next(self, worker_id: str, job_types: Iterable[JobType] | None = None) -> Job | None:
        """
        Claim the oldest pending job, falling back to a root PLAN waiting
        to plan its next step. Lost races skip to the next candidate.
        """
        query = "SELECT id, status FROM jobs WHERE status = ?"
        params: list[Any] = [JobStatus.PENDING.value]
        if job_types is not None:
            types = [t.value for t in job_types]
            query += f" AND job_type IN ({', '.join('?' for _ in types)})"
            params.extend(types)
        query += " ORDER BY created_at, id LIMIT 20"
        for row in self.db.fetchall(query, tuple(params)):
            if self.set_status(row["id"], JobStatus.PROCESSING, JobStatus.PENDING, worker_id=worker_id):
                return self.get_job(row["id"])

        if job_types is None or JobType.PLAN in set(job_types):
            return self.claim_resumable_plan(worker_id)
        return None

    def claim_resumable_plan(self, worker_id: str) -> Job | None:
        rows = self.db.fetchall("""
            SELECT id FROM jobs
            WHERE status = ? AND job_type = ? AND parent_job_id IS NULL
            ORDER BY updated_at, id LIMIT 20
        """, (JobStatus.PENDING_NEXT_STEP.value, JobType.PLAN.value))
        for row in rows:
            if self.set_status(
                row["id"], JobStatus.PROCESSING, JobStatus.PENDING_NEXT_STEP,
                worker_id=worker_id,
            ):
                return self.get_job(row["id"])
        return None

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a job that has not finished. Returns False if already terminal."""
        job = self.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job '{job_id}' not found")
        if JobStatus.CANCELLED not in TRANSITIONS[job.status]:
            return False
        return self.set_status(job_id, JobStatus.CANCELLED, job.status)

    # ─── Job Ledger ──────────────────────────────────────────────────

    def log_event(
        self,
        job_id: str,
        session_id: str,
        event_type: str,
        details: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> bool:
        """
        Append to the ledger. Returns False if the idempotency key already
        exists, so each keyed event is recorded exactly once.
        """
        cursor = self.db.execute("""
            INSERT INTO job_ledger
            (job_id, session_id, event_type, details, idempotency_key, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (idempotency_key) DO NOTHING
        """, (
            job_id, session_id, event_type,
            json.dumps(details, default=str), idempotency_key, time.time(),
        ))
        return cursor.rowcount == 1

    def get_ledger(
        self,
        job_id: str | None = None,
        session_id: str | None = None,
        event_type: str | None = None,
    ) -> list[dict[str, Any]]:
        query = "SELECT * FROM job_ledger WHERE 1=1"
        params: list[Any] = []
        if job_id:
            query += " AND job_id = ?"
            params.append(job_id)
        if session_id:
            query += " AND session_id = ?"
            params.append(session_id)
        if event_type:
            query += " AND event_type = ?"
            params.append(event_type)
        query += " ORDER BY id"
        return [
            {
                "id": r["id"],
                "job_id": r["job_id"],
                "session_id": r["session_id"],
                "event_type": r["event_type"],
                "details": json.loads(r["details"]),
                "idempotency_key": r["idempotency_key"],
                "created_at": r["created_at"],
            }
            for r in self.db.fetchall(query, tuple(params))
        ]

    # ─── Statistics ──────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        by_status = {
            r["status"]: r["n"]
            for r in self.db.fetchall("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status")
        }
        by_type = {
            r["job_type"]: r["n"]
            for r in self.db.fetchall("SELECT job_type, COUNT(*) AS n FROM jobs GROUP BY job_type")
        }
        ledger = self.db.fetchone("SELECT COUNT(*) AS n FROM job_ledger")
        return {
            "jobs": by_status,
            "job_types": by_type,
            "total_jobs": sum(by_status.values()),
            "ledger_entries": ledger["n"] if ledger else 0,
        }

    def find_stuck_jobs(self, max_processing_seconds: float = 900) -> list[Job]:
        """Jobs in processing longer than the threshold (dead worker)."""
        cutoff = time.time() - max_processing_seconds
        rows = self.db.fetchall(
            "SELECT * FROM jobs WHERE status = ? AND updated_at < ? ORDER BY updated_at",
            (JobStatus.PROCESSING.value, cutoff),
        )
        return [self._row_to_job(r) for r in rows]

    def delete_session_jobs(self, session_ids: list[str]) -> int:
        """Remove every job and ledger row of the given sessions."""
        if not session_ids:
            return 0
        marks = ", ".join("?" for _ in session_ids)
        with self.db.transaction():
            self.db.execute(f"DELETE FROM job_ledger WHERE session_id IN ({marks})", tuple(session_ids))
            self.db.execute(f"DELETE FROM jobs WHERE session_id IN ({marks})", tuple(session_ids))
            return self.db.rowcount
