"""
Dialectic Core — Completion Cascade

Runs whenever a job is written into a terminal status, inside the same
transaction as that write, and decides whether the job's parent PLAN can
move on:

  1. Parent missing, or not waiting_for_children → nothing to do.
  2. Only PLAN and EXECUTE children count. RENDER children never gate
     the parent and their failures never fail it.
  3. All counted children terminal:
       any failed/cancelled  → parent failed
       otherwise             → parent pending_next_step
  4. Some child still open → nothing to do.

The parent write is itself a compare-and-swap on waiting_for_children, so
two siblings finishing at the same moment produce exactly one parent
transition. That write is terminal too, so the cascade climbs the tree
until it reaches a root or a parent that is not waiting.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from dialectic.logging import JobLogger
from scheduler.store import JobStore
from scheduler.types import (
    FAILURE_STATUSES,
    Job,
    JobStatus,
    RECIPE_RELEVANT_TYPES,
)

logger = logging.getLogger("dialectic.cascade")

RootListener = Callable[[Job], None]


@dataclass
class CascadeDecision:
    parent_id: str
    new_status: JobStatus
    child_count: int
    failed_children: list[str] = field(default_factory=list)
    applied: bool = True


class CompletionCascade:
    """Terminal-status hook that settles parents and notifies on roots."""

    def __init__(self, store: JobStore):
        self.store = store
        self._root_listeners: list[RootListener] = []
        store.add_terminal_hook(self.on_terminal)

    def add_root_listener(self, listener: RootListener) -> None:
        """Called (inside the transaction) when a root job reaches a terminal status."""
        self._root_listeners.append(listener)

    def on_terminal(self, job: Job) -> None:
        if job.parent_job_id:
            self.evaluate_parent(job.parent_job_id)
            return
        for listener in self._root_listeners:
            listener(job)

    def evaluate_parent(self, parent_id: str) -> CascadeDecision | None:
        """
        Settle `parent_id` if all of its recipe-relevant children are done.
        Safe to call any number of times: once the parent has left
        waiting_for_children this is a no-op.
        """
        with self.store.transaction():
            parent = self.store.get_job_for_update(parent_id)
            if parent is None or parent.status != JobStatus.WAITING_FOR_CHILDREN:
                return None

            children = self.store.list_children(parent_id, RECIPE_RELEVANT_TYPES)
            open_children = [c.id for c in children if not c.is_terminal]
            if open_children:
                logger.debug("Parent %s still waiting on %d child(ren)",
                             parent_id, len(open_children))
                return None

            failed = [c.id for c in children if c.status in FAILURE_STATUSES]
            if failed:
                new_status = JobStatus.FAILED
                error = {
                    "code": "CHILD_JOBS_FAILED",
                    "message": f"{len(failed)} of {len(children)} child job(s) did not complete",
                    "failed_children": failed,
                }
            else:
                new_status = JobStatus.PENDING_NEXT_STEP
                error = None

            applied = self.store.set_status(
                parent_id, new_status, JobStatus.WAITING_FOR_CHILDREN,
                error_details=error,
            )
            decision = CascadeDecision(
                parent_id=parent_id,
                new_status=new_status,
                child_count=len(children),
                failed_children=failed,
                applied=applied,
            )
            if not applied:
                return decision

            self.store.log_event(
                parent_id, parent.session_id, "cascade_transition",
                {
                    "from": JobStatus.WAITING_FOR_CHILDREN.value,
                    "to": new_status.value,
                    "children": [c.id for c in children],
                    "failed_children": failed,
                },
                idempotency_key=f"cascade:{parent_id}:{new_status.value}",
            )
            JobLogger.for_job(parent).on_cascade_decision(
                parent_id, new_status.value, len(children), len(failed))
            return decision
