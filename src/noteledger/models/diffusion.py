"""Pydantic models for diffusion (secondary refinement) tasks."""

from enum import Enum

from pydantic import BaseModel, Field


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMMITTED = "committed"
    ABORTED = "aborted"


class RejectReason(str, Enum):
    CONCURRENCY_LIMIT = "concurrency_limit"
    BUDGET_EXHAUSTED = "budget_exhausted"


class DiffusionTask(BaseModel):
    """Ephemeral unit of scheduled refinement work.

    Owned by the supervisor. `ledger_cursor` is fixed at schedule time and
    bounds every read the task makes.
    """

    task_id: str
    session_id: str
    ledger_cursor: int = Field(description="Highest sequence the task may read (-1 for empty)")
    status: TaskStatus = Field(default=TaskStatus.QUEUED)
    cost_spent: float = Field(default=0.0)
    error: str | None = Field(default=None)
    committed_sequences: list[int] = Field(default_factory=list)

    model_config = {"frozen": False}

    @property
    def is_finished(self) -> bool:
        return self.status in (TaskStatus.COMMITTED, TaskStatus.ABORTED)


class Rejected(BaseModel):
    """Returned by schedule() instead of a task."""

    session_id: str
    reason: RejectReason

    model_config = {"frozen": True}
