"""Domain models for workflow tasks and phase outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    FAILED = "failed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    INVALID = "invalid"

    @property
    def is_halted(self) -> bool:
        return self in HALTED_STATUSES


HALTED_STATUSES = frozenset(
    {
        TaskStatus.CANCELLED,
        TaskStatus.PAUSED,
        TaskStatus.FAILED,
        TaskStatus.INVALID,
    },
)


class WorkflowVariant(str, Enum):
    """Supported phase pipelines."""

    FULL = "full"
    SIMPLE = "simple"
    ANALYSIS = "analysis"


class AccessClass(str, Enum):
    """Tool access allowed during one phase."""

    READ_ONLY = "read_only"
    FULL = "full"


class OutcomeCategory(str, Enum):
    """Normalized categories of one generation outcome."""

    SUCCESS = "success"
    STEP_COMPLETED = "step_completed"
    STEP_REJECTED = "step_rejected"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    CONTEXT_LENGTH_ERROR = "context_length_error"
    RATE_LIMIT_ERROR = "rate_limit_error"
    EMPTY_RESPONSE = "empty_response"
    UNKNOWN = "unknown"

    @property
    def is_retryable(self) -> bool:
        return self in RETRYABLE_CATEGORIES


RETRYABLE_CATEGORIES = frozenset(
    {
        OutcomeCategory.TIMEOUT,
        OutcomeCategory.NETWORK_ERROR,
        OutcomeCategory.CONTEXT_LENGTH_ERROR,
        OutcomeCategory.RATE_LIMIT_ERROR,
        OutcomeCategory.EMPTY_RESPONSE,
        OutcomeCategory.UNKNOWN,
    },
)


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a workflow task."""

    title: str = ""
    plan: str = ""
    description: str = ""
    workflow_variant: WorkflowVariant = WorkflowVariant.FULL
    parent_task_id: str | None = None


@dataclass(slots=True)
class TaskLogEntry:
    """One appended progress message."""

    message: str
    created_at: datetime


@dataclass(slots=True)
class TaskView:
    """Readable task view for the engine and CLI."""

    task_id: str
    title: str
    plan: str
    description: str
    status: TaskStatus
    workflow_variant: WorkflowVariant
    current_step: int
    step_results: dict[str, str]
    parent_task_id: str | None
    created_at: datetime
    updated_at: datetime
    log: list[TaskLogEntry] = field(default_factory=list)

    @property
    def is_halted(self) -> bool:
        return self.status.is_halted


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True, frozen=True)
class Advance:
    """Phase finished through the completion signal."""

    step: int
    result: str | None = None


@dataclass(slots=True, frozen=True)
class Rewind:
    """Phase rejected; the pointer moves back to ``restart_step``."""

    step: int
    reason: str
    restart_step: int

    @property
    def diagnostic(self) -> str:
        return f"REJECTED: {self.reason}"


@dataclass(slots=True, frozen=True)
class RetryLater:
    """Transient outcome; the same step should be invoked again later."""

    step: int
    category: OutcomeCategory
    diagnostic: str


@dataclass(slots=True, frozen=True)
class Fatal:
    """Unrecoverable outcome; the task fails."""

    step: int
    diagnostic: str


@dataclass(slots=True, frozen=True)
class NoProgress:
    """Response without any control signal; the pointer stays put."""

    step: int
    provisional_result: str


StepOutcome = Advance | Rewind | RetryLater | Fatal | NoProgress


@dataclass(slots=True)
class RunSummary:
    """Result of one ``WorkflowEngine.run`` call."""

    task_id: str
    status: TaskStatus
    current_step: int
    phases_executed: int = 0
    stop_reason: str = ""
    children: list[RunSummary] = field(default_factory=list)
    child_errors: dict[str, str] = field(default_factory=dict)
