"""Typed errors raised by the workflow engine and its collaborators."""

from __future__ import annotations

from phaseflow.workflow.models import OutcomeCategory, TaskStatus


class WorkflowError(RuntimeError):
    """Base class for workflow errors."""


class TaskNotFoundError(WorkflowError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskHaltedError(WorkflowError):
    """Task status forbids executing further phases."""

    def __init__(self, task_id: str, status: TaskStatus) -> None:
        super().__init__(f"Task {task_id} is halted with status={status.value}")
        self.task_id = task_id
        self.status = status


class TaskCancelledError(TaskHaltedError):
    pass


class TaskStateError(TaskHaltedError):
    """Task is paused, failed or invalid."""


class RetryableStepError(WorkflowError):
    """Phase stopped on a transient outcome; invoke ``run`` again later."""

    def __init__(
        self,
        *,
        task_id: str,
        step: int,
        category: OutcomeCategory,
        diagnostic: str,
    ) -> None:
        super().__init__(diagnostic)
        self.task_id = task_id
        self.step = step
        self.category = category
        self.diagnostic = diagnostic


class FatalStepError(WorkflowError):
    """Phase failed; the task has been marked failed."""

    def __init__(self, *, task_id: str, step: int, diagnostic: str) -> None:
        super().__init__(diagnostic)
        self.task_id = task_id
        self.step = step
        self.diagnostic = diagnostic


class UnknownWorkflowVariantError(ValueError):
    pass


class UnknownToolError(WorkflowError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class ToolArgumentError(WorkflowError):
    """Tool call arguments do not match the declared parameter schema."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name


def halted_error(task_id: str, status: TaskStatus) -> TaskHaltedError:
    """Typed error matching the halted status."""

    if status == TaskStatus.CANCELLED:
        return TaskCancelledError(task_id, status)
    return TaskStateError(task_id, status)


class GenerationError(WorkflowError):
    """Generation service error with the outcome category it represents."""

    def __init__(self, message: str, *, category: OutcomeCategory) -> None:
        super().__init__(message)
        self.category = category
