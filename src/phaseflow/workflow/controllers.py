"""Controllers for workflow CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from phaseflow.config import Settings
from phaseflow.generation import CliGenerationService
from phaseflow.workflow.continuity import ordered_results, render_digest
from phaseflow.workflow.engine import WorkflowEngine
from phaseflow.workflow.models import RunSummary, TaskCreate, TaskStatus, WorkflowVariant
from phaseflow.workflow.notifications import (
    LoggingNotificationSink,
    NotificationDispatcher,
    TaskEventNotificationSink,
)
from phaseflow.workflow.phases import phase_count
from phaseflow.workflow.repository import TaskRepository

_RESULT_PREVIEW_CHARS = 120


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    db_path: Path | None
    title: str
    plan: str
    description: str
    workflow_variant: str
    parent_task_id: str | None


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    parent_task_id: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskRunCommand:
    """CLI input for running a task."""

    db_path: Path | None
    task_id: str
    budget: int | None = None


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for pause/cancel/resume operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskDigestCommand:
    """CLI input for rendering the continuity digest."""

    db_path: Path | None
    task_id: str
    upto_step: int | None


class WorkflowCliController:
    """Turns CLI commands into repository and engine calls."""

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            engine = _engine(settings, repository)
            task = engine.create_task(
                TaskCreate(
                    title=command.title,
                    plan=command.plan,
                    description=command.description,
                    workflow_variant=WorkflowVariant(command.workflow_variant),
                    parent_task_id=command.parent_task_id,
                ),
            )
        return [
            f"Task created: {task.task_id}",
            f"Workflow: {task.workflow_variant.value} "
            f"({phase_count(task.workflow_variant)} steps)",
            f"Parent: {task.parent_task_id or '-'}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                status=TaskStatus(command.status) if command.status else None,
                parent_task_id=command.parent_task_id,
                limit=command.limit,
            )
        if not tasks:
            return ["No tasks found."]
        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            total = phase_count(task.workflow_variant)
            lines.append(
                f"{task.task_id} {task.status.value} "
                f"step={task.current_step}/{total} "
                f"variant={task.workflow_variant.value} "
                f"parent={task.parent_task_id or '-'} "
                f"title={task.title or '--'}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
            children = repository.list_children(parent_task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        total = phase_count(task.workflow_variant)
        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title or '--'}",
            f"Status: {task.status.value}",
            f"Workflow: {task.workflow_variant.value}",
            f"Step: {task.current_step}/{total}",
            f"Parent: {task.parent_task_id or '-'}",
            f"Children: {len(children)}",
            f"Step results: {len(task.step_results)}",
        ]
        for step, text in ordered_results(task.step_results):
            preview = text.replace("\n", " ")[:_RESULT_PREVIEW_CHARS]
            lines.append(f"  step {step}: {preview}")
        lines.append(f"Log entries: {len(task.log)}")
        for entry in task.log:
            lines.append(f"  {entry.created_at.isoformat()} {entry.message}")
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def run_task(self, command: TaskRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_generation()
        with _repository(settings) as repository:
            engine = _engine(settings, repository)
            summary = engine.run(command.task_id, budget=command.budget)
        return _summary_lines(summary)

    def pause_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.pause_task(task_id=command.task_id)
        return [f"Paused task: {task.task_id}"]

    def cancel_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.cancel_task(task_id=command.task_id)
        return [f"Cancelled task: {task.task_id}"]

    def resume_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.resume_task(task_id=command.task_id)
        return [f"Resumed task: {task.task_id} (status={task.status.value})"]

    def digest(self, command: TaskDigestCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.get_task(task_id=command.task_id)
        if task is None:
            return [f"Task not found: {command.task_id}"]
        upto_step = command.upto_step or task.current_step + 1
        return render_digest(task.step_results, upto_step).splitlines()


def _summary_lines(summary: RunSummary, *, indent: str = "") -> list[str]:
    lines = [
        f"{indent}Task: {summary.task_id}",
        f"{indent}Status: {summary.status.value}",
        f"{indent}Step: {summary.current_step}",
        f"{indent}Phases executed: {summary.phases_executed}",
        f"{indent}Stopped: {summary.stop_reason or '-'}",
    ]
    for child in summary.children:
        lines.extend(_summary_lines(child, indent=f"{indent}  "))
    for child_id, error in summary.child_errors.items():
        lines.append(f"{indent}  Child {child_id} error: {error}")
    return lines


def _engine(settings: Settings, repository: TaskRepository) -> WorkflowEngine:
    return WorkflowEngine(
        repository=repository,
        generation=CliGenerationService(
            command_template=settings.generation.command_template,
            workdir_root=settings.generation.workdir_root,
            transient_exit_codes=settings.generation.transient_exit_codes,
            keep_workdir=settings.generation.keep_workdir,
        ),
        notifications=NotificationDispatcher(
            [LoggingNotificationSink(), TaskEventNotificationSink(repository)],
        ),
        engine_settings=settings.engine,
        generation_settings=settings.generation,
        tool_settings=settings.tools,
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
