"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterator
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from phaseflow.config import EngineSettings, Settings, ToolSettings
from phaseflow.generation.base import GenerationRequest
from phaseflow.workflow.engine import WorkflowEngine
from phaseflow.workflow.models import TaskLogEntry, TaskView
from phaseflow.workflow.notifications import NotificationDispatcher
from phaseflow.workflow.repository import TaskRepository

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m phaseflow.generation.echo_agent --request-file {{request_file}}"
)


class ScriptedGeneration:
    """Generation fake answering from a per-step script.

    ``script`` maps a step ordinal to a list of outcomes consumed in order; the
    last outcome of a list repeats. Steps without a script get ``default``.
    Outcomes may be exceptions (raised) or callables taking the request.
    """

    def __init__(
        self,
        script: dict[int, list[Any]] | None = None,
        *,
        default: Any = None,
    ) -> None:
        self.script = {step: list(outcomes) for step, outcomes in (script or {}).items()}
        self.default = default
        self.requests: list[GenerationRequest] = []

    def invoke(self, request: GenerationRequest) -> Any:
        self.requests.append(request)
        queue = self.script.get(request.context.step)
        if queue:
            outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        else:
            outcome = self.default
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(request)
        return outcome

    @property
    def steps(self) -> list[int]:
        return [request.context.step for request in self.requests]


class RecordingSink:
    """Notification sink keeping every call as ``(event, task_id, extra)``."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def names(self, task_id: str | None = None) -> list[str]:
        return [name for name, event_task, _ in self.events if task_id in (None, event_task)]

    def task_created(self, task: TaskView) -> None:
        self.events.append(("task_created", task.task_id, {}))

    def task_updated(self, task: TaskView) -> None:
        self.events.append(
            ("task_updated", task.task_id, {"status": task.status, "step": task.current_step}),
        )

    def task_completed(self, task: TaskView, *, duration_seconds: float) -> None:
        self.events.append(("task_completed", task.task_id, {"duration": duration_seconds}))

    def task_log_added(self, task_id: str, entry: TaskLogEntry) -> None:
        self.events.append(("task_log_added", task_id, {"message": entry.message}))

    def step_completed(self, task: TaskView, *, step: int, result: str | None) -> None:
        self.events.append(("step_completed", task.task_id, {"step": step, "result": result}))

    def step_rejected(
        self,
        task: TaskView,
        *,
        step: int,
        reason: str,
        restart_step: int,
    ) -> None:
        self.events.append(
            (
                "step_rejected",
                task.task_id,
                {"step": step, "reason": reason, "restart_step": restart_step},
            ),
        )


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[TaskRepository]:
    repo = TaskRepository(tmp_path / "phaseflow.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def make_engine(
    repository: TaskRepository,
    sink: RecordingSink,
    tmp_path: Path,
) -> Callable[..., WorkflowEngine]:
    """Factory building an engine around a generation fake."""

    workspace = tmp_path / "workspace"
    workspace.mkdir(exist_ok=True)

    def _make(generation: Any, **engine_kwargs: Any) -> WorkflowEngine:
        return WorkflowEngine(
            repository=repository,
            generation=generation,
            notifications=NotificationDispatcher([sink]),
            engine_settings=EngineSettings(**engine_kwargs),
            tool_settings=ToolSettings(workspace_root=workspace),
        )

    return _make


@pytest.fixture()
def echo_agent(monkeypatch, tmp_path: Path):
    """Monkeypatch Settings.from_env to drive phases through the echo agent."""

    original_from_env = Settings.from_env
    workdir_root = tmp_path / "workdir"
    workspace_root = tmp_path / "workspace"
    workspace_root.mkdir(exist_ok=True)

    def _patched_from_env(db_path=None):
        settings = original_from_env(db_path=db_path)
        generation = replace(
            settings.generation,
            command_template=ECHO_AGENT_COMMAND_TEMPLATE,
            workdir_root=workdir_root,
        )
        tools = replace(settings.tools, workspace_root=workspace_root)
        return replace(settings, generation=generation, tools=tools)

    monkeypatch.setattr(Settings, "from_env", staticmethod(_patched_from_env))
    return workdir_root


@pytest.fixture()
def scripted() -> type[ScriptedGeneration]:
    return ScriptedGeneration
