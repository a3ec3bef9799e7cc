"""Workflow engine: owns the task lifecycle and the phase loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from phaseflow.config import EngineSettings, GenerationSettings, ToolSettings
from phaseflow.generation.base import GenerationService
from phaseflow.storage.common import utc_now
from phaseflow.workflow.continuity import ContextContinuity
from phaseflow.workflow.errors import (
    FatalStepError,
    RetryableStepError,
    TaskHaltedError,
    TaskNotFoundError,
    halted_error,
)
from phaseflow.workflow.executor import StepExecutor, ToolFactory
from phaseflow.workflow.models import (
    Advance,
    Fatal,
    NoProgress,
    RetryLater,
    Rewind,
    RunSummary,
    StepOutcome,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from phaseflow.workflow.notifications import NotificationDispatcher
from phaseflow.workflow.phases import clamp, phase_count
from phaseflow.workflow.repository import TaskRepository
from phaseflow.workflow.tools import ToolRegistry, build_task_tools

logger = logging.getLogger(__name__)

STOP_COMPLETED = "completed"
STOP_NO_PROGRESS = "no_progress"
STOP_HALTED = "halted"
STOP_INVOCATION_CAP = "invocation_cap"


@dataclass(slots=True)
class RecursionBudget:
    """Number of nested ``run`` calls left for a whole task tree."""

    remaining: int

    def consume(self) -> bool:
        if self.remaining <= 0:
            self.remaining = 0
            return False
        self.remaining -= 1
        return True


class WorkflowEngine:
    """Drives tasks phase by phase and then runs their children."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        generation: GenerationService,
        notifications: NotificationDispatcher | None = None,
        engine_settings: EngineSettings | None = None,
        generation_settings: GenerationSettings | None = None,
        tool_settings: ToolSettings | None = None,
        tool_factory: ToolFactory | None = None,
    ) -> None:
        self.repository = repository
        self.notifications = notifications or NotificationDispatcher()
        self.settings = engine_settings or EngineSettings()
        self.tool_settings = tool_settings or ToolSettings()
        generation_settings = generation_settings or GenerationSettings()
        self.continuity = ContextContinuity(repository)
        self.executor = StepExecutor(
            continuity=self.continuity,
            generation=generation,
            tool_factory=tool_factory or self._default_tools,
            normal_timeout_seconds=generation_settings.timeout_seconds,
            extended_timeout_seconds=generation_settings.extended_timeout_seconds,
        )

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Persist a new pending task and announce it."""

        task = self.repository.create_task(payload)
        self.notifications.task_created(task)
        self._log(task.task_id, f"Task created ({task.workflow_variant.value} workflow)")
        return task

    def run(self, task_id: str, *, budget: RecursionBudget | int | None = None) -> RunSummary:
        """Run ``task_id`` until it completes, stalls or fails, then its children.

        Raises ``TaskNotFoundError`` for unknown ids, a ``TaskHaltedError``
        subclass for halted tasks, ``RetryableStepError`` when a phase should be
        retried later and ``FatalStepError`` after marking the task failed.
        """

        if budget is None:
            budget = RecursionBudget(max(0, self.settings.recursion_budget))
        elif isinstance(budget, int):
            budget = RecursionBudget(max(0, budget))

        task = self._load(task_id)
        if task.is_halted:
            raise halted_error(task.task_id, task.status)

        summary = RunSummary(
            task_id=task.task_id,
            status=task.status,
            current_step=task.current_step,
        )
        if task.status == TaskStatus.COMPLETED:
            summary.stop_reason = STOP_COMPLETED
        else:
            task = self._activate(task)
            task = self._run_phases(task, summary)

        if task.status == TaskStatus.COMPLETED:
            self._run_children(task, budget, summary)

        summary.status = task.status
        summary.current_step = task.current_step
        return summary

    def evaluate(self, task_id: str) -> int:
        """Progress percentage of ``task_id``."""

        task = self._load(task_id)
        total = phase_count(task.workflow_variant)
        return round(clamp(task.current_step, 0, total) / total * 100)

    def _run_phases(self, task: TaskView, summary: RunSummary) -> TaskView:
        total = phase_count(task.workflow_variant)
        invocations = 0
        while True:
            if task.current_step >= total:
                summary.stop_reason = STOP_COMPLETED
                return self._complete(task, total)
            if invocations >= self.settings.max_phase_invocations:
                logger.warning(
                    "Task %s reached %d phase invocations in one run; stopping",
                    task.task_id,
                    invocations,
                )
                self._log(task.task_id, f"Stopped after {invocations} phase invocations")
                summary.stop_reason = STOP_INVOCATION_CAP
                return task

            outcome = self.executor.execute(task, task.current_step + 1)
            invocations += 1
            summary.phases_executed += 1
            if not self._apply(task, outcome, total):
                summary.stop_reason = STOP_NO_PROGRESS
                return self._load(task.task_id)

            task = self._load(task.task_id)
            if task.is_halted:
                logger.info("Task %s halted with status=%s", task.task_id, task.status.value)
                summary.stop_reason = STOP_HALTED
                return task

    def _apply(self, task: TaskView, outcome: StepOutcome, total: int) -> bool:
        """Apply ``outcome`` to the task; ``False`` means the loop should stop."""

        if isinstance(outcome, Advance):
            if outcome.result:
                self.continuity.store(task.task_id, outcome.step, outcome.result)
            updated = self.repository.update_task(
                task_id=task.task_id,
                current_step=clamp(outcome.step, 0, total),
            )
            self._log(task.task_id, f"Step {outcome.step} completed")
            self.notifications.step_completed(updated, step=outcome.step, result=outcome.result)
            self.notifications.task_updated(updated)
            return True

        if isinstance(outcome, Rewind):
            restart_step = clamp(outcome.restart_step, 1, total)
            # A rejected step is never counted as passed.
            pointer = min(restart_step, outcome.step - 1)
            self.continuity.store(task.task_id, outcome.step, outcome.diagnostic)
            updated = self.repository.update_task(
                task_id=task.task_id,
                current_step=clamp(pointer, 0, total),
            )
            self._log(
                task.task_id,
                f"Step {outcome.step} rejected: {outcome.reason}. "
                f"Restarting from step {restart_step}",
            )
            self.notifications.step_rejected(
                updated,
                step=outcome.step,
                reason=outcome.reason,
                restart_step=restart_step,
            )
            self.notifications.task_updated(updated)
            return True

        if isinstance(outcome, NoProgress):
            self.continuity.store(task.task_id, outcome.step, outcome.provisional_result)
            self._log(
                task.task_id,
                f"Step {outcome.step} responded without a completion signal; waiting",
            )
            logger.info("Task %s step %d made no progress", task.task_id, outcome.step)
            return False

        if isinstance(outcome, RetryLater):
            self.continuity.store(task.task_id, outcome.step, outcome.diagnostic)
            self._log(task.task_id, outcome.diagnostic)
            logger.warning(
                "Task %s step %d needs retry (%s): %s",
                task.task_id,
                outcome.step,
                outcome.category.value,
                outcome.diagnostic,
            )
            raise RetryableStepError(
                task_id=task.task_id,
                step=outcome.step,
                category=outcome.category,
                diagnostic=outcome.diagnostic,
            )

        if isinstance(outcome, Fatal):
            self.continuity.store(task.task_id, outcome.step, outcome.diagnostic)
            updated = self.repository.update_task(task_id=task.task_id, status=TaskStatus.FAILED)
            self._log(task.task_id, outcome.diagnostic)
            self.notifications.task_updated(updated)
            logger.error(
                "Task %s failed at step %d: %s",
                task.task_id,
                outcome.step,
                outcome.diagnostic,
            )
            raise FatalStepError(
                task_id=task.task_id,
                step=outcome.step,
                diagnostic=outcome.diagnostic,
            )

        raise TypeError(f"Unsupported step outcome: {outcome!r}")

    def _activate(self, task: TaskView) -> TaskView:
        if task.status == TaskStatus.ACTIVE:
            return task
        updated = self.repository.update_task(task_id=task.task_id, status=TaskStatus.ACTIVE)
        self._log(task.task_id, "Task started")
        self.notifications.task_updated(updated)
        return updated

    def _complete(self, task: TaskView, total: int) -> TaskView:
        updated = self.repository.update_task(
            task_id=task.task_id,
            status=TaskStatus.COMPLETED,
            current_step=total,
        )
        duration_seconds = max(0.0, (utc_now() - updated.created_at).total_seconds())
        self._log(task.task_id, f"Task completed in {duration_seconds:.1f}s")
        self.notifications.task_completed(updated, duration_seconds=duration_seconds)
        return updated

    def _run_children(self, task: TaskView, budget: RecursionBudget, summary: RunSummary) -> None:
        for child in self.repository.list_children(parent_task_id=task.task_id):
            if child.is_halted:
                logger.info("Skipping halted child task %s", child.task_id)
                continue
            if not budget.consume():
                logger.info("Recursion budget exhausted under task %s", task.task_id)
                return
            try:
                summary.children.append(self.run(child.task_id, budget=budget))
            except (RetryableStepError, FatalStepError, TaskHaltedError) as error:
                summary.child_errors[child.task_id] = str(error)
                self._log(task.task_id, f"Child task {child.task_id} stopped: {error}")
                logger.warning("Child task %s stopped: %s", child.task_id, error)

    def _load(self, task_id: str) -> TaskView:
        task = self.repository.get_task(task_id=task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _log(self, task_id: str, message: str) -> None:
        entry = self.repository.append_log(task_id=task_id, message=message)
        self.notifications.task_log_added(task_id, entry)

    def _default_tools(self, task: TaskView, step: int) -> ToolRegistry:
        return build_task_tools(
            task=task,
            current_step=step,
            continuity=self.continuity,
            create_task=self.create_task,
            workspace_root=self.tool_settings.workspace_root,
            command_timeout_seconds=self.tool_settings.command_timeout_seconds,
        )
