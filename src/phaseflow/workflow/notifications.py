"""Fire-and-forget task notifications."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Protocol

from phaseflow.workflow.models import TaskLogEntry, TaskStatus, TaskView
from phaseflow.workflow.repository import TaskRepository

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """Receiver of task lifecycle notifications."""

    def task_created(self, task: TaskView) -> None: ...

    def task_updated(self, task: TaskView) -> None: ...

    def task_completed(self, task: TaskView, *, duration_seconds: float) -> None: ...

    def task_log_added(self, task_id: str, entry: TaskLogEntry) -> None: ...

    def step_completed(self, task: TaskView, *, step: int, result: str | None) -> None: ...

    def step_rejected(
        self,
        task: TaskView,
        *,
        step: int,
        reason: str,
        restart_step: int,
    ) -> None: ...


class NotificationDispatcher:
    """Fans notifications out to sinks; a failing sink never interrupts the caller."""

    def __init__(self, sinks: Iterable[NotificationSink] = ()) -> None:
        self.sinks = list(sinks)

    def task_created(self, task: TaskView) -> None:
        self._emit("task_created", lambda sink: sink.task_created(task))

    def task_updated(self, task: TaskView) -> None:
        self._emit("task_updated", lambda sink: sink.task_updated(task))

    def task_completed(self, task: TaskView, *, duration_seconds: float) -> None:
        self._emit(
            "task_completed",
            lambda sink: sink.task_completed(task, duration_seconds=duration_seconds),
        )

    def task_log_added(self, task_id: str, entry: TaskLogEntry) -> None:
        self._emit("task_log_added", lambda sink: sink.task_log_added(task_id, entry))

    def step_completed(self, task: TaskView, *, step: int, result: str | None) -> None:
        self._emit(
            "step_completed",
            lambda sink: sink.step_completed(task, step=step, result=result),
        )

    def step_rejected(
        self,
        task: TaskView,
        *,
        step: int,
        reason: str,
        restart_step: int,
    ) -> None:
        self._emit(
            "step_rejected",
            lambda sink: sink.step_rejected(
                task,
                step=step,
                reason=reason,
                restart_step=restart_step,
            ),
        )

    def _emit(self, event_name: str, call: Callable[[NotificationSink], None]) -> None:
        for sink in self.sinks:
            try:
                call(sink)
            except Exception:  # noqa: BLE001
                logger.warning(
                    "Notification sink %s failed on %s",
                    type(sink).__name__,
                    event_name,
                    exc_info=True,
                )


class LoggingNotificationSink:
    """Writes notifications to the module logger."""

    def task_created(self, task: TaskView) -> None:
        logger.info(
            "Task created: %s (%s, variant=%s)",
            task.task_id,
            task.title or "--",
            task.workflow_variant.value,
        )

    def task_updated(self, task: TaskView) -> None:
        logger.info(
            "Task updated: %s status=%s step=%d",
            task.task_id,
            task.status.value,
            task.current_step,
        )

    def task_completed(self, task: TaskView, *, duration_seconds: float) -> None:
        logger.info("Task completed: %s in %.1fs", task.task_id, duration_seconds)

    def task_log_added(self, task_id: str, entry: TaskLogEntry) -> None:
        logger.debug("Task %s: %s", task_id, entry.message)

    def step_completed(self, task: TaskView, *, step: int, result: str | None) -> None:
        logger.info("Task %s step %d completed", task.task_id, step)

    def step_rejected(
        self,
        task: TaskView,
        *,
        step: int,
        reason: str,
        restart_step: int,
    ) -> None:
        logger.info(
            "Task %s step %d rejected, restarting from %d: %s",
            task.task_id,
            step,
            restart_step,
            reason,
        )


class TaskEventNotificationSink:
    """Records notifications in the task event audit trail."""

    def __init__(self, repository: TaskRepository) -> None:
        self.repository = repository

    def task_created(self, task: TaskView) -> None:
        self.repository.add_event(
            task_id=task.task_id,
            event_type="task_created",
            status_to=task.status,
            details={
                "workflow_variant": task.workflow_variant.value,
                "parent_task_id": task.parent_task_id,
            },
        )

    def task_updated(self, task: TaskView) -> None:
        self.repository.add_event(
            task_id=task.task_id,
            event_type="task_updated",
            status_to=task.status,
            details={"current_step": task.current_step},
        )

    def task_completed(self, task: TaskView, *, duration_seconds: float) -> None:
        self.repository.add_event(
            task_id=task.task_id,
            event_type="task_completed",
            status_to=TaskStatus.COMPLETED,
            details={"duration_seconds": round(duration_seconds, 3)},
        )

    def task_log_added(self, task_id: str, entry: TaskLogEntry) -> None:
        # Log lines already live in workflow_task_logs.
        return

    def step_completed(self, task: TaskView, *, step: int, result: str | None) -> None:
        self.repository.add_event(
            task_id=task.task_id,
            event_type="step_completed",
            details={"step": step, "result_chars": len(result or "")},
        )

    def step_rejected(
        self,
        task: TaskView,
        *,
        step: int,
        reason: str,
        restart_step: int,
    ) -> None:
        self.repository.add_event(
            task_id=task.task_id,
            event_type="step_rejected",
            details={"step": step, "reason": reason, "restart_step": restart_step},
        )
