"""CLI entrypoint for phaseflow."""

from pathlib import Path

import rich_click as click

from phaseflow import __version__
from phaseflow.workflow.controllers import (
    TaskCreateCommand,
    TaskDigestCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskMutateCommand,
    TaskRunCommand,
    WorkflowCliController,
)
from phaseflow.workflow.errors import (
    FatalStepError,
    RetryableStepError,
    TaskHaltedError,
    TaskNotFoundError,
)
from phaseflow.workflow.models import TaskStatus, WorkflowVariant

click.rich_click.USE_MARKDOWN = True
WORKFLOW_CONTROLLER = WorkflowCliController()


@click.group()
@click.version_option(version=__version__, prog_name="phaseflow")
def phaseflow() -> None:
    """Phase-by-phase workflow engine CLI."""


@phaseflow.group()
def task() -> None:
    """Workflow task commands."""


@task.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--title", required=True, help="Task title.")
@click.option("--plan", default="", help="Plan the phases should follow.")
@click.option("--description", default="", help="Free-form task description.")
@click.option(
    "--variant",
    "workflow_variant",
    type=click.Choice([variant.value for variant in WorkflowVariant], case_sensitive=False),
    default=WorkflowVariant.FULL.value,
    show_default=True,
    help="Workflow variant: full (10 steps), simple (3) or analysis (5).",
)
@click.option("--parent-task-id", default=None, help="Owning task id for a child task.")
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    plan: str,
    description: str,
    workflow_variant: str,
    parent_task_id: str | None,
) -> None:
    """Create a pending task."""

    try:
        lines = WORKFLOW_CONTROLLER.create_task(
            TaskCreateCommand(
                db_path=db_path,
                title=title,
                plan=plan,
                description=description,
                workflow_variant=workflow_variant.lower(),
                parent_task_id=parent_task_id,
            ),
        )
    except TaskNotFoundError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@task.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--parent-task-id", default=None, help="Only children of this task.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def task_list(
    db_path: Path | None,
    status: str | None,
    parent_task_id: str | None,
    limit: int,
) -> None:
    """List workflow tasks."""

    _emit_lines(
        WORKFLOW_CONTROLLER.list_tasks(
            TaskListCommand(
                db_path=db_path,
                status=status.lower() if status else None,
                parent_task_id=parent_task_id,
                limit=limit,
            ),
        ),
    )


@task.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def task_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with results, log and event history."""

    _emit_lines(
        WORKFLOW_CONTROLLER.inspect_task(
            TaskInspectCommand(
                db_path=db_path,
                task_id=task_id,
            ),
        ),
    )


@task.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--budget",
    type=click.IntRange(min=0),
    default=None,
    help="Max nested child runs; defaults to PHASEFLOW_RECURSION_BUDGET.",
)
def task_run(db_path: Path | None, task_id: str, budget: int | None) -> None:
    """Run a task until it completes, waits for a signal, or fails.

    A retryable outcome (timeout, rate limit, ...) exits non-zero and leaves
    the task active so the same step can be run again.
    """

    try:
        lines = WORKFLOW_CONTROLLER.run_task(
            TaskRunCommand(
                db_path=db_path,
                task_id=task_id,
                budget=budget,
            ),
        )
    except RetryableStepError as error:
        raise click.ClickException(
            f"Step {error.step} should be retried ({error.category.value}): {error.diagnostic}",
        ) from error
    except FatalStepError as error:
        raise click.ClickException(
            f"Task failed at step {error.step}: {error.diagnostic}",
        ) from error
    except (TaskNotFoundError, TaskHaltedError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@task.command("pause")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def task_pause(db_path: Path | None, task_id: str) -> None:
    """Pause a pending or active task."""

    _emit_lines(_mutate(WORKFLOW_CONTROLLER.pause_task, db_path=db_path, task_id=task_id))


@task.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def task_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a task that has not finished."""

    _emit_lines(_mutate(WORKFLOW_CONTROLLER.cancel_task, db_path=db_path, task_id=task_id))


@task.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def task_resume(db_path: Path | None, task_id: str) -> None:
    """Reset a paused, failed or cancelled task back to pending."""

    _emit_lines(_mutate(WORKFLOW_CONTROLLER.resume_task, db_path=db_path, task_id=task_id))


@task.command("digest")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--upto-step",
    type=click.IntRange(min=1),
    default=None,
    help="Render context as seen by this step; defaults to the next step.",
)
def task_digest(db_path: Path | None, task_id: str, upto_step: int | None) -> None:
    """Print the prior-step context the next phase will receive."""

    _emit_lines(
        WORKFLOW_CONTROLLER.digest(
            TaskDigestCommand(
                db_path=db_path,
                task_id=task_id,
                upto_step=upto_step,
            ),
        ),
    )


def _mutate(action, *, db_path: Path | None, task_id: str) -> list[str]:
    try:
        return action(TaskMutateCommand(db_path=db_path, task_id=task_id))
    except RuntimeError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    phaseflow()
