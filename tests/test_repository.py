from __future__ import annotations

import sqlite3
from pathlib import Path

import allure
import pytest

from phaseflow.workflow.errors import TaskNotFoundError, UnknownWorkflowVariantError
from phaseflow.workflow.models import TaskCreate, TaskStatus, WorkflowVariant
from phaseflow.workflow.repository import TaskRepository

pytestmark = [
    allure.epic("Workflow Engine"),
    allure.feature("Task Store"),
]


def _create(repository: TaskRepository, **overrides) -> str:
    payload = TaskCreate(title="Task", plan="Plan", description="Description")
    for name, value in overrides.items():
        setattr(payload, name, value)
    return repository.create_task(payload).task_id


def test_alembic_schema_is_initialized_to_head(repository: TaskRepository) -> None:
    with sqlite3.connect(repository.db_path) as connection:
        version = connection.execute("SELECT version_num FROM alembic_version").fetchone()
        tables = connection.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name LIKE 'workflow_%' "
            "ORDER BY name",
        ).fetchall()
    assert version == ("20261017_0001",)
    assert [row[0] for row in tables] == [
        "workflow_task_events",
        "workflow_task_logs",
        "workflow_tasks",
    ]


def test_init_schema_is_idempotent(repository: TaskRepository) -> None:
    task_id = _create(repository)
    repository.init_schema()
    assert repository.get_task(task_id=task_id) is not None


def test_create_task_defaults(repository: TaskRepository) -> None:
    task = repository.create_task(
        TaskCreate(title="Ship it", workflow_variant=WorkflowVariant.ANALYSIS),
    )

    loaded = repository.get_task(task_id=task.task_id)
    assert loaded is not None
    assert loaded.title == "Ship it"
    assert loaded.plan == ""
    assert loaded.status == TaskStatus.PENDING
    assert loaded.workflow_variant == WorkflowVariant.ANALYSIS
    assert loaded.current_step == 0
    assert loaded.step_results == {}
    assert loaded.parent_task_id is None
    assert loaded.log == []
    assert loaded.created_at.tzinfo is not None


def test_create_child_requires_existing_parent(repository: TaskRepository) -> None:
    with pytest.raises(TaskNotFoundError):
        _create(repository, parent_task_id="missing")


def test_get_unknown_task_returns_none(repository: TaskRepository) -> None:
    assert repository.get_task(task_id="missing") is None


def test_update_task_is_partial(repository: TaskRepository) -> None:
    task_id = _create(repository)
    repository.store_step_result(task_id=task_id, step=1, text="first")

    updated = repository.update_task(task_id=task_id, current_step=1)
    assert updated.current_step == 1
    assert updated.status == TaskStatus.PENDING
    assert updated.step_results == {"1": "first"}

    updated = repository.update_task(task_id=task_id, status=TaskStatus.ACTIVE)
    assert updated.status == TaskStatus.ACTIVE
    assert updated.current_step == 1

    updated = repository.update_task(task_id=task_id, step_results={"2": "second"})
    assert updated.step_results == {"2": "second"}


def test_update_unknown_task(repository: TaskRepository) -> None:
    with pytest.raises(TaskNotFoundError):
        repository.update_task(task_id="missing", current_step=1)


def test_store_step_result_merges(repository: TaskRepository) -> None:
    task_id = _create(repository)

    repository.store_step_result(task_id=task_id, step=2, text="two")
    repository.store_step_result(task_id=task_id, step=1, text="one")
    repository.store_step_result(task_id=task_id, step=2, text="two again")

    task = repository.get_task(task_id=task_id)
    assert task is not None
    assert task.step_results == {"2": "two again", "1": "one"}


def test_append_log_keeps_order(repository: TaskRepository) -> None:
    task_id = _create(repository)

    for message in ("first", "second", "third"):
        repository.append_log(task_id=task_id, message=message)

    task = repository.get_task(task_id=task_id)
    assert task is not None
    assert [entry.message for entry in task.log] == ["first", "second", "third"]


def test_append_log_unknown_task(repository: TaskRepository) -> None:
    with pytest.raises(TaskNotFoundError):
        repository.append_log(task_id="missing", message="x")


def test_children_in_creation_order(repository: TaskRepository) -> None:
    parent_id = _create(repository)
    other_id = _create(repository)
    child_ids = [
        _create(repository, title=f"child {index}", parent_task_id=parent_id) for index in range(4)
    ]
    _create(repository, parent_task_id=other_id)

    children = repository.list_children(parent_task_id=parent_id)

    assert [child.task_id for child in children] == child_ids
    assert repository.list_children(parent_task_id=child_ids[0]) == []


def test_list_tasks_filters(repository: TaskRepository) -> None:
    parent_id = _create(repository)
    child_id = _create(repository, parent_task_id=parent_id)
    repository.update_task(task_id=child_id, status=TaskStatus.ACTIVE)

    assert {task.task_id for task in repository.list_tasks()} == {parent_id, child_id}
    assert [task.task_id for task in repository.list_tasks(status=TaskStatus.ACTIVE)] == [child_id]
    assert [task.task_id for task in repository.list_tasks(parent_task_id=parent_id)] == [child_id]
    assert len(repository.list_tasks(limit=1)) == 1


def test_pause_cancel_resume_record_events(repository: TaskRepository) -> None:
    task_id = _create(repository)

    assert repository.pause_task(task_id=task_id).status == TaskStatus.PAUSED
    assert repository.resume_task(task_id=task_id).status == TaskStatus.PENDING
    assert repository.cancel_task(task_id=task_id).status == TaskStatus.CANCELLED

    details = repository.get_task_details(task_id=task_id)
    assert details is not None
    assert [(event.event_type, event.status_from, event.status_to) for event in details.events] == [
        ("paused", TaskStatus.PENDING, TaskStatus.PAUSED),
        ("resumed", TaskStatus.PAUSED, TaskStatus.PENDING),
        ("cancelled", TaskStatus.PENDING, TaskStatus.CANCELLED),
    ]


def test_disallowed_transitions(repository: TaskRepository) -> None:
    task_id = _create(repository)
    repository.update_task(task_id=task_id, status=TaskStatus.COMPLETED)

    with pytest.raises(RuntimeError, match="cannot be paused from status=completed"):
        repository.pause_task(task_id=task_id)
    with pytest.raises(RuntimeError, match="cannot be resumed"):
        repository.resume_task(task_id=task_id)


def test_transition_unknown_task(repository: TaskRepository) -> None:
    with pytest.raises(TaskNotFoundError):
        repository.cancel_task(task_id="missing")


def test_add_event_details(repository: TaskRepository) -> None:
    task_id = _create(repository)
    repository.add_event(task_id=task_id, event_type="note", details={"step": 2})

    details = repository.get_task_details(task_id=task_id)
    assert details is not None
    assert details.events[0].event_type == "note"
    assert details.events[0].details == {"step": 2}
    assert repository.get_task_details(task_id="missing") is None


def _raw_update(db_path: Path, sql: str, *params: object) -> None:
    with sqlite3.connect(db_path) as connection:
        connection.execute(sql, params)


def test_unknown_status_reads_as_invalid(repository: TaskRepository) -> None:
    task_id = _create(repository)
    _raw_update(
        repository.db_path,
        "UPDATE workflow_tasks SET status = ? WHERE task_id = ?",
        "archived",
        task_id,
    )

    task = repository.get_task(task_id=task_id)
    assert task is not None
    assert task.status == TaskStatus.INVALID
    assert task.is_halted
    assert repository.resume_task(task_id=task_id).status == TaskStatus.PENDING


def test_unknown_variant_is_an_error(repository: TaskRepository) -> None:
    task_id = _create(repository)
    _raw_update(
        repository.db_path,
        "UPDATE workflow_tasks SET workflow_variant = ? WHERE task_id = ?",
        "waterfall",
        task_id,
    )

    with pytest.raises(UnknownWorkflowVariantError):
        repository.get_task(task_id=task_id)
