"""Task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path
from uuid import uuid4

from sqlalchemy import literal_column
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from phaseflow.storage.alembic_runner import upgrade_head
from phaseflow.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from phaseflow.storage.sqlmodel_models import WorkflowTask, WorkflowTaskEvent, WorkflowTaskLog
from phaseflow.workflow.errors import TaskNotFoundError, UnknownWorkflowVariantError
from phaseflow.workflow.models import (
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskLogEntry,
    TaskStatus,
    TaskView,
    WorkflowVariant,
)


class TaskRepository:
    """Workflow task persistence facade."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a pending task at step 0."""

        now = utc_now()
        task_id = str(uuid4())
        with Session(self.engine) as session:
            if payload.parent_task_id is not None:
                parent = session.exec(
                    select(WorkflowTask).where(WorkflowTask.task_id == payload.parent_task_id),
                ).one_or_none()
                if parent is None:
                    raise TaskNotFoundError(payload.parent_task_id)
            row = WorkflowTask(
                task_id=task_id,
                title=payload.title,
                plan=payload.plan,
                description=payload.description,
                status=TaskStatus.PENDING.value,
                workflow_variant=WorkflowVariant(payload.workflow_variant).value,
                current_step=0,
                step_results_json="{}",
                parent_task_id=payload.parent_task_id,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(WorkflowTask).where(WorkflowTask.task_id == task_id),
            ).one_or_none()
            if row is None:
                return None
            log_rows = session.exec(
                select(WorkflowTaskLog)
                .where(WorkflowTaskLog.task_id == task_id)
                .order_by(col(WorkflowTaskLog.id).asc()),
            ).all()
            return _to_task_view(row, logs=log_rows)

    def update_task(
        self,
        *,
        task_id: str,
        status: TaskStatus | None = None,
        current_step: int | None = None,
        step_results: dict[str, str] | None = None,
    ) -> TaskView:
        """Apply a partial update; fields left as ``None`` are untouched."""

        values: dict[str, object] = {"updated_at": to_db_datetime(utc_now())}
        if status is not None:
            values["status"] = status.value
        if current_step is not None:
            values["current_step"] = current_step
        if step_results is not None:
            values["step_results_json"] = _dump_results(step_results)

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkflowTask)
                .where(col(WorkflowTask.task_id) == task_id)
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskNotFoundError(task_id)
            session.commit()

        task = self.get_task(task_id=task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def store_step_result(self, *, task_id: str, step: int, text: str) -> None:
        """Set the result of one step, keeping every other step untouched."""

        with Session(self.engine) as session:
            row = self._get_task_row_for_update(session=session, task_id=task_id)
            results = _load_results(row.step_results_json)
            results[str(step)] = text
            row.step_results_json = _dump_results(results)
            row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def append_log(self, *, task_id: str, message: str) -> TaskLogEntry:
        now = utc_now()
        with Session(self.engine) as session:
            self._get_task_row_for_update(session=session, task_id=task_id)
            session.add(WorkflowTaskLog(task_id=task_id, message=message, created_at=now))
            session.commit()
        return TaskLogEntry(message=message, created_at=now)

    def list_children(self, *, parent_task_id: str) -> list[TaskView]:
        """Children of ``parent_task_id`` in creation order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkflowTask)
                .where(WorkflowTask.parent_task_id == parent_task_id)
                .order_by(
                    col(WorkflowTask.created_at).asc(),
                    literal_column("workflow_tasks.rowid").asc(),
                ),
            ).all()
            return [_to_task_view(row) for row in rows]

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        parent_task_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status or parent."""

        with Session(self.engine) as session:
            statement = select(WorkflowTask)
            if status is not None:
                statement = statement.where(WorkflowTask.status == status.value)
            if parent_task_id is not None:
                statement = statement.where(WorkflowTask.parent_task_id == parent_task_id)
            statement = statement.order_by(col(WorkflowTask.created_at).desc()).limit(limit)
            rows = session.exec(statement).all()
            return [_to_task_view(row) for row in rows]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        task = self.get_task(task_id=task_id)
        if task is None:
            return None

        with Session(self.engine) as session:
            event_rows = session.exec(
                select(WorkflowTaskEvent)
                .where(WorkflowTaskEvent.task_id == task_id)
                .order_by(col(WorkflowTaskEvent.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=(
                        _parse_status(row.status_from) if row.status_from is not None else None
                    ),
                    status_to=_parse_status(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=task, events=events)

    def add_event(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None = None,
        status_to: TaskStatus | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        with Session(self.engine) as session:
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details or {},
            )
            session.commit()

    def pause_task(self, *, task_id: str) -> TaskView:
        """Pause a pending or active task."""

        return self._transition(
            task_id=task_id,
            allowed_from={TaskStatus.PENDING, TaskStatus.ACTIVE},
            status_to=TaskStatus.PAUSED,
            event_type="paused",
        )

    def cancel_task(self, *, task_id: str) -> TaskView:
        """Cancel a task that has not finished."""

        return self._transition(
            task_id=task_id,
            allowed_from={TaskStatus.PENDING, TaskStatus.ACTIVE, TaskStatus.PAUSED},
            status_to=TaskStatus.CANCELLED,
            event_type="cancelled",
        )

    def resume_task(self, *, task_id: str) -> TaskView:
        """Manual operator reset of a halted task back to pending."""

        return self._transition(
            task_id=task_id,
            allowed_from={
                TaskStatus.PAUSED,
                TaskStatus.FAILED,
                TaskStatus.CANCELLED,
                TaskStatus.INVALID,
            },
            status_to=TaskStatus.PENDING,
            event_type="resumed",
        )

    def _transition(
        self,
        *,
        task_id: str,
        allowed_from: set[TaskStatus],
        status_to: TaskStatus,
        event_type: str,
    ) -> TaskView:
        with Session(self.engine) as session:
            row = self._get_task_row_for_update(session=session, task_id=task_id)
            previous = _parse_status(row.status)
            if previous not in allowed_from:
                allowed = "/".join(sorted(status.value for status in allowed_from))
                raise RuntimeError(
                    f"Task cannot be {event_type} from status={previous.value}; "
                    f"expected one of {allowed}.",
                )
            result = session.exec(
                sa_update(WorkflowTask)
                .where(
                    col(WorkflowTask.task_id) == task_id,
                    col(WorkflowTask.status) == row.status,
                )
                .values(
                    status=status_to.value,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Task state changed concurrently; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=previous,
                status_to=status_to,
                details={},
            )
            session.commit()

        task = self.get_task(task_id=task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _get_task_row_for_update(self, *, session: Session, task_id: str) -> WorkflowTask:
        row = session.exec(
            select(WorkflowTask).where(WorkflowTask.task_id == task_id),
        ).one_or_none()
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            WorkflowTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _parse_status(value: str) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError:
        return TaskStatus.INVALID


def _parse_variant(value: str) -> WorkflowVariant:
    try:
        return WorkflowVariant(value)
    except ValueError as error:
        raise UnknownWorkflowVariantError(f"Unknown workflow variant: {value!r}") from error


def _load_results(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        return {}
    return {str(key): "" if value is None else str(value) for key, value in parsed.items()}


def _dump_results(results: dict[str, str]) -> str:
    return json.dumps({str(key): value for key, value in results.items()}, ensure_ascii=False)


def _to_task_view(row: WorkflowTask, *, logs: Sequence[WorkflowTaskLog] = ()) -> TaskView:
    log_entries = [
        TaskLogEntry(message=log.message, created_at=to_utc_aware_datetime(log.created_at))
        for log in logs
    ]
    return TaskView(
        task_id=row.task_id,
        title=row.title,
        plan=row.plan,
        description=row.description,
        status=_parse_status(row.status),
        workflow_variant=_parse_variant(row.workflow_variant),
        current_step=row.current_step,
        step_results=_load_results(row.step_results_json),
        parent_task_id=row.parent_task_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        log=log_entries,
    )
