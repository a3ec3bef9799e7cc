"""Per-phase result storage and the size-bounded digest of prior phases."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING

from phaseflow.workflow.errors import TaskNotFoundError

if TYPE_CHECKING:
    from phaseflow.workflow.repository import TaskRepository

NO_PRIOR_RESULTS = "No previous step results available."
RECENT_RESULT_LIMIT = 300
OLDER_RESULT_LIMIT = 50
DIGEST_LIMIT = 1000
ELLIPSIS = "..."


def truncate(text: str, max_chars: int) -> str:
    """Cut ``text`` to ``max_chars`` characters, ellipsis included."""

    if len(text) <= max_chars:
        return text
    if max_chars <= len(ELLIPSIS):
        return text[:max_chars]
    return text[: max_chars - len(ELLIPSIS)] + ELLIPSIS


def ordered_results(step_results: Mapping[str, str] | Mapping[int, str]) -> list[tuple[int, str]]:
    """Step results sorted by ordinal; keys that are not positive ordinals are skipped."""

    items: dict[int, str] = {}
    for key, value in step_results.items():
        try:
            ordinal = int(key)
        except (TypeError, ValueError):
            continue
        if ordinal < 1:
            continue
        items[ordinal] = "" if value is None else str(value)
    return sorted(items.items())


def render_digest(step_results: Mapping[str, str] | Mapping[int, str], upto_step: int) -> str:
    """Render results of steps before ``upto_step``, most recent one weighted heaviest."""

    if not step_results or upto_step <= 1:
        return NO_PRIOR_RESULTS

    entries: list[str] = []
    for ordinal, text in ordered_results(step_results):
        if ordinal >= upto_step:
            continue
        limit = RECENT_RESULT_LIMIT if ordinal == upto_step - 1 else OLDER_RESULT_LIMIT
        entries.append(f"Step {ordinal}: {truncate(text, limit)}")
    if not entries:
        return NO_PRIOR_RESULTS
    return truncate("\n".join(entries), DIGEST_LIMIT)


class ContextContinuity:
    """Stores phase results and renders the continuity digest for the next phase."""

    def __init__(self, repository: TaskRepository) -> None:
        self.repository = repository

    def store(self, task_id: str, step: int, result_text: str) -> None:
        """Persist ``result_text`` for ``step``, replacing any previous value."""

        self.repository.store_step_result(task_id=task_id, step=step, text=result_text)

    def digest(self, task_id: str, upto_step: int) -> str:
        task = self.repository.get_task(task_id=task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return render_digest(task.step_results, upto_step)

    def previous_results(
        self,
        task_id: str,
        *,
        current_step: int,
        step: int | None = None,
        limit: int = 3,
    ) -> list[tuple[int, str]]:
        """Full-length results of earlier steps, oldest first.

        With ``step`` only that step is returned, and only when it precedes
        ``current_step``. Otherwise the last ``limit`` earlier steps are returned.
        """

        task = self.repository.get_task(task_id=task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        earlier = [item for item in ordered_results(task.step_results) if item[0] < current_step]
        if step is not None:
            return [item for item in earlier if item[0] == step]
        if limit <= 0:
            return []
        return earlier[-limit:]
