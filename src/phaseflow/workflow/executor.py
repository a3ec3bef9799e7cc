"""Single-phase execution: prompt, gated tools, generation call, classification."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from phaseflow.generation.base import (
    ExecutionContext,
    GenerationRequest,
    GenerationService,
    RawOutcome,
)
from phaseflow.workflow.continuity import ContextContinuity
from phaseflow.workflow.errors import halted_error
from phaseflow.workflow.models import (
    AccessClass,
    Advance,
    Fatal,
    NoProgress,
    OutcomeCategory,
    RetryLater,
    Rewind,
    StepOutcome,
    TaskView,
)
from phaseflow.workflow.outcome_classifier import (
    OutcomeClassification,
    classify_exception,
    classify_outcome,
    lookup,
)
from phaseflow.workflow.phases import PhaseDescriptor, clamp, phases
from phaseflow.workflow.prompts import build_phase_prompt
from phaseflow.workflow.tool_gate import gate
from phaseflow.workflow.tools import DEFAULT_REJECTION_REASON, ToolRegistry

logger = logging.getLogger(__name__)

ToolFactory = Callable[[TaskView, int], ToolRegistry]

NO_COMPLETION_SIGNAL = "NO_COMPLETION_SIGNAL: Step executed but no completion signal was sent"

_RETRY_MESSAGES: dict[OutcomeCategory, str] = {
    OutcomeCategory.TIMEOUT: "TIMEOUT: Step {step} timed out",
    OutcomeCategory.NETWORK_ERROR: "NETWORK_ERROR: Step {step} network error",
    OutcomeCategory.RATE_LIMIT_ERROR: "RATE_LIMIT_ERROR: Step {step} rate limit exceeded",
    OutcomeCategory.CONTEXT_LENGTH_ERROR: (
        "CONTEXT_LENGTH_ERROR: Step {step} context length exceeded"
    ),
    OutcomeCategory.EMPTY_RESPONSE: "EMPTY_RESPONSE: Generation service returned empty response",
}


class StepExecutor:
    """Runs exactly one phase of a task and returns its ``StepOutcome``.

    The executor only reads task state. Persisting results and moving the
    step pointer is left to the engine.
    """

    def __init__(
        self,
        *,
        continuity: ContextContinuity,
        generation: GenerationService,
        tool_factory: ToolFactory,
        normal_timeout_seconds: int = 120,
        extended_timeout_seconds: int = 300,
    ) -> None:
        self.continuity = continuity
        self.generation = generation
        self.tool_factory = tool_factory
        self.normal_timeout_seconds = normal_timeout_seconds
        self.extended_timeout_seconds = extended_timeout_seconds

    def execute(self, task: TaskView, step_ordinal: int) -> StepOutcome:
        if task.is_halted:
            raise halted_error(task.task_id, task.status)

        catalog = phases(task.workflow_variant)
        step = clamp(step_ordinal, 1, len(catalog))
        phase = catalog[step - 1]

        prompt = build_phase_prompt(
            task=task,
            phase=phase,
            phase_count=len(catalog),
            digest=self.continuity.digest(task.task_id, step),
        )
        request = GenerationRequest(
            prompt=prompt,
            tools=gate(self.tool_factory(task, step), phase.access_class),
            temperature=phase.temperature,
            timeout_seconds=self.timeout_for(phase),
            context=ExecutionContext(
                task_id=task.task_id,
                step=step,
                phase_count=len(catalog),
                workflow_variant=task.workflow_variant,
                purpose=phase.purpose,
                access_class=phase.access_class,
                temperature=phase.temperature,
            ),
        )
        logger.info(
            "Executing task %s step %d/%d (%s, temperature=%.1f)",
            task.task_id,
            step,
            len(catalog),
            phase.purpose,
            phase.temperature,
        )

        try:
            raw = self.generation.invoke(request)
        except Exception as error:
            classification = classify_exception(error)
            if classification is None:
                raise
            logger.warning("Generation for task %s step %d raised: %s", task.task_id, step, error)
            return to_step_outcome(step, classification, None, detail=str(error))

        return to_step_outcome(step, classify_outcome(raw), raw)

    def timeout_for(self, phase: PhaseDescriptor) -> int:
        if phase.access_class == AccessClass.FULL:
            return self.extended_timeout_seconds
        return self.normal_timeout_seconds


def to_step_outcome(
    step: int,
    classification: OutcomeClassification,
    raw: RawOutcome,
    *,
    detail: str = "",
) -> StepOutcome:
    """Map one classified outcome of ``step`` onto a ``StepOutcome`` variant."""

    category = classification.category
    if category == OutcomeCategory.STEP_COMPLETED:
        result = signal_result(raw)
        return Advance(step=step, result=result or None)
    if category == OutcomeCategory.STEP_REJECTED:
        reason, restart_step = rejection_details(raw, step)
        return Rewind(step=step, reason=reason, restart_step=restart_step)
    if category == OutcomeCategory.SUCCESS:
        return NoProgress(step=step, provisional_result=extract_answer(raw) or NO_COMPLETION_SIGNAL)
    if category == OutcomeCategory.FAILURE:
        reason = detail or extract_answer(raw) or _error_text(raw) or "no details"
        return Fatal(step=step, diagnostic=f"FAILURE: Step {step} failed: {reason}")
    if category == OutcomeCategory.UNKNOWN:
        value = classification.status_value or "missing"
        return RetryLater(
            step=step,
            category=category,
            diagnostic=f"ERROR: Unknown response status: {value}",
        )

    diagnostic = _RETRY_MESSAGES[category].format(step=step)
    extra = detail or _error_text(raw)
    if extra:
        diagnostic = f"{diagnostic} ({extra})"
    return RetryLater(step=step, category=category, diagnostic=diagnostic)


def extract_answer(raw: RawOutcome) -> str:
    """Answer text of a plain response."""

    if not isinstance(raw, Mapping):
        return ""
    _, response = lookup(raw, "response")
    if isinstance(response, str):
        return response
    if isinstance(response, Mapping):
        for name in ("answer", "result", "reasoning"):
            _, value = lookup(response, name)
            if isinstance(value, str) and value.strip():
                return value
    return ""


def signal_result(raw: RawOutcome) -> str:
    """Result payload carried by a completion signal."""

    if not isinstance(raw, Mapping):
        return ""
    _, result = lookup(raw, "result")
    if isinstance(result, str):
        return result
    if result is not None:
        return str(result)
    return extract_answer(raw)


def rejection_details(raw: RawOutcome, step: int) -> tuple[str, int]:
    """Reason and requested restart ordinal of a rejection signal."""

    reason = DEFAULT_REJECTION_REASON
    restart_step = max(step - 1, 1)
    if not isinstance(raw, Mapping):
        return reason, restart_step

    payload: Mapping[Any, Any] = raw
    _, response = lookup(raw, "response")
    if isinstance(response, Mapping):
        payload = {**response, **raw}

    _, raw_reason = lookup(payload, "reason")
    if isinstance(raw_reason, str) and raw_reason.strip():
        reason = raw_reason
    _, raw_restart = lookup(payload, "restart_from_step")
    parsed = _parse_ordinal(raw_restart)
    if parsed is not None:
        restart_step = parsed
    return reason, restart_step


def _parse_ordinal(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _error_text(raw: RawOutcome) -> str:
    if not isinstance(raw, Mapping):
        return ""
    _, error = lookup(raw, "error")
    if isinstance(error, str):
        return error
    return ""
