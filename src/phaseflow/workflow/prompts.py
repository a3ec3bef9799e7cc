"""Phase prompt assembly."""

from __future__ import annotations

from dataclasses import dataclass

from phaseflow.workflow.models import TaskView
from phaseflow.workflow.phases import PhaseDescriptor
from phaseflow.workflow.tools import COMPLETE_STEP_TOOL, REJECT_STEP_TOOL

PLACEHOLDER = "--"

_SYSTEM_PROMPT = (
    "You are working through a task one step at a time. Each step has a single purpose. "
    "Work only on the current step. When the step is done, call "
    f"{COMPLETE_STEP_TOOL} with the result. If earlier work is wrong and must be redone, "
    f"call {REJECT_STEP_TOOL} with a reason and the step to restart from."
)


@dataclass(slots=True, frozen=True)
class PhasePrompt:
    """Prompt material for one phase invocation."""

    system: str
    user: str

    def render(self) -> str:
        return f"{self.system}\n\n{self.user}"

    def to_messages(self) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": self.system},
            {"role": "user", "content": self.user},
        ]


def or_placeholder(value: str | None) -> str:
    if value is None or not value.strip():
        return PLACEHOLDER
    return value


def step_clarification(step: int, phase_count: int) -> str:
    remaining = phase_count - step
    if remaining > 0:
        noun = "step" if remaining == 1 else "steps"
        return (
            "IMPORTANT: This is NOT the final step. "
            f"There are {remaining} more {noun} after this one. "
            "Complete only the current step."
        )
    return "FINAL STEP: This is the last step of the task. Make sure the task is fully finished."


def build_phase_prompt(
    *,
    task: TaskView,
    phase: PhaseDescriptor,
    phase_count: int,
    digest: str,
) -> PhasePrompt:
    access = "read-only" if phase.is_read_only else "full"
    user = "\n".join(
        [
            f"Step {phase.ordinal} of {phase_count}: {phase.purpose}",
            "",
            phase.guidance,
            "",
            step_clarification(phase.ordinal, phase_count),
            f"Tool access for this step: {access}.",
            "",
            f"Title: {or_placeholder(task.title)}",
            f"Plan: {or_placeholder(task.plan)}",
            f"Description: {or_placeholder(task.description)}",
            "",
            "Previous step results:",
            digest,
        ],
    )
    return PhasePrompt(system=_SYSTEM_PROMPT, user=user)
