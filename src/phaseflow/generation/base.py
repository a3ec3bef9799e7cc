"""Generation service interface used by the step executor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from phaseflow.workflow.errors import GenerationError
from phaseflow.workflow.models import AccessClass, WorkflowVariant

if TYPE_CHECKING:
    from phaseflow.workflow.prompts import PhasePrompt
    from phaseflow.workflow.tools import ToolRegistry

RawOutcome = Any

__all__ = [
    "ExecutionContext",
    "GenerationError",
    "GenerationRequest",
    "GenerationService",
    "RawOutcome",
]


@dataclass(slots=True, frozen=True)
class ExecutionContext:
    """Task and phase metadata passed explicitly with every invocation."""

    task_id: str
    step: int
    phase_count: int
    workflow_variant: WorkflowVariant
    purpose: str
    access_class: AccessClass
    temperature: float

    def to_payload(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "step": self.step,
            "phase_count": self.phase_count,
            "workflow_variant": self.workflow_variant.value,
            "purpose": self.purpose,
            "access_class": self.access_class.value,
            "temperature": self.temperature,
        }


@dataclass(slots=True)
class GenerationRequest:
    """Inputs required to generate one phase response."""

    prompt: PhasePrompt
    tools: ToolRegistry
    temperature: float
    timeout_seconds: int
    context: ExecutionContext


class GenerationService(Protocol):
    """Protocol implemented by generation backends."""

    def invoke(self, request: GenerationRequest) -> RawOutcome:
        """Run one phase and return the raw outcome for classification."""
