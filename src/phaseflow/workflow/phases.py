"""Static phase catalogs for every workflow variant."""

from __future__ import annotations

from dataclasses import dataclass

from phaseflow.workflow.errors import UnknownWorkflowVariantError
from phaseflow.workflow.models import AccessClass, WorkflowVariant

DEFAULT_TEMPERATURE = 1.0

# Indexed by phase ordinal and shared by every variant, so step 2 of "simple" runs at
# 1.4 like step 2 of "full". Exploration starts hot and cools down for implementation.
STEP_TEMPERATURES: dict[int, float] = {
    1: 1.5,
    2: 1.4,
    3: 1.3,
    4: 1.2,
    5: 1.0,
    6: 0.8,
    7: 0.7,
    8: 0.7,
    9: 0.8,
    10: 1.0,
}


@dataclass(slots=True, frozen=True)
class PhaseDescriptor:
    """One immutable phase of a workflow variant."""

    ordinal: int
    purpose: str
    guidance: str
    temperature: float
    access_class: AccessClass

    @property
    def is_read_only(self) -> bool:
        return self.access_class == AccessClass.READ_ONLY


def _phase(ordinal: int, purpose: str, guidance: str, *, read_only: bool) -> PhaseDescriptor:
    return PhaseDescriptor(
        ordinal=ordinal,
        purpose=purpose,
        guidance=guidance,
        temperature=STEP_TEMPERATURES.get(ordinal, DEFAULT_TEMPERATURE),
        access_class=AccessClass.READ_ONLY if read_only else AccessClass.FULL,
    )


_FULL_PHASES: tuple[PhaseDescriptor, ...] = (
    _phase(
        1,
        "Analyze: Understanding the business need",
        "Read the task, the plan and the relevant code. State the problem in your own words, "
        "who is affected and what success looks like. Do not change anything yet.",
        read_only=True,
    ),
    _phase(
        2,
        "Define solution: Describing the desired end state",
        "Describe the target behavior precisely: inputs, outputs, constraints and what must "
        "stay unchanged. Call out open questions instead of guessing.",
        read_only=True,
    ),
    _phase(
        3,
        "Explore: Comparing implementation paths",
        "List at least two concrete ways to implement the solution with their trade-offs, "
        "risks and the files each one touches.",
        read_only=True,
    ),
    _phase(
        4,
        "Select: Choosing the candidate approach",
        "Pick one approach, justify the choice against the alternatives and note what would "
        "make you revisit it.",
        read_only=True,
    ),
    _phase(
        5,
        "Identify changes: Listing required code changes",
        "Enumerate every file and function that must change, in the order you will change "
        "them. Start preparing the workspace.",
        read_only=False,
    ),
    _phase(
        6,
        "Implement: Applying the changes",
        "Make the changes listed in the previous phase. Keep each edit small and consistent "
        "with the surrounding code.",
        read_only=False,
    ),
    _phase(
        7,
        "Test: Verifying functionality",
        "Exercise the changed behavior and report what passed and what did not. Fix "
        "regressions before completing the phase.",
        read_only=False,
    ),
    _phase(
        8,
        "Edge cases: Hunting for corner cases",
        "Probe empty, missing, oversized and malformed inputs and concurrent use. Handle or "
        "document each case you find.",
        read_only=False,
    ),
    _phase(
        9,
        "Validate: Checking security and performance",
        "Review the change for injection, privilege and resource problems and for obvious "
        "performance regressions.",
        read_only=False,
    ),
    _phase(
        10,
        "Document: Recording the result",
        "Summarize what changed, why, and how to use it. Update documentation that the change "
        "made stale.",
        read_only=False,
    ),
)

_SIMPLE_PHASES: tuple[PhaseDescriptor, ...] = (
    _phase(
        1,
        "Analyze: Understanding requirements and context",
        "Read the task and the relevant material and write down what has to be done. "
        "Do not change anything yet.",
        read_only=True,
    ),
    _phase(
        2,
        "Implement: Executing the planned solution",
        "Carry out the work described in the analysis.",
        read_only=False,
    ),
    _phase(
        3,
        "Validate: Testing and confirming results",
        "Check that the result does what the task asked for and report any gaps.",
        read_only=False,
    ),
)

_ANALYSIS_PHASES: tuple[PhaseDescriptor, ...] = (
    _phase(
        1,
        "Research: Gathering information and context",
        "Collect the facts, files and prior results relevant to the question.",
        read_only=True,
    ),
    _phase(
        2,
        "Plan: Developing the analysis approach",
        "Decide which questions to answer and how each one will be answered.",
        read_only=True,
    ),
    _phase(
        3,
        "Analyze: Performing detailed examination",
        "Work through the plan and record evidence for every finding.",
        read_only=True,
    ),
    _phase(
        4,
        "Synthesize: Integrating findings and insights",
        "Combine the findings into a coherent picture and resolve contradictions.",
        read_only=False,
    ),
    _phase(
        5,
        "Report: Documenting conclusions and recommendations",
        "Write the final report with conclusions, recommendations and open risks.",
        read_only=False,
    ),
)

_CATALOG: dict[WorkflowVariant, tuple[PhaseDescriptor, ...]] = {
    WorkflowVariant.FULL: _FULL_PHASES,
    WorkflowVariant.SIMPLE: _SIMPLE_PHASES,
    WorkflowVariant.ANALYSIS: _ANALYSIS_PHASES,
}


def phases(workflow_variant: WorkflowVariant | str) -> tuple[PhaseDescriptor, ...]:
    """Ordered phases of one workflow variant."""

    try:
        return _CATALOG[WorkflowVariant(workflow_variant)]
    except (KeyError, ValueError) as error:
        raise UnknownWorkflowVariantError(
            f"Unknown workflow variant: {workflow_variant!r}",
        ) from error


def phase_count(workflow_variant: WorkflowVariant | str) -> int:
    return len(phases(workflow_variant))


def phase_for(workflow_variant: WorkflowVariant | str, ordinal: int) -> PhaseDescriptor:
    """Phase descriptor for ``ordinal``, clamped into ``[1, N]``."""

    catalog = phases(workflow_variant)
    return catalog[clamp(ordinal, 1, len(catalog)) - 1]


def clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(upper, value))
