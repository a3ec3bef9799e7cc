"""Per-phase filtering of the tool set."""

from __future__ import annotations

from phaseflow.workflow.models import AccessClass
from phaseflow.workflow.tools import ToolRegistry, ToolSpec


def gate(tools: ToolRegistry, access_class: AccessClass) -> ToolRegistry:
    """Tools permitted under ``access_class``.

    Read-only phases lose every mutating tool; control signals always survive.
    """

    if access_class == AccessClass.FULL:
        return tools
    return tools.subset(_allowed_read_only)


def _allowed_read_only(spec: ToolSpec) -> bool:
    return spec.control_signal or not spec.mutating
