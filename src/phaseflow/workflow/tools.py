"""Explicit tool registry with declared parameter schemas.

Each tool is a ``ToolSpec``: a name, a parameter schema, a handler and a
``mutating`` flag consumed by the tool gate. Arguments are validated against
the schema before the handler runs.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from phaseflow.workflow.continuity import ContextContinuity
from phaseflow.workflow.errors import ToolArgumentError, UnknownToolError
from phaseflow.workflow.models import OutcomeCategory, TaskCreate, TaskView, WorkflowVariant
from phaseflow.workflow.outcome_classifier import CONTROL_SIGNAL_KEY, lookup

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], dict[str, Any]]

COMPLETE_STEP_TOOL = "task_complete_step"
REJECT_STEP_TOOL = "task_reject_step"
DEFAULT_REJECTION_REASON = "No reason provided"
_OUTPUT_TAIL_CHARS = 4_000


class ParamKind(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


@dataclass(slots=True, frozen=True)
class ToolParam:
    """Declared parameter of one tool."""

    name: str
    kind: ParamKind
    description: str = ""
    required: bool = False
    default: Any = None
    minimum: float | None = None
    maximum: float | None = None
    min_length: int | None = None
    min_items: int | None = None
    max_items: int | None = None
    choices: tuple[Any, ...] = ()

    def validate(self, tool_name: str, value: Any) -> Any:  # noqa: C901
        if not _matches_kind(self.kind, value):
            raise ToolArgumentError(
                tool_name,
                f"parameter {self.name!r} must be of type {self.kind.value}, "
                f"got {type(value).__name__}",
            )
        if self.kind in {ParamKind.INTEGER, ParamKind.NUMBER}:
            if self.minimum is not None and value < self.minimum:
                raise ToolArgumentError(
                    tool_name,
                    f"parameter {self.name!r} must be >= {self.minimum}",
                )
            if self.maximum is not None and value > self.maximum:
                raise ToolArgumentError(
                    tool_name,
                    f"parameter {self.name!r} must be <= {self.maximum}",
                )
        if (
            self.kind == ParamKind.STRING
            and self.min_length is not None
            and len(value) < self.min_length
        ):
            raise ToolArgumentError(
                tool_name,
                f"parameter {self.name!r} must be at least {self.min_length} characters",
            )
        if self.kind == ParamKind.ARRAY:
            if self.min_items is not None and len(value) < self.min_items:
                raise ToolArgumentError(
                    tool_name,
                    f"parameter {self.name!r} needs at least {self.min_items} items",
                )
            if self.max_items is not None and len(value) > self.max_items:
                raise ToolArgumentError(
                    tool_name,
                    f"parameter {self.name!r} allows at most {self.max_items} items",
                )
        if self.choices and value not in self.choices:
            allowed = ", ".join(str(choice) for choice in self.choices)
            raise ToolArgumentError(
                tool_name,
                f"parameter {self.name!r} must be one of: {allowed}",
            )
        return value

    def to_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": self.kind.value}
        if self.description:
            schema["description"] = self.description
        if self.default is not None:
            schema["default"] = self.default
        if self.minimum is not None:
            schema["minimum"] = self.minimum
        if self.maximum is not None:
            schema["maximum"] = self.maximum
        if self.min_length is not None:
            schema["minLength"] = self.min_length
        if self.min_items is not None:
            schema["minItems"] = self.min_items
        if self.max_items is not None:
            schema["maxItems"] = self.max_items
        if self.choices:
            schema["enum"] = list(self.choices)
        return schema


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """One registered tool binding."""

    name: str
    description: str
    handler: ToolHandler
    params: tuple[ToolParam, ...] = ()
    mutating: bool = False
    control_signal: bool = False

    def validate(self, arguments: Mapping[str, Any] | None) -> dict[str, Any]:
        """Return validated arguments with defaults filled in."""

        provided = dict(arguments or {})
        declared = {param.name for param in self.params}
        unexpected = sorted(set(provided) - declared)
        if unexpected:
            raise ToolArgumentError(self.name, f"unexpected parameters: {', '.join(unexpected)}")

        validated: dict[str, Any] = {}
        for param in self.params:
            value = provided.get(param.name)
            if value is None:
                if param.required:
                    raise ToolArgumentError(self.name, f"missing required parameter {param.name!r}")
                if param.default is not None:
                    validated[param.name] = param.default
                continue
            validated[param.name] = param.validate(self.name, value)
        return validated

    def to_schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": {
                "type": "object",
                "properties": {param.name: param.to_schema() for param in self.params},
                "required": [param.name for param in self.params if param.required],
            },
        }


@dataclass(slots=True)
class ToolCallRecord:
    """Outcome of one dispatched tool call."""

    name: str
    ok: bool
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name, "ok": self.ok}
        if self.ok:
            payload["result"] = self.result
        else:
            payload["error"] = self.error
        return payload


class ToolRegistry:
    """Name-keyed map of tool specs."""

    def __init__(self, specs: Iterable[ToolSpec] = ()) -> None:
        self._specs: dict[str, ToolSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._specs:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._specs[spec.name] = spec

    def get(self, name: str) -> ToolSpec:
        try:
            return self._specs[name]
        except KeyError as error:
            raise UnknownToolError(name) from error

    def names(self) -> list[str]:
        return list(self._specs)

    def specs(self) -> list[ToolSpec]:
        return list(self._specs.values())

    def subset(self, predicate: Callable[[ToolSpec], bool]) -> ToolRegistry:
        return ToolRegistry(spec for spec in self._specs.values() if predicate(spec))

    def invoke(self, name: str, arguments: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Validate ``arguments`` and run the tool handler."""

        spec = self.get(name)
        validated = spec.validate(arguments)
        logger.debug("Invoking tool %s with %s", name, sorted(validated))
        return spec.handler(validated)

    def schema(self) -> list[dict[str, Any]]:
        return [spec.to_schema() for spec in self._specs.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[ToolSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)


def is_control_signal(result: object) -> bool:
    if not isinstance(result, Mapping):
        return False
    found, _ = lookup(result, CONTROL_SIGNAL_KEY)
    return found


def dispatch_tool_calls(
    registry: ToolRegistry,
    tool_calls: Iterable[Mapping[str, Any]],
) -> tuple[dict[str, Any] | None, list[ToolCallRecord]]:
    """Run tool calls in order, stopping at the first control signal.

    Unknown, gated-out and invalid calls are recorded as failed calls rather
    than raised, so the reasoning loop can continue. So are OS and value
    errors raised by a handler.
    """

    records: list[ToolCallRecord] = []
    for call in tool_calls:
        name = str(call.get("name", ""))
        arguments = call.get("arguments") or {}
        if not isinstance(arguments, Mapping):
            records.append(ToolCallRecord(name=name, ok=False, error="arguments must be an object"))
            continue
        try:
            result = registry.invoke(name, arguments)
        except (UnknownToolError, ToolArgumentError) as error:
            logger.warning("Tool call %s rejected: %s", name, error)
            records.append(ToolCallRecord(name=name, ok=False, error=str(error)))
            continue
        except (OSError, ValueError) as error:
            logger.warning("Tool call %s failed: %s", name, error)
            records.append(
                ToolCallRecord(name=name, ok=False, error=f"{type(error).__name__}: {error}"),
            )
            continue
        records.append(ToolCallRecord(name=name, ok=True, result=result))
        if is_control_signal(result):
            return result, records
    return None, records


def control_signal_tools() -> list[ToolSpec]:
    """The completion and rejection primitives, available in every phase."""

    return [
        ToolSpec(
            name=COMPLETE_STEP_TOOL,
            description="Mark the current step as finished and record its result.",
            handler=_complete_step,
            params=(
                ToolParam(
                    "result",
                    ParamKind.STRING,
                    description="Result of the step, passed on to later steps.",
                ),
            ),
            control_signal=True,
        ),
        ToolSpec(
            name=REJECT_STEP_TOOL,
            description="Reject the current step and restart from an earlier one.",
            handler=_reject_step,
            params=(
                ToolParam(
                    "reason",
                    ParamKind.STRING,
                    description="Why the step is rejected.",
                    default=DEFAULT_REJECTION_REASON,
                ),
                ToolParam(
                    "restart_from_step",
                    ParamKind.INTEGER,
                    description="Step to restart from; defaults to the previous step.",
                    minimum=1,
                ),
            ),
            control_signal=True,
        ),
    ]


def _complete_step(arguments: dict[str, Any]) -> dict[str, Any]:
    return {
        CONTROL_SIGNAL_KEY: OutcomeCategory.STEP_COMPLETED.value,
        "result": arguments.get("result", ""),
    }


def _reject_step(arguments: dict[str, Any]) -> dict[str, Any]:
    return {
        CONTROL_SIGNAL_KEY: OutcomeCategory.STEP_REJECTED.value,
        "reason": arguments.get("reason", DEFAULT_REJECTION_REASON),
        "restart_from_step": arguments.get("restart_from_step"),
    }


def build_task_tools(  # noqa: PLR0913
    *,
    task: TaskView,
    current_step: int,
    continuity: ContextContinuity,
    create_task: Callable[[TaskCreate], TaskView],
    workspace_root: Path,
    command_timeout_seconds: int,
) -> ToolRegistry:
    """Full tool set bound to one task and step."""

    workspace = workspace_root.resolve()

    def read_file(arguments: dict[str, Any]) -> dict[str, Any]:
        path = _resolve_in_workspace(workspace, arguments["path"], tool="task_read_file")
        if not path.is_file():
            return {"ok": False, "error": f"File not found: {arguments['path']}"}
        content = path.read_text("utf-8", errors="replace")
        return {"ok": True, "path": arguments["path"], "content": content}

    def get_previous_results(arguments: dict[str, Any]) -> dict[str, Any]:
        results = continuity.previous_results(
            task.task_id,
            current_step=current_step,
            step=arguments.get("step"),
            limit=arguments["limit"],
        )
        return {
            "ok": True,
            "results": [{"step": step, "result": text} for step, text in results],
        }

    def create_file(arguments: dict[str, Any]) -> dict[str, Any]:
        path = _resolve_in_workspace(workspace, arguments["path"], tool="task_create_file")
        if path.exists() and not arguments["overwrite"]:
            return {"ok": False, "error": f"File already exists: {arguments['path']}"}
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(arguments["content"], "utf-8")
        return {"ok": True, "path": arguments["path"], "bytes": path.stat().st_size}

    def patch_file(arguments: dict[str, Any]) -> dict[str, Any]:
        path = _resolve_in_workspace(workspace, arguments["path"], tool="task_patch_file")
        if not path.is_file():
            return {"ok": False, "error": f"File not found: {arguments['path']}"}
        original = path.read_text("utf-8")
        search = arguments["search"]
        occurrences = original.count(search)
        if occurrences == 0:
            return {"ok": False, "error": f"Search text not found in {arguments['path']}"}
        if occurrences > 1 and not arguments["replace_all"]:
            return {
                "ok": False,
                "error": f"Search text matches {occurrences} times in {arguments['path']}; "
                "make it unique or set replace_all",
            }
        path.write_text(original.replace(search, arguments["replace"]), "utf-8")
        return {"ok": True, "path": arguments["path"], "replacements": occurrences}

    def rename_file(arguments: dict[str, Any]) -> dict[str, Any]:
        source = _resolve_in_workspace(workspace, arguments["path"], tool="task_rename_file")
        target = _resolve_in_workspace(workspace, arguments["new_path"], tool="task_rename_file")
        if not source.exists():
            return {"ok": False, "error": f"File not found: {arguments['path']}"}
        if target.exists():
            return {"ok": False, "error": f"Target already exists: {arguments['new_path']}"}
        target.parent.mkdir(parents=True, exist_ok=True)
        source.rename(target)
        return {"ok": True, "path": arguments["new_path"]}

    def execute_command(arguments: dict[str, Any]) -> dict[str, Any]:
        try:
            completed = subprocess.run(  # noqa: S603
                shlex.split(arguments["command"]),
                cwd=workspace,
                capture_output=True,
                text=True,
                timeout=command_timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return {"ok": False, "error": f"Command timed out after {command_timeout_seconds}s"}
        except FileNotFoundError as error:
            return {"ok": False, "error": f"Command not found: {error.filename}"}
        return {
            "ok": completed.returncode == 0,
            "exit_code": completed.returncode,
            "stdout": completed.stdout[-_OUTPUT_TAIL_CHARS:],
            "stderr": completed.stderr[-_OUTPUT_TAIL_CHARS:],
        }

    def create_sub_task(arguments: dict[str, Any]) -> dict[str, Any]:
        child = create_task(
            TaskCreate(
                title=arguments["title"],
                plan=arguments.get("plan", ""),
                description=arguments.get("description", ""),
                workflow_variant=WorkflowVariant(arguments["workflow_variant"]),
                parent_task_id=task.task_id,
            ),
        )
        return {"ok": True, "task_id": child.task_id, "status": child.status.value}

    specs = [
        ToolSpec(
            name="task_read_file",
            description="Read a text file from the workspace.",
            handler=read_file,
            params=(ToolParam("path", ParamKind.STRING, required=True, min_length=1),),
        ),
        ToolSpec(
            name="task_get_previous_results",
            description="Full results of earlier steps of this task.",
            handler=get_previous_results,
            params=(
                ToolParam("step", ParamKind.INTEGER, minimum=1),
                ToolParam("limit", ParamKind.INTEGER, default=3, minimum=1, maximum=10),
            ),
        ),
        ToolSpec(
            name="task_create_file",
            description="Create a text file in the workspace.",
            handler=create_file,
            params=(
                ToolParam("path", ParamKind.STRING, required=True, min_length=1),
                ToolParam("content", ParamKind.STRING, required=True),
                ToolParam("overwrite", ParamKind.BOOLEAN, default=False),
            ),
            mutating=True,
        ),
        ToolSpec(
            name="task_patch_file",
            description="Replace a block of text in a workspace file.",
            handler=patch_file,
            params=(
                ToolParam("path", ParamKind.STRING, required=True, min_length=1),
                ToolParam("search", ParamKind.STRING, required=True, min_length=1),
                ToolParam("replace", ParamKind.STRING, required=True),
                ToolParam("replace_all", ParamKind.BOOLEAN, default=False),
            ),
            mutating=True,
        ),
        ToolSpec(
            name="task_rename_file",
            description="Rename or move a file inside the workspace.",
            handler=rename_file,
            params=(
                ToolParam("path", ParamKind.STRING, required=True, min_length=1),
                ToolParam("new_path", ParamKind.STRING, required=True, min_length=1),
            ),
            mutating=True,
        ),
        ToolSpec(
            name="task_execute_command",
            description="Run a command in the workspace and return its output.",
            handler=execute_command,
            params=(ToolParam("command", ParamKind.STRING, required=True, min_length=1),),
            mutating=True,
        ),
        ToolSpec(
            name="task_create_sub_task",
            description="Create a child task that runs after this task completes.",
            handler=create_sub_task,
            params=(
                ToolParam("title", ParamKind.STRING, required=True, min_length=1),
                ToolParam("plan", ParamKind.STRING, default=""),
                ToolParam("description", ParamKind.STRING, default=""),
                ToolParam(
                    "workflow_variant",
                    ParamKind.STRING,
                    default=WorkflowVariant.SIMPLE.value,
                    choices=tuple(variant.value for variant in WorkflowVariant),
                ),
            ),
            mutating=True,
        ),
        *control_signal_tools(),
    ]
    return ToolRegistry(specs)


def _matches_kind(kind: ParamKind, value: Any) -> bool:
    if kind == ParamKind.STRING:
        return isinstance(value, str)
    if kind == ParamKind.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if kind == ParamKind.NUMBER:
        return isinstance(value, int | float) and not isinstance(value, bool)
    if kind == ParamKind.BOOLEAN:
        return isinstance(value, bool)
    if kind == ParamKind.ARRAY:
        return isinstance(value, list | tuple)
    return isinstance(value, Mapping)


def _resolve_in_workspace(workspace: Path, relative: str, *, tool: str) -> Path:
    candidate = (workspace / relative).resolve()
    if not candidate.is_relative_to(workspace):
        raise ToolArgumentError(tool, f"path escapes the workspace: {relative}")
    return candidate
