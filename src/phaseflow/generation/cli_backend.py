"""Subprocess-based generation service for CLI agents."""

from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

from phaseflow.generation.base import GenerationRequest, RawOutcome
from phaseflow.workflow.errors import GenerationError
from phaseflow.workflow.models import OutcomeCategory
from phaseflow.workflow.outcome_classifier import classify_process_failure
from phaseflow.workflow.tools import dispatch_tool_calls

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_ERROR_TAIL_CHARS = 2_000
_TEMPLATE_INPUT_PLACEHOLDERS = ("{prompt}", "{prompt_file}", "{request_file}")


@dataclass(slots=True)
class ProcessResult:
    """Execution metadata of one generation subprocess."""

    exit_code: int
    timed_out: bool
    stdout_path: Path
    stderr_path: Path


class CliGenerationService:
    """Run a command template once per phase and read its JSON answer from stdout.

    The agent receives the prompt (inline, as a file, or inside ``request.json``
    together with the tool schema). It may answer with a JSON object carrying
    ``status``, ``response`` and ``tool_calls``; tool calls are dispatched
    through the phase's gated tool registry and the first control signal ends
    the phase.
    """

    def __init__(
        self,
        *,
        command_template: str,
        workdir_root: Path,
        transient_exit_codes: tuple[int, ...] = (137, 143),
        keep_workdir: bool = True,
    ) -> None:
        self.command_template = command_template
        self.workdir_root = workdir_root
        self.transient_exit_codes = transient_exit_codes
        self.keep_workdir = keep_workdir

    def invoke(self, request: GenerationRequest) -> RawOutcome:
        context = request.context
        workdir = self.workdir_root / context.task_id / f"step_{context.step:02d}"
        workdir.mkdir(parents=True, exist_ok=True)
        try:
            return self._invoke_in(workdir, request)
        finally:
            if not self.keep_workdir:
                shutil.rmtree(workdir, ignore_errors=True)

    def _invoke_in(self, workdir: Path, request: GenerationRequest) -> RawOutcome:
        prompt_text = request.prompt.render()
        prompt_file = workdir / "prompt.txt"
        request_file = workdir / "request.json"
        stdout_path = workdir / "agent_stdout.log"
        stderr_path = workdir / "agent_stderr.log"
        prompt_file.write_text(prompt_text, "utf-8")
        _write_json(
            request_file,
            {
                "context": request.context.to_payload(),
                "messages": request.prompt.to_messages(),
                "tools": request.tools.schema(),
                "temperature": request.temperature,
                "timeout_seconds": request.timeout_seconds,
            },
        )

        run_args, command_head = _build_run_args(
            command_template=self.command_template,
            prompt=prompt_text,
            prompt_file=prompt_file,
            request_file=request_file,
            temperature=request.temperature,
        )

        env = os.environ.copy()
        env["PHASEFLOW_TASK_ID"] = request.context.task_id
        env["PHASEFLOW_STEP"] = str(request.context.step)
        env["PHASEFLOW_TEMPERATURE"] = f"{request.temperature:.2f}"

        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                result = _run_subprocess(
                    run_args=run_args,
                    env=env,
                    timeout_seconds=request.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    stdout_path=stdout_path,
                    stderr_path=stderr_path,
                )
        except FileNotFoundError as error:
            raise GenerationError(
                f"Generation command not found: {command_head}",
                category=OutcomeCategory.FAILURE,
            ) from error
        except OSError as error:
            raise GenerationError(
                f"Generation command failed to start: {error}",
                category=OutcomeCategory.NETWORK_ERROR,
            ) from error

        if result.timed_out:
            logger.warning(
                "Generation for task %s step %d timed out after %ds",
                request.context.task_id,
                request.context.step,
                request.timeout_seconds,
            )
            return {
                "status": OutcomeCategory.TIMEOUT.value,
                "error": f"exceeded {request.timeout_seconds}s",
            }

        stdout = result.stdout_path.read_text("utf-8", errors="replace")
        stderr = result.stderr_path.read_text("utf-8", errors="replace")
        if result.exit_code != 0:
            classification = classify_process_failure(
                exit_code=result.exit_code,
                stdout=stdout,
                stderr=stderr,
                transient_exit_codes=self.transient_exit_codes,
            )
            logger.warning(
                "Generation command exited with %d (%s)",
                result.exit_code,
                classification.matched_rule,
            )
            return {
                "status": classification.category.value,
                "error": _tail(stderr.strip() or stdout.strip()),
                "exit_code": result.exit_code,
            }

        return _interpret_stdout(stdout, request=request, workdir=workdir)


def _interpret_stdout(stdout: str, *, request: GenerationRequest, workdir: Path) -> RawOutcome:
    text = stdout.strip()
    if not text:
        return {}
    try:
        parsed: Any = json.loads(text)
    except json.JSONDecodeError:
        return {"status": OutcomeCategory.SUCCESS.value, "response": text}
    if not isinstance(parsed, dict):
        return parsed

    tool_calls = parsed.pop("tool_calls", None)
    if not isinstance(tool_calls, list):
        return parsed

    signal, records = dispatch_tool_calls(
        request.tools,
        [call for call in tool_calls if isinstance(call, dict)],
    )
    _write_json(workdir / "tool_results.json", [record.to_payload() for record in records])
    if signal is not None:
        return signal
    parsed["tool_results"] = [record.to_payload() for record in records]
    return parsed


def _build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    request_file: Path,
    temperature: float,
) -> tuple[list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise GenerationError(
            "Generation command template is empty.",
            category=OutcomeCategory.FAILURE,
        )
    if not any(placeholder in stripped for placeholder in _TEMPLATE_INPUT_PLACEHOLDERS):
        raise GenerationError(
            "Generation command template must include {prompt}, {prompt_file} or {request_file}.",
            category=OutcomeCategory.FAILURE,
        )

    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            request_file=shlex.quote(str(request_file)),
            temperature=f"{temperature:.2f}",
        )
    except KeyError as error:
        raise GenerationError(
            f"Unsupported command template placeholder: {error}",
            category=OutcomeCategory.FAILURE,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise GenerationError(
            "Generation command template rendered empty command.",
            category=OutcomeCategory.FAILURE,
        )
    return argv, argv[0]


def _run_subprocess(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    stdout_path: Path,
    stderr_path: Path,
) -> ProcessResult:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()

    while True:
        returncode = process.poll()
        if returncode is not None:
            return ProcessResult(
                exit_code=returncode,
                timed_out=False,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )

        if time.monotonic() - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return ProcessResult(
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )

        time.sleep(0.05)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _write_json(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), "utf-8")


def _tail(text: str) -> str:
    return text[-_ERROR_TAIL_CHARS:]
