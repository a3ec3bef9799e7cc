from __future__ import annotations

import json
import sys
from pathlib import Path

import allure
import pytest

from phaseflow.generation import CliGenerationService, ExecutionContext, GenerationRequest
from phaseflow.generation.cli_backend import _build_run_args
from phaseflow.workflow.errors import GenerationError
from phaseflow.workflow.models import AccessClass, OutcomeCategory, WorkflowVariant
from phaseflow.workflow.outcome_classifier import CONTROL_SIGNAL_KEY, classify
from phaseflow.workflow.prompts import PhasePrompt
from phaseflow.workflow.tools import ToolRegistry, control_signal_tools

pytestmark = [
    allure.epic("Generation Backend"),
    allure.feature("CLI Agent Runner"),
]

_ECHO_AGENT = f"{sys.executable} -m phaseflow.generation.echo_agent --request-file {{request_file}}"


def _request(*, step: int = 2, timeout_seconds: int = 30) -> GenerationRequest:
    return GenerationRequest(
        prompt=PhasePrompt(system="system text", user="user text"),
        tools=ToolRegistry(control_signal_tools()),
        temperature=1.4,
        timeout_seconds=timeout_seconds,
        context=ExecutionContext(
            task_id="task-1",
            step=step,
            phase_count=3,
            workflow_variant=WorkflowVariant.SIMPLE,
            purpose="Implement: Executing the planned solution",
            access_class=AccessClass.FULL,
            temperature=1.4,
        ),
    )


def _service(tmp_path: Path, command_template: str) -> CliGenerationService:
    return CliGenerationService(
        command_template=command_template,
        workdir_root=tmp_path / "workdir",
        transient_exit_codes=(137, 143),
    )


def test_build_run_args_quotes_inputs(tmp_path: Path) -> None:
    run_args, command_head = _build_run_args(
        command_template="agent --prompt {prompt} --file {prompt_file} -t {temperature}",
        prompt="fix 'quoted' text",
        prompt_file=tmp_path / "prompt file.txt",
        request_file=tmp_path / "request.json",
        temperature=1.5,
    )

    assert command_head == "agent"
    assert run_args == [
        "agent",
        "--prompt",
        "fix 'quoted' text",
        "--file",
        str(tmp_path / "prompt file.txt"),
        "-t",
        "1.50",
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("agent --fast", "must include"),
        ("agent {prompt} {model}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(tmp_path: Path, template: str, message: str) -> None:
    with pytest.raises(GenerationError, match=message) as raised:
        _build_run_args(
            command_template=template,
            prompt="p",
            prompt_file=tmp_path / "prompt.txt",
            request_file=tmp_path / "request.json",
            temperature=1.0,
        )
    assert raised.value.category == OutcomeCategory.FAILURE


def test_echo_agent_completion_is_dispatched(tmp_path: Path) -> None:
    outcome = _service(tmp_path, _ECHO_AGENT).invoke(_request())

    assert outcome == {
        CONTROL_SIGNAL_KEY: "step_completed",
        "result": "Step 2 done: Implement: Executing the planned solution",
    }
    workdir = tmp_path / "workdir" / "task-1" / "step_02"
    request_payload = json.loads((workdir / "request.json").read_text("utf-8"))
    assert request_payload["context"]["step"] == 2
    assert request_payload["messages"][1] == {"role": "user", "content": "user text"}
    assert {tool["name"] for tool in request_payload["tools"]} == {
        "task_complete_step",
        "task_reject_step",
    }
    tool_results = json.loads((workdir / "tool_results.json").read_text("utf-8"))
    assert tool_results[0]["ok"] is True


def test_echo_agent_rejection(tmp_path: Path) -> None:
    service = _service(tmp_path, f"{_ECHO_AGENT} --mode reject --restart-from-step 1")

    outcome = service.invoke(_request())

    assert classify(outcome) == OutcomeCategory.STEP_REJECTED
    assert outcome["restart_from_step"] == 1


@pytest.mark.parametrize(
    ("mode", "expected"),
    [
        ("silent", OutcomeCategory.SUCCESS),
        ("timeout", OutcomeCategory.TIMEOUT),
        ("failure", OutcomeCategory.FAILURE),
        ("empty", OutcomeCategory.EMPTY_RESPONSE),
    ],
)
def test_echo_agent_modes(tmp_path: Path, mode: str, expected: OutcomeCategory) -> None:
    outcome = _service(tmp_path, f"{_ECHO_AGENT} --mode {mode}").invoke(_request())

    assert classify(outcome) == expected


def test_slow_agent_times_out(tmp_path: Path) -> None:
    service = _service(tmp_path, f"{_ECHO_AGENT} --mode sleep --sleep-seconds 10")

    outcome = service.invoke(_request(timeout_seconds=1))

    assert classify(outcome) == OutcomeCategory.TIMEOUT
    assert outcome["error"] == "exceeded 1s"


def test_plain_text_output_is_success(tmp_path: Path) -> None:
    script = "import sys; print('just an answer')"
    service = _service(tmp_path, f"{sys.executable} -c \"{script}\" {{prompt_file}}")

    outcome = service.invoke(_request())

    assert outcome == {"status": "success", "response": "just an answer"}


def test_undecodable_output_is_replaced(tmp_path: Path) -> None:
    script = "import sys; sys.stdout.buffer.write(bytes([255, 254]) + b' garbage')"
    service = _service(tmp_path, f"{sys.executable} -c \"{script}\" {{prompt_file}}")

    outcome = service.invoke(_request())

    assert classify(outcome) == OutcomeCategory.SUCCESS
    assert outcome["response"] == "\ufffd\ufffd garbage"


def test_undecodable_stderr_on_failure_is_classified(tmp_path: Path) -> None:
    script = "import sys; sys.stderr.buffer.write(bytes([255]) + b' boom'); sys.exit(1)"
    service = _service(tmp_path, f"{sys.executable} -c \"{script}\" {{prompt_file}}")

    outcome = service.invoke(_request())

    assert classify(outcome) == OutcomeCategory.FAILURE
    assert outcome["error"] == "\ufffd boom"


def test_failed_process_is_classified(tmp_path: Path) -> None:
    script = "import sys; sys.stderr.write('HTTP 429 too many requests'); sys.exit(1)"
    service = _service(tmp_path, f"{sys.executable} -c \"{script}\" {{prompt_file}}")

    outcome = service.invoke(_request())

    assert classify(outcome) == OutcomeCategory.RATE_LIMIT_ERROR
    assert outcome["exit_code"] == 1
    assert "429" in outcome["error"]


def test_missing_command_raises_failure(tmp_path: Path) -> None:
    service = _service(tmp_path, "phaseflow-no-such-agent {prompt_file}")

    with pytest.raises(GenerationError) as raised:
        service.invoke(_request())

    assert raised.value.category == OutcomeCategory.FAILURE


def test_workdir_removed_when_not_kept(tmp_path: Path) -> None:
    service = CliGenerationService(
        command_template=_ECHO_AGENT,
        workdir_root=tmp_path / "workdir",
        keep_workdir=False,
    )

    service.invoke(_request())

    assert not (tmp_path / "workdir" / "task-1" / "step_02").exists()
