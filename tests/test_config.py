from __future__ import annotations

from pathlib import Path

import allure
import pytest

from phaseflow.config import Settings

pytestmark = [
    allure.epic("Workflow Engine"),
    allure.feature("Configuration"),
]

_ENV_NAMES = (
    "PHASEFLOW_DB_PATH",
    "PHASEFLOW_RECURSION_BUDGET",
    "PHASEFLOW_MAX_PHASE_INVOCATIONS",
    "PHASEFLOW_GENERATION_COMMAND_TEMPLATE",
    "PHASEFLOW_GENERATION_TIMEOUT_SECONDS",
    "PHASEFLOW_GENERATION_EXTENDED_TIMEOUT_SECONDS",
    "PHASEFLOW_GENERATION_TRANSIENT_EXIT_CODES",
    "PHASEFLOW_KEEP_WORKDIR",
    "PHASEFLOW_WORKSPACE_ROOT",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".phaseflow.db")
    assert settings.engine.recursion_budget == 10
    assert settings.engine.max_phase_invocations == 100
    assert settings.generation.timeout_seconds == 120
    assert settings.generation.extended_timeout_seconds == 300
    assert settings.generation.transient_exit_codes == (137, 143)
    assert settings.generation.keep_workdir is True
    assert settings.generation.command_template == ""
    settings.validate()


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("PHASEFLOW_RECURSION_BUDGET", "3")
    monkeypatch.setenv("PHASEFLOW_MAX_PHASE_INVOCATIONS", "7")
    monkeypatch.setenv("PHASEFLOW_GENERATION_COMMAND_TEMPLATE", "  agent {prompt_file}  ")
    monkeypatch.setenv("PHASEFLOW_GENERATION_TRANSIENT_EXIT_CODES", "1, 2,,3")
    monkeypatch.setenv("PHASEFLOW_KEEP_WORKDIR", "off")
    monkeypatch.setenv("PHASEFLOW_WORKSPACE_ROOT", "/srv/work")

    settings = Settings.from_env(db_path=Path("custom.db"))

    assert settings.db_path == Path("custom.db")
    assert settings.engine.recursion_budget == 3
    assert settings.engine.max_phase_invocations == 7
    assert settings.generation.command_template == "agent {prompt_file}"
    assert settings.generation.transient_exit_codes == (1, 2, 3)
    assert settings.generation.keep_workdir is False
    assert settings.tools.workspace_root == Path("/srv/work")
    settings.validate_for_generation()


def test_invalid_boolean(monkeypatch) -> None:
    monkeypatch.setenv("PHASEFLOW_KEEP_WORKDIR", "sometimes")
    with pytest.raises(ValueError, match="Invalid boolean value for PHASEFLOW_KEEP_WORKDIR"):
        Settings.from_env()


def test_invalid_exit_codes(monkeypatch) -> None:
    monkeypatch.setenv("PHASEFLOW_GENERATION_TRANSIENT_EXIT_CODES", "137,abc")
    with pytest.raises(ValueError, match="Invalid integer"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("PHASEFLOW_RECURSION_BUDGET", "-1", "PHASEFLOW_RECURSION_BUDGET must be >= 0."),
        ("PHASEFLOW_MAX_PHASE_INVOCATIONS", "0", "PHASEFLOW_MAX_PHASE_INVOCATIONS must be > 0."),
        ("PHASEFLOW_GENERATION_EXTENDED_TIMEOUT_SECONDS", "60", "must be >="),
    ],
)
def test_validate_rejects_out_of_range(monkeypatch, name: str, value: str, message: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=message):
        Settings.from_env().validate()


def test_generation_requires_command() -> None:
    with pytest.raises(ValueError, match="A generation command is required"):
        Settings.from_env().validate_for_generation()
