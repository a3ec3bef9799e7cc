"""Runtime configuration for the workflow engine and its collaborators."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class EngineSettings:
    """Phase loop and recursion limits."""

    recursion_budget: int = 10
    max_phase_invocations: int = 100


@dataclass(slots=True)
class GenerationSettings:
    """External generation command settings."""

    command_template: str = ""
    timeout_seconds: int = 120
    extended_timeout_seconds: int = 300
    transient_exit_codes: tuple[int, ...] = (137, 143)
    workdir_root: Path = Path(".phaseflow/workdir")
    keep_workdir: bool = True


@dataclass(slots=True)
class ToolSettings:
    """Settings of the tools handed to each phase."""

    workspace_root: Path = Path(".")
    command_timeout_seconds: int = 60


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".phaseflow.db")
    sqlite_busy_timeout_ms: int = 5_000
    engine: EngineSettings = field(default_factory=EngineSettings)
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    tools: ToolSettings = field(default_factory=ToolSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("PHASEFLOW_DB_PATH", ".phaseflow.db")),
            sqlite_busy_timeout_ms=int(os.getenv("PHASEFLOW_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            engine=EngineSettings(
                recursion_budget=int(os.getenv("PHASEFLOW_RECURSION_BUDGET", "10")),
                max_phase_invocations=int(os.getenv("PHASEFLOW_MAX_PHASE_INVOCATIONS", "100")),
            ),
            generation=GenerationSettings(
                command_template=os.getenv("PHASEFLOW_GENERATION_COMMAND_TEMPLATE", "").strip(),
                timeout_seconds=int(os.getenv("PHASEFLOW_GENERATION_TIMEOUT_SECONDS", "120")),
                extended_timeout_seconds=int(
                    os.getenv("PHASEFLOW_GENERATION_EXTENDED_TIMEOUT_SECONDS", "300"),
                ),
                transient_exit_codes=_env_int_tuple(
                    "PHASEFLOW_GENERATION_TRANSIENT_EXIT_CODES",
                    default=(137, 143),
                ),
                workdir_root=Path(os.getenv("PHASEFLOW_WORKDIR_ROOT", ".phaseflow/workdir")),
                keep_workdir=_env_bool("PHASEFLOW_KEEP_WORKDIR", default=True),
            ),
            tools=ToolSettings(
                workspace_root=Path(os.getenv("PHASEFLOW_WORKSPACE_ROOT", ".")),
                command_timeout_seconds=int(
                    os.getenv("PHASEFLOW_COMMAND_TIMEOUT_SECONDS", "60"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("PHASEFLOW_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.engine.recursion_budget < 0:
            raise ValueError("PHASEFLOW_RECURSION_BUDGET must be >= 0.")
        if self.engine.max_phase_invocations <= 0:
            raise ValueError("PHASEFLOW_MAX_PHASE_INVOCATIONS must be > 0.")
        if self.generation.timeout_seconds <= 0:
            raise ValueError("PHASEFLOW_GENERATION_TIMEOUT_SECONDS must be > 0.")
        if self.generation.extended_timeout_seconds < self.generation.timeout_seconds:
            raise ValueError(
                "PHASEFLOW_GENERATION_EXTENDED_TIMEOUT_SECONDS must be >= "
                "PHASEFLOW_GENERATION_TIMEOUT_SECONDS.",
            )
        if self.tools.command_timeout_seconds <= 0:
            raise ValueError("PHASEFLOW_COMMAND_TIMEOUT_SECONDS must be > 0.")

    def validate_for_generation(self) -> None:
        """Raise configuration error if the generation command is missing."""

        self.validate()
        if not self.generation.command_template:
            raise ValueError(
                "A generation command is required. Set PHASEFLOW_GENERATION_COMMAND_TEMPLATE.",
            )


def _env_int_tuple(name: str, *, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    values: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            values.append(int(token))
        except ValueError as error:
            raise ValueError(f"Invalid integer in {name}: {token!r}") from error
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
