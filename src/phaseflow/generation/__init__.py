"""Generation service implementations."""

from phaseflow.generation.base import (
    ExecutionContext,
    GenerationError,
    GenerationRequest,
    GenerationService,
    RawOutcome,
)
from phaseflow.generation.cli_backend import CliGenerationService

__all__ = [
    "CliGenerationService",
    "ExecutionContext",
    "GenerationError",
    "GenerationRequest",
    "GenerationService",
    "RawOutcome",
]
