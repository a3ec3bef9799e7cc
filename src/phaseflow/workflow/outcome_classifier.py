"""Deterministic classification of generation outcomes."""

from __future__ import annotations

import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from phaseflow.workflow.errors import GenerationError
from phaseflow.workflow.models import OutcomeCategory

OUTCOME_CLASSIFIER_VERSION = 1
CONTROL_SIGNAL_KEY = "__divine_interrupt"
STATUS_KEY = "status"

_SIGNAL_CATEGORIES: dict[str, OutcomeCategory] = {
    OutcomeCategory.STEP_COMPLETED.value: OutcomeCategory.STEP_COMPLETED,
    OutcomeCategory.STEP_REJECTED.value: OutcomeCategory.STEP_REJECTED,
}
_STATUS_CATEGORIES: dict[str, OutcomeCategory] = {
    category.value: category for category in OutcomeCategory
}

_CONTEXT_LENGTH_PATTERNS: tuple[str, ...] = (
    "context length",
    "context_length",
    "maximum context",
    "context window",
    "too many tokens",
    "prompt is too long",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "429",
    "try again later",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "deadline exceeded",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "dns",
)


@dataclass(slots=True)
class OutcomeClassification:
    """Normalized classification result."""

    category: OutcomeCategory
    matched_rule: str
    status_value: str | None = None
    matched_pattern: str | None = None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": OUTCOME_CLASSIFIER_VERSION,
            "category": self.category.value,
            "matched_rule": self.matched_rule,
            "status_value": self.status_value,
            "matched_pattern": self.matched_pattern,
        }


def classify(raw_outcome: object) -> OutcomeCategory:
    """Category of one raw generation outcome. Never raises."""

    return classify_outcome(raw_outcome).category


def classify_outcome(raw_outcome: object) -> OutcomeClassification:
    """Classify one raw outcome with the rule that decided it.

    Control-signal markers win over status tags. Status tags and keys may be
    plain strings in any case, ``:symbol`` style strings, or enum members.
    """

    if raw_outcome is None:
        return OutcomeClassification(OutcomeCategory.EMPTY_RESPONSE, "empty")
    if isinstance(raw_outcome, str | bytes):
        if not raw_outcome.strip():
            return OutcomeClassification(OutcomeCategory.EMPTY_RESPONSE, "empty")
        return OutcomeClassification(
            OutcomeCategory.UNKNOWN,
            "unsupported_shape",
            status_value=type(raw_outcome).__name__,
        )
    if not isinstance(raw_outcome, Mapping):
        return OutcomeClassification(
            OutcomeCategory.UNKNOWN,
            "unsupported_shape",
            status_value=type(raw_outcome).__name__,
        )
    if not raw_outcome:
        return OutcomeClassification(OutcomeCategory.EMPTY_RESPONSE, "empty")

    found, signal = lookup(raw_outcome, CONTROL_SIGNAL_KEY)
    if found:
        token = normalize_token(signal)
        category = _SIGNAL_CATEGORIES.get(token or "")
        if category is None:
            return OutcomeClassification(
                OutcomeCategory.UNKNOWN,
                "unrecognized_signal",
                status_value=_render(signal),
            )
        return OutcomeClassification(category, "control_signal", status_value=token)

    found, status = lookup(raw_outcome, STATUS_KEY)
    if not found:
        return OutcomeClassification(OutcomeCategory.UNKNOWN, "missing_status")
    token = normalize_token(status)
    category = _STATUS_CATEGORIES.get(token or "")
    if category is None:
        return OutcomeClassification(
            OutcomeCategory.UNKNOWN,
            "unrecognized_status",
            status_value=_render(status),
        )
    return OutcomeClassification(category, "status_tag", status_value=token)


def classify_exception(error: BaseException) -> OutcomeClassification | None:
    """Classify an exception raised by the generation service.

    Returns ``None`` for exceptions that are not generation outcomes; callers
    should let those propagate.
    """

    if isinstance(error, GenerationError):
        return OutcomeClassification(error.category, "generation_error")
    if isinstance(error, TimeoutError | subprocess.TimeoutExpired):
        return OutcomeClassification(OutcomeCategory.TIMEOUT, "timeout_exception")
    if isinstance(error, ConnectionError):
        return OutcomeClassification(OutcomeCategory.NETWORK_ERROR, "connection_exception")
    if isinstance(error, MemoryError):
        return OutcomeClassification(OutcomeCategory.FAILURE, "resource_exhausted")
    return None


def classify_process_failure(
    *,
    exit_code: int,
    stdout: str,
    stderr: str,
    transient_exit_codes: tuple[int, ...],
) -> OutcomeClassification:
    """Classify a non-zero, non-timeout exit of a generation subprocess."""

    haystack = f"{stderr}\n{stdout}".lower()

    rules: tuple[tuple[str, tuple[str, ...], OutcomeCategory], ...] = (
        ("context_length", _CONTEXT_LENGTH_PATTERNS, OutcomeCategory.CONTEXT_LENGTH_ERROR),
        ("rate_limit", _RATE_LIMIT_PATTERNS, OutcomeCategory.RATE_LIMIT_ERROR),
        ("timeout", _TIMEOUT_PATTERNS, OutcomeCategory.TIMEOUT),
        ("network", _NETWORK_PATTERNS, OutcomeCategory.NETWORK_ERROR),
    )
    for rule, patterns, category in rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return OutcomeClassification(category, rule, matched_pattern=pattern)

    if exit_code in transient_exit_codes:
        return OutcomeClassification(
            OutcomeCategory.TIMEOUT,
            "transient_exit_code",
            status_value=str(exit_code),
        )
    return OutcomeClassification(
        OutcomeCategory.FAILURE,
        "fallback_failure",
        status_value=str(exit_code),
    )


def lookup(mapping: Mapping[object, object], name: str) -> tuple[bool, object]:
    """Find ``name`` among string, ``:symbol`` or enum keys, case-insensitively."""

    if name in mapping:
        return True, mapping[name]
    for key, value in mapping.items():
        if normalize_token(key) == name:
            return True, value
    return False, None


def normalize_token(value: object) -> str | None:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if not isinstance(value, str):
        return None
    token = value.strip().lstrip(":").strip().lower()
    return token.replace("-", "_").replace(" ", "_")


def _render(value: object) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
