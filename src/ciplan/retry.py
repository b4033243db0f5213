# retry.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Tuple

from .errors import PipelineConfigError

SCRIPT_FAILURE = "script_failure"
RUNNER_SYSTEM_FAILURE = "runner_system_failure"
UNKNOWN_FAILURE = "unknown_failure"
RETRY_ALWAYS = "always"

RETRY_WHEN = (RETRY_ALWAYS, SCRIPT_FAILURE, RUNNER_SYSTEM_FAILURE, UNKNOWN_FAILURE)
MAX_RETRIES = 2


@dataclass(frozen=True)
class RetryPolicy:
    """
    Re-dispatch a failed job up to `max` extra times when the failure class
    is listed in `when`. No backoff, no state carried between attempts.
    """
    max: int = 0
    when: Tuple[str, ...] = field(default=(RETRY_ALWAYS,))

    def __post_init__(self) -> None:
        if not isinstance(self.max, int) or isinstance(self.max, bool):
            raise PipelineConfigError(f"retry max must be an integer, got {self.max!r}")
        if not 0 <= self.max <= MAX_RETRIES:
            raise PipelineConfigError(f"retry max must be between 0 and {MAX_RETRIES}, got {self.max}")
        unknown = [w for w in self.when if w not in RETRY_WHEN]
        if unknown:
            raise PipelineConfigError(f"unknown retry when {unknown}; expected one of {list(RETRY_WHEN)}")

    def matches(self, failure_class: str) -> bool:
        return RETRY_ALWAYS in self.when or failure_class in self.when

    def should_retry(self, failure_class: str, attempt: int) -> bool:
        """
        attempt is the 1-based number of the attempt that just failed.
        Attempt N may be followed by another one while N <= max.
        """
        return self.matches(failure_class) and attempt <= self.max


def parse_retry(value) -> RetryPolicy:
    """Accepts `2`, `{max: 2}`, `{max: 1, when: script_failure}` or a list for when."""
    if value is None:
        return RetryPolicy()
    if isinstance(value, RetryPolicy):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return RetryPolicy(max=value)
    if isinstance(value, dict):
        unknown = set(value) - {"max", "when"}
        if unknown:
            raise PipelineConfigError(f"unknown retry keys: {sorted(unknown)}")
        when = value.get("when", RETRY_ALWAYS)
        if isinstance(when, str):
            when = [when]
        return RetryPolicy(max=value.get("max", 0), when=tuple(when))
    raise PipelineConfigError(f"retry must be an int or a mapping, got {value!r}")


def classify_failure(exc: BaseException) -> str:
    """Map an execution exception onto a retry failure class."""
    failure_class = getattr(exc, "failure_class", None)
    if failure_class:
        return failure_class
    if isinstance(exc, OSError):
        return RUNNER_SYSTEM_FAILURE
    return UNKNOWN_FAILURE
