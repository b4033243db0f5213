# errors.py
from __future__ import annotations

from dataclasses import dataclass


class PipelineConfigError(ValueError):
    """Invalid pipeline definition (unknown stage, missing need, cycle, bad key...)."""


class ExpressionError(PipelineConfigError):
    """A rules `if:` expression could not be parsed."""


@dataclass
class StepFailure(Exception):
    """A command exited non-zero (script_failure)."""
    job: str
    step: str
    cmd: str
    exit_code: int
    output: str = ""

    failure_class = "script_failure"

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class RunnerSystemFailure(Exception):
    """The environment around the job broke (workspace, IO, missing shell)."""
    job: str
    message: str

    failure_class = "runner_system_failure"

    def __str__(self) -> str:
        return f"[{self.job}] runner system failure: {self.message}"


@dataclass
class JobCanceled(Exception):
    job: str
    step: str | None = None

    def __str__(self) -> str:
        where = f" before step '{self.step}'" if self.step else ""
        return f"[{self.job}] canceled{where}"
