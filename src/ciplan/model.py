# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, List, Dict

from .retry import RetryPolicy

# Job statuses
SUCCESS = "success"
FAILED = "failed"
SKIPPED = "skipped"
MANUAL = "manual"
CANCELED = "canceled"

# Pipeline-only statuses
BLOCKED = "blocked"

# `when` values
ON_SUCCESS = "on_success"
ALWAYS = "always"
WHEN_MANUAL = "manual"
NEVER = "never"
WHEN_VALUES = (ON_SUCCESS, ALWAYS, WHEN_MANUAL, NEVER)

DEFAULT_STAGES = [".pre", "build", "test", "deploy", ".post"]
DEFAULT_STAGE = "test"


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None


@dataclass(frozen=True)
class Need:
    """
    Explicit dependency edge.

    artifacts=False means only the completion signal propagates; the
    upstream's artifacts are not staged into the dependent's workspace.
    """
    job: str
    artifacts: bool = True
    optional: bool = False


@dataclass(frozen=True)
class Rule:
    """One (predicate, action) pair of a job's `rules:` list."""
    if_: str | None = None
    when: str = ON_SUCCESS
    allow_failure: Optional[bool] = None
    variables: Dict[str, str] = field(default_factory=dict)
    changes: Optional[List[str]] = None


@dataclass(frozen=True)
class ArtifactSpec:
    paths: List[str] = field(default_factory=list)
    expire_in: str | None = None
    when: str = "on_success"              # on_success | on_failure | always
    reports: Dict[str, List[str]] = field(default_factory=dict)   # junit, coverage_report

    @property
    def report_paths(self) -> List[str]:
        out: List[str] = []
        for paths in self.reports.values():
            out.extend(paths)
        return out

    @property
    def all_paths(self) -> List[str]:
        return list(self.paths) + [p for p in self.report_paths if p not in self.paths]


@dataclass(frozen=True)
class CacheSpec:
    """
    key is either a template ("$CI_COMMIT_REF_SLUG-deps") or, when `files` is
    set, derived from the content hash of those files (optionally prefixed).
    """
    paths: List[str] = field(default_factory=list)
    key: str = "default"
    files: Optional[List[str]] = None
    prefix: str | None = None
    policy: str = "pull-push"             # pull-push | pull | push


@dataclass
class Job:
    """
    A CI job: steps + placement (stage/needs) + gating (rules/when) +
    failure handling (retry/allow_failure) + data passing (artifacts/cache).

    needs=None  -> classic stage barrier (wait for every earlier stage)
    needs=[]    -> no dependencies at all, start immediately
    """
    name: str
    steps: list[Step]
    stage: str = DEFAULT_STAGE
    needs: Optional[list[Need]] = None
    rules: list[Rule] = field(default_factory=list)
    when: str = ON_SUCCESS
    image: str | None = None
    tags: list[str] = field(default_factory=list)
    variables: Dict[str, str] = field(default_factory=dict)
    after_steps: list[Step] = field(default_factory=list)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    artifacts: Optional[ArtifactSpec] = None
    cache: list[CacheSpec] = field(default_factory=list)
    allow_failure: Optional[bool] = None   # None -> false, except for manual jobs
    allow_failure_exit_codes: list[int] = field(default_factory=list)
    interruptible: bool = False
    coverage: str | None = None           # regex applied to the job log


@dataclass
class Pipeline:
    jobs: list[Job]
    stages: list[str] = field(default_factory=lambda: list(DEFAULT_STAGES))
    variables: Dict[str, str] = field(default_factory=dict)
    workflow_rules: Optional[list[Rule]] = None
    name: str = "pipeline"

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    def stage_index(self, stage: str) -> int:
        return self.stages.index(stage)


@dataclass
class JobResult:
    name: str
    status: str
    stage: str = DEFAULT_STAGE
    attempts: int = 0
    allow_failure: bool = False
    reason: str = ""
    failure_class: str | None = None
    exit_code: int | None = None
    coverage: float | None = None
    duration: float = 0.0
    output: str = ""
    reports: Dict[str, dict] = field(default_factory=dict)

    @property
    def allowed_failure(self) -> bool:
        return self.status == FAILED and self.allow_failure

    @property
    def passed(self) -> bool:
        """True when dependents may proceed (success or masked failure)."""
        return self.status == SUCCESS or self.allowed_failure


@dataclass
class PipelineResult:
    status: str
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    reason: str = ""

    def statuses(self) -> Dict[str, str]:
        return {name: r.status for name, r in self.jobs.items()}

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS
