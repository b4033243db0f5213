# src/ciplan/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Iterable, List, Optional, Dict, Union

from .model import (
    ArtifactSpec,
    CacheSpec,
    DEFAULT_STAGE,
    DEFAULT_STAGES,
    Job,
    Need,
    Pipeline,
    Rule,
    Step,
)
from .retry import RetryPolicy, parse_retry


# ---------------------------------------------------------------------
# Step / rule / need helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


def rule(
    if_: str | None = None,
    *,
    when: str = "on_success",
    allow_failure: Optional[bool] = None,
    variables: Optional[Dict[str, Any]] = None,
    changes: Optional[List[str]] = None,
) -> Rule:
    """rule('$CI_COMMIT_BRANCH == $CI_DEFAULT_BRANCH', when='manual')"""
    return Rule(
        if_=if_,
        when=when,
        allow_failure=allow_failure,
        variables={k: str(v) for k, v in (variables or {}).items()},
        changes=changes,
    )


def need(job_name: str, *, artifacts: bool = True, optional: bool = False) -> Need:
    return Need(job=job_name, artifacts=artifacts, optional=optional)


def _needs(needs: Optional[Iterable[Union[str, Need]]]) -> Optional[List[Need]]:
    if needs is None:
        return None
    return [n if isinstance(n, Need) else Need(job=n) for n in needs]


# ---------------------------------------------------------------------
# Functional Job helper (nice DX)
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    stage: str = DEFAULT_STAGE,
    needs: Optional[List[Union[str, Need]]] = None,
    rules: Optional[List[Rule]] = None,
    when: str = "on_success",
    image: str | None = None,
    tags: Optional[List[str]] = None,
    variables: Optional[Dict[str, Any]] = None,
    after: Optional[List[Step]] = None,
    retry: Union[int, dict, RetryPolicy, None] = None,
    artifacts: Optional[ArtifactSpec] = None,
    cache: Optional[List[CacheSpec]] = None,
    allow_failure: Optional[bool] = None,
    interruptible: bool = False,
    coverage: str | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        stage=stage,
        needs=_needs(needs),
        rules=list(rules or []),
        when=when,
        image=image,
        tags=list(tags or []),
        variables={k: str(v) for k, v in (variables or {}).items()},
        after_steps=list(after or []),
        retry=parse_retry(retry),
        artifacts=artifacts,
        cache=list(cache or []),
        allow_failure=allow_failure,
        interruptible=interruptible,
        coverage=coverage,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._stage: str = DEFAULT_STAGE
        self._needs: Optional[list[Need]] = None
        self._steps: list[Step] = []
        self._after: list[Step] = []
        self._rules: list[Rule] = []
        self._when: str = "on_success"
        self._variables: dict[str, str] = {}
        self._retry: RetryPolicy = RetryPolicy()
        self._artifacts: Optional[ArtifactSpec] = None
        self._cache: list[CacheSpec] = []
        self._allow_failure: Optional[bool] = None
        self._interruptible: bool = False
        self._coverage: str | None = None

    def in_stage(self, stage: str):
        self._stage = stage
        return self

    def depends_on(self, *job_names: str, artifacts: bool = True):
        if self._needs is None:
            self._needs = []
        self._needs.extend(Need(job=n, artifacts=artifacts) for n in job_names)
        return self

    def no_needs(self):
        """Start immediately instead of waiting for earlier stages."""
        self._needs = []
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def after_step(self, name: str, run: str, cwd: str | None = None):
        self._after.append(Step(name=name, run=run, cwd=cwd))
        return self

    def when_rule(self, if_: str | None = None, **kwargs):
        self._rules.append(rule(if_, **kwargs))
        return self

    def manual(self):
        self._when = "manual"
        return self

    def with_env(self, **env):
        # force values to str for stable hashing + env compatibility
        self._variables.update({k: str(v) for k, v in env.items()})
        return self

    def with_retry(self, max: int = 1, when: Iterable[str] = ("always",)):
        self._retry = RetryPolicy(max=max, when=tuple(when))
        return self

    def with_artifacts(self, *paths: str, expire_in: str | None = None, when: str = "on_success", **reports: List[str]):
        self._artifacts = ArtifactSpec(paths=list(paths), expire_in=expire_in, when=when, reports=dict(reports))
        return self

    def cache_dirs(self, *dirs: str, key: str = "default", policy: str = "pull-push"):
        self._cache.append(CacheSpec(paths=list(dirs), key=key, policy=policy))
        return self

    def allow_failure(self, allowed: bool = True):
        self._allow_failure = allowed
        return self

    def interruptible(self, enabled: bool = True):
        self._interruptible = enabled
        return self

    def coverage(self, regex: str):
        self._coverage = regex
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return Job(
            name=self.name,
            steps=self._steps,
            stage=self._stage,
            needs=self._needs,
            rules=self._rules,
            when=self._when,
            variables=self._variables,
            after_steps=self._after,
            retry=self._retry,
            artifacts=self._artifacts,
            cache=self._cache,
            allow_failure=self._allow_failure,
            interruptible=self._interruptible,
            coverage=self._coverage,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.10","3.11"]).jobs(
            lambda v: job(f"test-py{v}", sh(...), variables={"PY": v})
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helpers (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Union[Job, List[Job]]) -> List[Job]:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Matrix output can be passed directly: wf(job(...), matrix(...).jobs(...)).
    """
    out: List[Job] = []
    for j in jobs:
        if isinstance(j, list):
            out.extend(j)
        else:
            out.append(j)
    return out


workflow = wf  # backward-compat alias (avoid naming your function workflow if you use it)


def define_pipeline(
    *jobs: Union[Job, List[Job]],
    stages: Optional[List[str]] = None,
    variables: Optional[Dict[str, Any]] = None,
    workflow_rules: Optional[List[Rule]] = None,
    name: str = "pipeline",
) -> Pipeline:
    """For `def pipeline(): return define_pipeline(...)` in a workflow file."""
    return Pipeline(
        jobs=wf(*jobs),
        stages=list(stages or DEFAULT_STAGES),
        variables={k: str(v) for k, v in (variables or {}).items()},
        workflow_rules=workflow_rules,
        name=name,
    )
