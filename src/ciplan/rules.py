# rules.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .context import PipelineContext
from .expressions import compile_expression, evaluate
from .model import ALWAYS, NEVER, WHEN_MANUAL, WHEN_VALUES, Job, Rule
from .errors import PipelineConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleDecision:
    """
    Outcome of evaluating a job's rules against a context.

    variables holds only the job-scoped overrides (job variables + matching
    rule variables); the context itself is never rebound.
    """
    when: str
    allow_failure: bool
    variables: Dict[str, str] = field(default_factory=dict)
    matched: Optional[int] = None        # index of the matching rule, None if no rules / no match
    reason: str = ""

    @property
    def included(self) -> bool:
        return self.when != NEVER

    @property
    def manual(self) -> bool:
        return self.when == WHEN_MANUAL


def _matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch(path, p) for p in patterns)


def changes_match(patterns: Optional[Sequence[str]], changed_files: Optional[Sequence[str]]) -> bool:
    """
    rules: changes. No patterns -> match. Unknown changed set (None) -> match,
    since we cannot prove nothing relevant changed.
    """
    if not patterns:
        return True
    if changed_files is None:
        return True
    return any(_matches_any(f, patterns) for f in changed_files)


def rule_matches(rule: Rule, variables: Mapping[str, str], changed_files: Optional[Sequence[str]]) -> bool:
    if rule.if_ is not None and not evaluate(rule.if_, variables):
        return False
    return changes_match(rule.changes, changed_files)


def validate_rules(rules: Iterable[Rule], owner: str) -> None:
    """Compile every expression up front so bad syntax fails at load time."""
    for idx, rule in enumerate(rules):
        if rule.when not in WHEN_VALUES:
            raise PipelineConfigError(f"{owner}: rules[{idx}] has unknown when {rule.when!r}")
        if rule.if_ is not None:
            compile_expression(rule.if_)


def evaluate_rules(
    job: Job,
    context: PipelineContext,
    pipeline_variables: Optional[Mapping[str, str]] = None,
) -> RuleDecision:
    """
    First matching rule wins. No rules -> job-level `when`. Rules present but
    none matching -> never.
    """
    pipeline_variables = dict(pipeline_variables or {})
    variables = context.as_variables(pipeline_variables, job.variables)

    if not job.rules:
        when = job.when
        return RuleDecision(
            when=when,
            allow_failure=_allow_failure(job, None, when),
            variables=dict(job.variables),
            reason=f"no rules (when: {when})",
        )

    for idx, rule in enumerate(job.rules):
        if not rule_matches(rule, variables, context.changed_files):
            continue
        scoped = dict(job.variables)
        scoped.update({k: str(v) for k, v in rule.variables.items()})
        desc = rule.if_ if rule.if_ is not None else "<always>"
        logger.debug("job %s: rules[%d] matched (%s) -> %s", job.name, idx, desc, rule.when)
        return RuleDecision(
            when=rule.when,
            allow_failure=_allow_failure(job, rule, rule.when),
            variables=scoped,
            matched=idx,
            reason=f"rules[{idx}] {desc} -> {rule.when}",
        )

    logger.debug("job %s: no rule matched", job.name)
    return RuleDecision(
        when=NEVER,
        allow_failure=bool(job.allow_failure),
        variables=dict(job.variables),
        reason="no rule matched",
    )


def _allow_failure(job: Job, rule: Optional[Rule], when: str) -> bool:
    if rule is not None and rule.allow_failure is not None:
        return rule.allow_failure
    if job.allow_failure is not None:
        return job.allow_failure
    # manual gates do not block the pipeline unless told otherwise
    return when == WHEN_MANUAL


def evaluate_workflow(
    rules: Optional[List[Rule]],
    context: PipelineContext,
    pipeline_variables: Optional[Mapping[str, str]] = None,
) -> RuleDecision:
    """
    workflow: rules decide whether a pipeline is created at all. Matching rule
    variables become pipeline-wide variables.
    """
    base = dict(pipeline_variables or {})
    if rules is None:
        return RuleDecision(when=ALWAYS, allow_failure=False, variables=base, reason="no workflow rules")

    variables = context.as_variables(base)
    for idx, rule in enumerate(rules):
        if rule_matches(rule, variables, context.changed_files):
            merged = dict(base)
            merged.update({k: str(v) for k, v in rule.variables.items()})
            desc = rule.if_ if rule.if_ is not None else "<always>"
            when = NEVER if rule.when == NEVER else ALWAYS
            return RuleDecision(when=when, allow_failure=False, variables=merged, matched=idx,
                                reason=f"workflow rules[{idx}] {desc} -> {rule.when}")

    return RuleDecision(when=NEVER, allow_failure=False, variables=base, reason="no workflow rule matched")
