# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from .context import PipelineContext
from .errors import PipelineConfigError
from .model import Job, Pipeline
from .reports import compile_coverage
from .rules import RuleDecision, evaluate_rules, evaluate_workflow, validate_rules


@dataclass(frozen=True)
class Edge:
    """upstream must be terminal before downstream may start."""
    upstream: str
    downstream: str
    artifacts: bool = True
    implicit: bool = False        # True when it comes from stage order, not `needs`


@dataclass(frozen=True)
class PlannedJob:
    job: Job
    decision: RuleDecision
    order: int                    # definition order, used for stable scheduling

    @property
    def name(self) -> str:
        return self.job.name

    @property
    def stage(self) -> str:
        return self.job.stage


@dataclass
class Plan:
    """
    The pipeline as created for one context: which jobs exist, how each one
    is gated, and the DAG between them.
    """
    pipeline: Pipeline
    context: PipelineContext
    workflow: RuleDecision
    variables: Dict[str, str] = field(default_factory=dict)
    jobs: Dict[str, PlannedJob] = field(default_factory=dict)
    excluded: Dict[str, RuleDecision] = field(default_factory=dict)
    upstream: Dict[str, List[Edge]] = field(default_factory=dict)     # job -> edges into it
    downstream: Dict[str, List[Edge]] = field(default_factory=dict)   # job -> edges out of it
    levels: List[List[str]] = field(default_factory=list)

    @property
    def created(self) -> bool:
        return self.workflow.included

    def sort_key(self, name: str) -> Tuple[int, int]:
        pj = self.jobs[name]
        return self.pipeline.stage_index(pj.stage), pj.order


# ----------------------------------------------------------------------
# Validation (context independent)
# ----------------------------------------------------------------------

def validate_pipeline(pipeline: Pipeline) -> None:
    """
    Checks that do not depend on the triggering event:
      - unique job names, known stages
      - every non-optional `needs` entry names a defined job
      - rule expressions parse
      - coverage regexes compile
      - no cycles when every job is included
    """
    names = [j.name for j in pipeline.jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise PipelineConfigError(f"Duplicate job names found: {dupes}")

    if len(set(pipeline.stages)) != len(pipeline.stages):
        raise PipelineConfigError(f"Duplicate stages: {pipeline.stages}")

    name_set = set(names)
    for job in pipeline.jobs:
        if job.stage not in pipeline.stages:
            raise PipelineConfigError(
                f"Job '{job.name}' uses unknown stage '{job.stage}'. Known stages: {pipeline.stages}"
            )
        if not job.steps:
            raise PipelineConfigError(f"Job '{job.name}' has no script")
        for need in job.needs or []:
            if need.job not in name_set and not need.optional:
                raise PipelineConfigError(
                    f"Job '{job.name}' needs missing job '{need.job}'. Known jobs: {sorted(name_set)}"
                )
        validate_rules(job.rules, f"job '{job.name}'")
        if job.coverage:
            try:
                compile_coverage(job.coverage)
            except PipelineConfigError as e:
                raise PipelineConfigError(f"Job '{job.name}': {e}") from e

    if pipeline.workflow_rules is not None:
        validate_rules(pipeline.workflow_rules, "workflow")

    everything = [
        PlannedJob(job=j, decision=RuleDecision(when=j.when, allow_failure=False), order=i)
        for i, j in enumerate(pipeline.jobs)
    ]
    upstream, downstream = build_graph(everything, pipeline.stages)
    topo_levels(downstream, {n: len(e) for n, e in upstream.items()})


# ----------------------------------------------------------------------
# Graph
# ----------------------------------------------------------------------

def build_graph(
    planned: List[PlannedJob],
    stages: List[str],
) -> Tuple[Dict[str, List[Edge]], Dict[str, List[Edge]]]:
    """
    Build the DAG over the jobs present in the pipeline.

    Explicit needs give one edge each. Jobs without `needs` get an implicit
    edge from every job in an earlier stage. Optional needs on absent jobs are
    dropped; any other need on an absent job is an error.
    """
    by_name = {pj.name: pj for pj in planned}
    upstream: Dict[str, List[Edge]] = {n: [] for n in by_name}
    downstream: Dict[str, List[Edge]] = {n: [] for n in by_name}

    def add(edge: Edge) -> None:
        if any(e.upstream == edge.upstream for e in upstream[edge.downstream]):
            return
        upstream[edge.downstream].append(edge)
        downstream[edge.upstream].append(edge)

    for pj in planned:
        job = pj.job
        if job.needs is None:
            own = stages.index(job.stage)
            for other in planned:
                if stages.index(other.stage) < own:
                    add(Edge(other.name, job.name, artifacts=True, implicit=True))
            continue

        for need in job.needs:
            if need.job not in by_name:
                if need.optional:
                    continue
                raise PipelineConfigError(
                    f"Job '{job.name}' needs '{need.job}', which is not in the pipeline "
                    f"(excluded by its rules). Mark the need optional to allow this."
                )
            add(Edge(need.job, job.name, artifacts=need.artifacts))

    return upstream, downstream


def topo_levels(downstream: Dict[str, List[Edge]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels".
    Jobs in one level have no path between them and can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(e.downstream for e in downstream.get(node, [])):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(sorted(level))

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise PipelineConfigError(f"needs form a cycle. Stuck jobs: {remaining}")

    return levels


# ----------------------------------------------------------------------
# Planning (context dependent)
# ----------------------------------------------------------------------

def plan_pipeline(pipeline: Pipeline, context: PipelineContext) -> Plan:
    validate_pipeline(pipeline)

    workflow = evaluate_workflow(pipeline.workflow_rules, context, pipeline.variables)
    plan = Plan(pipeline=pipeline, context=context, workflow=workflow, variables=dict(workflow.variables))
    if not workflow.included:
        return plan

    planned: List[PlannedJob] = []
    for order, job in enumerate(pipeline.jobs):
        decision = evaluate_rules(job, context, plan.variables)
        if decision.included:
            planned.append(PlannedJob(job=job, decision=decision, order=order))
        else:
            plan.excluded[job.name] = decision

    plan.jobs = {pj.name: pj for pj in planned}
    plan.upstream, plan.downstream = build_graph(planned, pipeline.stages)
    plan.levels = topo_levels(plan.downstream, {n: len(e) for n, e in plan.upstream.items()})
    return plan

