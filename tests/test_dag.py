"""Tests for pipeline validation and DAG construction."""

import pytest

from ciplan.context import PipelineContext
from ciplan.dag import plan_pipeline, validate_pipeline
from ciplan.dsl import define_pipeline, job, need, rule, sh
from ciplan.errors import PipelineConfigError

MAIN = PipelineContext(branch="main", default_branch="main")
FEATURE = PipelineContext(branch="feature", default_branch="main")


def _job(name, stage="test", **kwargs):
    return job(name, sh("run", f"echo {name}"), stage=stage, **kwargs)


def _upstreams(plan, name):
    return sorted(e.upstream for e in plan.upstream[name])


class TestGraph:
    def test_stage_barrier_without_needs(self) -> None:
        plan = plan_pipeline(define_pipeline(
            _job("compile", "build"),
            _job("unit", "test"),
            _job("lint", "test"),
            _job("ship", "deploy"),
        ), MAIN)
        assert _upstreams(plan, "unit") == ["compile"]
        assert _upstreams(plan, "ship") == ["compile", "lint", "unit"]
        assert all(e.implicit for e in plan.upstream["ship"])
        assert plan.levels == [["compile"], ["lint", "unit"], ["ship"]]

    def test_needs_override_stage_order(self) -> None:
        plan = plan_pipeline(define_pipeline(
            _job("compile", "build"),
            _job("slow", "test"),
            _job("ship", "deploy", needs=["compile"]),
        ), MAIN)
        assert _upstreams(plan, "ship") == ["compile"]
        assert plan.levels == [["compile"], ["ship", "slow"]]

    def test_empty_needs_starts_immediately(self) -> None:
        plan = plan_pipeline(define_pipeline(
            _job("compile", "build"),
            _job("docs", "deploy", needs=[]),
        ), MAIN)
        assert plan.upstream["docs"] == []
        assert plan.levels[0] == ["compile", "docs"]

    def test_needs_artifacts_flag_is_kept_on_the_edge(self) -> None:
        plan = plan_pipeline(define_pipeline(
            _job("get_next_version", "build"),
            _job("release", "deploy", needs=[need("get_next_version", artifacts=False)]),
        ), MAIN)
        (edge,) = plan.upstream["release"]
        assert not edge.artifacts
        assert not edge.implicit

    def test_stage_barrier_only_counts_included_jobs(self) -> None:
        plan = plan_pipeline(define_pipeline(
            _job("tag_only", "build", rules=[rule("$CI_COMMIT_TAG")]),
            _job("unit", "test"),
        ), MAIN)
        assert plan.upstream["unit"] == []
        assert "tag_only" in plan.excluded

    def test_optional_need_on_excluded_job_is_dropped(self) -> None:
        plan = plan_pipeline(define_pipeline(
            _job("get_next_version", "build", rules=[rule("$CI_COMMIT_BRANCH == $CI_DEFAULT_BRANCH")]),
            _job("build_image", "test", needs=[need("get_next_version", optional=True)]),
        ), FEATURE)
        assert plan.upstream["build_image"] == []

    def test_required_need_on_excluded_job_is_an_error(self) -> None:
        pipeline = define_pipeline(
            _job("get_next_version", "build", rules=[rule("$CI_COMMIT_BRANCH == $CI_DEFAULT_BRANCH")]),
            _job("release", "deploy", needs=["get_next_version"]),
        )
        assert "release" in plan_pipeline(pipeline, MAIN).jobs
        with pytest.raises(PipelineConfigError, match="get_next_version"):
            plan_pipeline(pipeline, FEATURE)


class TestValidation:
    def test_cycle(self) -> None:
        pipeline = define_pipeline(
            _job("a", needs=["b"]),
            _job("b", needs=["a"]),
        )
        with pytest.raises(PipelineConfigError, match="cycle"):
            validate_pipeline(pipeline)

    def test_duplicate_job_names(self) -> None:
        with pytest.raises(PipelineConfigError, match="Duplicate"):
            validate_pipeline(define_pipeline(_job("a"), _job("a")))

    def test_unknown_stage(self) -> None:
        with pytest.raises(PipelineConfigError, match="unknown stage"):
            validate_pipeline(define_pipeline(_job("a", "evaluate")))

    def test_missing_need(self) -> None:
        with pytest.raises(PipelineConfigError, match="missing job"):
            validate_pipeline(define_pipeline(_job("a", needs=["ghost"])))

    def test_optional_missing_need_is_fine(self) -> None:
        validate_pipeline(define_pipeline(_job("a", needs=[need("ghost", optional=True)])))

    def test_bad_rule_expression(self) -> None:
        with pytest.raises(PipelineConfigError):
            validate_pipeline(define_pipeline(_job("a", rules=[rule("$A ==")])))

    def test_bad_coverage_regex(self) -> None:
        with pytest.raises(PipelineConfigError, match="Job 'a': invalid coverage regex"):
            validate_pipeline(define_pipeline(_job("a", coverage="/TOTAL(/")))

    def test_unknown_rule_when(self) -> None:
        with pytest.raises(PipelineConfigError, match="unknown when"):
            validate_pipeline(define_pipeline(_job("a", rules=[rule(when="sometimes")])))
