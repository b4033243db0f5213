"""Tests for the Python workflow DSL."""

import pytest

from ciplan.dsl import build, define_pipeline, job, matrix, need, rule, sh, wf
from ciplan.model import Need
from ciplan.retry import RetryPolicy


def test_job_helper() -> None:
    j = job(
        "unit",
        sh("Install", "pip install -e ."),
        sh("Test", "pytest", cwd="pkg"),
        needs=["compile", need("lint", artifacts=False)],
        variables={"N": 2},
        retry=1,
        cwd="src",
    )
    assert [s.cwd for s in j.steps] == ["src", "pkg"]
    assert j.needs == [Need("compile"), Need("lint", artifacts=False)]
    assert j.variables == {"N": "2"}
    assert j.retry == RetryPolicy(max=1)
    assert j.allow_failure is None


def test_job_needs_default_is_stage_barrier() -> None:
    assert job("a", sh("x", "true")).needs is None
    assert job("a", sh("x", "true"), needs=[]).needs == []


def test_job_without_steps() -> None:
    with pytest.raises(ValueError):
        job("empty")


def test_builder() -> None:
    j = (
        build("release")
        .in_stage("deploy")
        .depends_on("get_next_version", artifacts=False)
        .define_step("Publish", "twine upload dist/*")
        .after_step("Cleanup", "rm -rf dist")
        .when_rule("$CI_COMMIT_BRANCH == $CI_DEFAULT_BRANCH", when="manual", allow_failure=False)
        .with_env(CHANNEL="stable")
        .with_retry(max=2, when=["runner_system_failure"])
        .with_artifacts("dist/", expire_in="1 week", junit=["report.xml"])
        .cache_dirs(".venv", key="$CI_COMMIT_REF_SLUG")
        .interruptible(False)
        .coverage(r"/TOTAL.*\s+(\d+%)/")
        .build()
    )
    assert j.stage == "deploy"
    assert j.needs == [Need("get_next_version", artifacts=False)]
    assert j.after_steps[0].run == "rm -rf dist"
    assert j.rules[0].when == "manual"
    assert j.rules[0].allow_failure is False
    assert j.variables == {"CHANNEL": "stable"}
    assert j.retry.when == ("runner_system_failure",)
    assert j.artifacts.reports == {"junit": ["report.xml"]}
    assert j.cache[0].key == "$CI_COMMIT_REF_SLUG"


def test_builder_requires_steps() -> None:
    with pytest.raises(ValueError):
        build("empty").build()


def test_builder_manual_and_no_needs() -> None:
    j = build("docs").define_step("Docs", "make docs").depends_on("a").no_needs().manual().allow_failure().build()
    assert j.needs == []
    assert j.when == "manual"
    assert j.allow_failure is True


def test_matrix_and_wf() -> None:
    jobs = wf(
        job("lint", sh("Lint", "ruff check .")),
        matrix("PY", ["3.10", "3.11"]).jobs(
            lambda v: job(f"test-py{v}", sh("Test", "pytest"), variables={"PY": v})
        ),
    )
    assert [j.name for j in jobs] == ["lint", "test-py3.10", "test-py3.11"]
    assert jobs[2].variables == {"PY": "3.11"}


def test_define_pipeline() -> None:
    pipeline = define_pipeline(
        job("a", sh("x", "true")),
        [job("b", sh("x", "true"))],
        stages=["test"],
        variables={"A": 1},
        workflow_rules=[rule("$CI_COMMIT_TAG")],
        name="demo",
    )
    assert [j.name for j in pipeline.jobs] == ["a", "b"]
    assert pipeline.stages == ["test"]
    assert pipeline.variables == {"A": "1"}
    assert pipeline.name == "demo"
