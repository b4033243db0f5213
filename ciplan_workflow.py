# ciplan_workflow.py
# Pipeline for ciplan itself: tests and a package build on the default branch.
from __future__ import annotations

from ciplan import define_pipeline, job, need, rule, sh
from ciplan.model import ArtifactSpec, CacheSpec


def pipeline():
    return define_pipeline(
        job(
            "test",
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "pytest -q"),
            stage="test",
            cache=[CacheSpec(paths=[".cache/pip"], files=["pyproject.toml"], prefix="pip")],
            variables={"PIP_CACHE_DIR": ".cache/pip"},
            retry={"max": 1, "when": "runner_system_failure"},
            interruptible=True,
        ),

        job(
            "validate-sample",
            sh("Validate sample pipeline", "ciplan validate --pipeline samples/release-pipeline.yml"),
            stage="test",
            needs=[],
            allow_failure=True,
        ),

        job(
            "build",
            sh("Build wheel", "pip wheel --no-deps -w dist ."),
            stage="build",
            needs=[need("test", artifacts=False)],
            artifacts=ArtifactSpec(paths=["dist/"], expire_in="1 week"),
            rules=[
                rule("$CI_COMMIT_AUTHOR =~ /semantic-release/", when="never"),
                rule("$CI_COMMIT_BRANCH == $CI_DEFAULT_BRANCH || $CI_COMMIT_TAG"),
            ],
        ),
        stages=["test", "build"],
        name="ciplan",
    )
