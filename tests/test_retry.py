"""Tests for retry policies and failure classification."""

import pytest

from ciplan.errors import PipelineConfigError, RunnerSystemFailure, StepFailure
from ciplan.retry import RetryPolicy, classify_failure, parse_retry


class TestParseRetry:
    def test_forms(self) -> None:
        assert parse_retry(None) == RetryPolicy()
        assert parse_retry(2) == RetryPolicy(max=2)
        assert parse_retry({"max": 1, "when": "script_failure"}) == RetryPolicy(max=1, when=("script_failure",))
        assert parse_retry({"max": 2, "when": ["script_failure", "runner_system_failure"]}).when == (
            "script_failure",
            "runner_system_failure",
        )

    @pytest.mark.parametrize(
        "value",
        [3, -1, {"max": 5}, {"max": 1, "when": "sometimes"}, {"attempts": 1}, "2", True],
    )
    def test_invalid(self, value) -> None:
        with pytest.raises(PipelineConfigError):
            parse_retry(value)


class TestShouldRetry:
    def test_max_bounds_extra_attempts(self) -> None:
        policy = RetryPolicy(max=2)
        assert policy.should_retry("script_failure", 1)
        assert policy.should_retry("script_failure", 2)
        assert not policy.should_retry("script_failure", 3)

    def test_failure_class_filter(self) -> None:
        policy = RetryPolicy(max=1, when=("runner_system_failure",))
        assert policy.should_retry("runner_system_failure", 1)
        assert not policy.should_retry("script_failure", 1)

    def test_zero_never_retries(self) -> None:
        assert not RetryPolicy().should_retry("script_failure", 1)


def test_classify_failure() -> None:
    assert classify_failure(StepFailure(job="j", step="s", cmd="false", exit_code=1)) == "script_failure"
    assert classify_failure(RunnerSystemFailure(job="j", message="no shell")) == "runner_system_failure"
    assert classify_failure(PermissionError("denied")) == "runner_system_failure"
    assert classify_failure(KeyError("x")) == "unknown_failure"
