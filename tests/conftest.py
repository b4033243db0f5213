"""Shared fixtures: a quiet console, a scripted executor and a run helper."""

import io
import threading

import pytest

from ciplan.artifacts import ArtifactStore
from ciplan.context import PipelineContext
from ciplan.dag import plan_pipeline
from ciplan.errors import StepFailure
from ciplan.runner import PipelineRun
from ciplan.ui.console import Console, set_console


def failure(job: str, exit_code: int = 1, output: str = "boom\n") -> StepFailure:
    return StepFailure(job=job, step="script", cmd="false", exit_code=exit_code, output=output)


class FakeExecutor:
    """
    Stands in for ShellExecutor. Each job pops its next scripted outcome:
    an exception is raised, a callable gets should_stop, anything else is
    returned as the log. Jobs without a script succeed.
    """

    def __init__(self, outcomes=None):
        self.outcomes = {name: list(items) for name, items in (outcomes or {}).items()}
        self.events = []
        self.variables = {}
        self._lock = threading.Lock()

    def run(self, job, variables, workspace, should_stop=lambda: False):
        with self._lock:
            self.events.append(("start", job.name))
            self.variables[job.name] = dict(variables)
            queue = self.outcomes.get(job.name)
            outcome = queue.pop(0) if queue else f"ran {job.name}\n"
        try:
            if isinstance(outcome, BaseException):
                raise outcome
            if callable(outcome):
                return outcome(should_stop)
            return outcome
        finally:
            with self._lock:
                self.events.append(("end", job.name))

    def started(self):
        return [name for event, name in self.events if event == "start"]

    def position(self, event, name):
        return self.events.index((event, name))


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(stream=io.StringIO())
    set_console(console)
    yield console
    set_console(Console())


@pytest.fixture
def main_context():
    return PipelineContext(branch="main", default_branch="main", sha="0123456789abcdef", author="Dev <dev@example.com>")


@pytest.fixture
def make_run(tmp_path, main_context):
    """make_run(pipeline, executor=..., context=..., **PipelineRun kwargs) -> PipelineRun"""

    def factory(pipeline, executor=None, context=None, **kwargs):
        plan = plan_pipeline(pipeline, context or main_context)
        kwargs.setdefault("artifacts", ArtifactStore(tmp_path / "artifacts"))
        kwargs.setdefault("repo_root", tmp_path)
        kwargs.setdefault("work_dir", tmp_path / "work")
        return PipelineRun(plan, executor=executor or FakeExecutor(), **kwargs)

    return factory
