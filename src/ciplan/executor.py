# executor.py
from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Mapping

from .errors import JobCanceled, RunnerSystemFailure, StepFailure
from .model import Job, Step
from .ui.console import get_console

# keep the tail of long logs; coverage lines are printed at the end
MAX_LOG_CHARS = 64_000

TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


def build_env(variables: Mapping[str, str]) -> Dict[str, str]:
    env = os.environ.copy()
    env.update({k: str(v) for k, v in variables.items()})
    return env


def hint_for(output: str) -> str | None:
    """Best-effort hint when a step died because a tool is missing."""
    for tool, hint in TOOL_HINTS.items():
        if f"{tool}: not found" in output or f"{tool}: command not found" in output:
            return hint
    return None


class ShellExecutor:
    """
    Runs a job's commands through the host shell, one subprocess per step.

    The image and tags of a job are not interpreted here; they are recorded
    for reporting only.
    """

    def run(
        self,
        job: Job,
        variables: Mapping[str, str],
        workspace: Path,
        should_stop: Callable[[], bool] = lambda: False,
    ) -> str:
        """
        Run steps in order, stopping at the first failure. `after_steps` run
        afterwards whatever happened; their failures are only reported.

        should_stop() is checked before every step: that is the only point
        where an interruptible job can be canceled.
        """
        env = build_env(variables)
        log: List[str] = []
        try:
            for step in job.steps:
                if should_stop():
                    raise JobCanceled(job=job.name, step=step.name)
                get_console().print_step(job.name, step.name)
                log.append(self._run_step(job, step, env, workspace))
        except StepFailure as e:
            log.append(e.output)
            e.output = _tail("".join(log))
            raise
        finally:
            for step in job.after_steps:
                try:
                    log.append(self._run_step(job, step, env, workspace))
                except (StepFailure, RunnerSystemFailure) as e:
                    get_console().print_warning(f"[{job.name}] after_script: {e}")
        return _tail("".join(log))

    def _run_step(self, job: Job, step: Step, env: Dict[str, str], workspace: Path) -> str:
        cwd = (workspace / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise RunnerSystemFailure(job=job.name, message=f"step '{step.name}' cwd not found: {cwd}")

        try:
            proc = subprocess.run(
                step.run,
                shell=True,
                cwd=str(cwd),
                env=env,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except OSError as e:
            raise RunnerSystemFailure(job=job.name, message=f"cannot start shell: {e}") from e

        output = f"$ {step.run}\n{proc.stdout or ''}"
        if proc.returncode != 0:
            raise StepFailure(
                job=job.name,
                step=step.name,
                cmd=step.run,
                exit_code=proc.returncode,
                output=output,
            )
        return output


def _tail(text: str) -> str:
    return text[-MAX_LOG_CHARS:]
