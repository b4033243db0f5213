"""Console output formatting utilities for ciplan."""

from __future__ import annotations

import sys
import threading
from typing import Optional

_STATUS_LABELS = {
    "success": "SUCCESS",
    "failed": "FAILED",
    "skipped": "SKIPPED",
    "manual": "MANUAL",
    "canceled": "CANCELED",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces and job logs
            stream: Where normal output goes (defaults to sys.stdout at call time)
        """
        self.debug = debug
        self._stream = stream
        # jobs report from worker threads; keep multi-line blocks together
        self._lock = threading.Lock()

    @property
    def out(self):
        return self._stream or sys.stdout

    def _print(self, *lines: str) -> None:
        with self._lock:
            for line in lines:
                print(line, file=self.out)

    def _print_err(self, *lines: str) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(self, pipeline: str, ref: str, job_count: int) -> None:
        """Print run start information."""
        self._print("\nPIPELINE STARTED", f"Pipeline: {pipeline}", f"Ref: {ref}", f"Jobs: {job_count}", "")

    def print_pipeline_skipped(self, reason: str) -> None:
        self._print(f"\nPIPELINE NOT CREATED ({reason})")

    def print_plan_job(self, name: str, stage: str, reason: str) -> None:
        """Print a job that is part of the pipeline."""
        self._print(f"  {stage:<10} {name} ({reason})")

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        """Print a job excluded by its rules."""
        self._print(f"  {'-':<10} {name} (skipped: {reason})")

    def print_levels(self, levels: list[list[str]]) -> None:
        for idx, level in enumerate(levels, start=1):
            self._print(f"  level {idx}: {', '.join(level)}")

    def print_job_start(self, name: str, attempt: int = 1) -> None:
        """Print job start message."""
        suffix = f" (attempt {attempt})" if attempt > 1 else ""
        self._print(f"JOB STARTED: {name}{suffix}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._print(f"[{job}] STEP: {name}")

    def print_retry(self, job: str, attempt: int, failure_class: str) -> None:
        self._print(f"[{job}] RETRY: attempt {attempt} failed ({failure_class}), retrying")

    def print_job_result(self, result) -> None:
        """Print a job's terminal status (JobResult)."""
        label = _STATUS_LABELS.get(result.status, result.status.upper())
        if result.allowed_failure:
            label = "FAILED (allowed)"
        lines = [f"JOB {label}: {result.name}"]
        if result.reason and result.status != "success":
            lines.append(f"  Reason: {result.reason.splitlines()[0]}")
        if result.exit_code is not None and result.status == "failed":
            lines.append(f"  Exit code: {result.exit_code}")
        if result.coverage is not None:
            lines.append(f"  Coverage: {result.coverage:g}%")
        if result.status == "failed" and result.output:
            tail = result.output.splitlines()
            shown = tail if self.debug else tail[-20:]
            lines.extend(f"  | {line}" for line in shown)
        self._print(*lines)

    def print_cache(self, job: str, reason: str) -> None:
        """Print cache restore/save message."""
        self._print(f"[{job}] CACHE: {reason}")

    def print_artifacts(self, job: str, message: str) -> None:
        self._print(f"[{job}] ARTIFACTS: {message}")

    def print_results(self, result) -> None:
        """Print final results summary (PipelineResult)."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job in result.jobs.values():
            label = _STATUS_LABELS.get(job.status, job.status.upper())
            if job.allowed_failure:
                label = "FAILED (allowed)"
            extra = f" x{job.attempts}" if job.attempts > 1 else ""
            lines.append(f"  {job.name}: {label}{extra}")
        lines.append(f"PIPELINE: {result.status.upper()}")
        self._print(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {detail}" for detail in details or [])
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print_err(*lines)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            self._print_err(traceback.format_exc().rstrip())
        else:
            self._print_err(f"Error: {exc}")

    def print_warning(self, message: str) -> None:
        self._print_err(f"WARNING: {message}")

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print_err(f"[DEBUG] {message}")


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
