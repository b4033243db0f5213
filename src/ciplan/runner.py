# runner.py
from __future__ import annotations

import logging
import shutil
import tarfile
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from . import settings
from .artifacts import ArtifactStore
from .cache import CacheStore, ensure_clean_dir, sanitize_key
from .context import PipelineContext, ref_slug
from .dag import Edge, Plan, PlannedJob, plan_pipeline
from .errors import JobCanceled, RunnerSystemFailure
from .executor import ShellExecutor, hint_for
from .expressions import expand_variables
from .model import (
    ALWAYS,
    BLOCKED,
    CANCELED,
    FAILED,
    MANUAL,
    SKIPPED,
    SUCCESS,
    Job,
    JobResult,
    Pipeline,
    PipelineResult,
)
from .reports import collect_reports, parse_coverage
from .retry import classify_failure
from .ui.console import get_console

logger = logging.getLogger(__name__)

# local dev ---> plan (rules + DAG) ---> run (thread pool) ---> results


def pipeline_status(results: Iterable[JobResult]) -> str:
    """
    Required (non allow_failure) outcomes decide the pipeline:
    any failure -> failed, then canceled, then a pending required manual
    gate -> blocked, else success.
    """
    results = list(results)
    if any(r.status == FAILED and not r.allow_failure for r in results):
        return FAILED
    if any(r.status == CANCELED for r in results):
        return CANCELED
    if any(r.status == MANUAL and not r.allow_failure for r in results):
        return BLOCKED
    return SUCCESS


def edge_satisfied(edge: Edge, upstream: JobResult, downstream: PlannedJob) -> Tuple[bool, str]:
    """
    Whether a terminal upstream lets the downstream proceed over this edge.
    Returns (ok, reason-if-not).
    """
    if upstream.status == MANUAL:
        # an unplayed, non-blocking manual job does not hold up later stages,
        # but a job that explicitly needs it has to wait for it
        if edge.implicit and upstream.allow_failure:
            return True, ""
        return False, f"waiting for manual job '{upstream.name}'"
    if downstream.decision.when == ALWAYS:
        return True, ""
    if upstream.passed:
        return True, ""
    if upstream.status == FAILED:
        return False, f"needed job '{upstream.name}' failed"
    if upstream.status == CANCELED:
        return False, f"needed job '{upstream.name}' was canceled"
    return False, f"needed job '{upstream.name}' was skipped"


class PipelineRun:
    """
    Scheduler + orchestrator for one planned pipeline.

    - Dispatches every job whose upstream edges are satisfied, bounded by
      max_workers.
    - Failed required jobs skip their transitive dependents.
    - Retries happen inside the worker, each attempt in a fresh copy of the
      checkout, even when other jobs run in place.
    - Only artifacts written by this run are staged into dependents.
    - cancel() models a superseding event: interruptible jobs that have not
      started are canceled, running interruptible jobs stop before their
      next step.
    """

    def __init__(
        self,
        plan: Plan,
        *,
        executor=None,
        artifacts: ArtifactStore | None = None,
        cache: CacheStore | None = None,
        repo_root: str | Path = ".",
        work_dir: str | Path | None = None,
        isolated: bool = False,
        max_workers: int | None = None,
        play: Iterable[str] = (),
        fail_fast: bool = False,
    ):
        self.plan = plan
        self.executor = executor or ShellExecutor()
        self.artifacts = artifacts or ArtifactStore(settings.ARTIFACT_DIR)
        self.cache = cache
        self.repo_root = Path(repo_root).resolve()
        self.work_dir = Path(work_dir or settings.WORK_DIR).resolve()
        self.isolated = isolated
        self.max_workers = max_workers or settings.default_workers()
        self.play = set(play)
        self.fail_fast = fail_fast
        self._cancel = threading.Event()
        self.pipeline_id = uuid.uuid4().hex

        unknown = self.play - set(plan.jobs)
        if unknown:
            raise ValueError(f"Cannot play jobs that are not in the pipeline: {sorted(unknown)}")

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def canceled(self) -> bool:
        return self._cancel.is_set()

    def _should_stop(self, job: Job) -> bool:
        return self._cancel.is_set() and job.interruptible

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def run(self) -> PipelineResult:
        plan = self.plan
        console = get_console()
        if not plan.created:
            console.print_pipeline_skipped(plan.workflow.reason)
            return PipelineResult(status=SKIPPED, reason=plan.workflow.reason)

        results: Dict[str, JobResult] = {}
        waiting = {name: {e.upstream for e in plan.upstream[name]} for name in plan.jobs}
        ready: List[str] = [name for name, preds in waiting.items() if not preds]
        in_flight: Dict = {}
        failed_required = False

        def settle(name: str, result: JobResult) -> None:
            # iterative so long skip chains cannot hit the recursion limit
            stack = [(name, result)]
            while stack:
                n, r = stack.pop()
                if n in results:
                    continue
                results[n] = r
                console.print_job_result(r)
                for edge in plan.downstream[n]:
                    d = edge.downstream
                    if d in results:
                        continue
                    ok, why = edge_satisfied(edge, r, plan.jobs[d])
                    if ok:
                        waiting[d].discard(n)
                        if not waiting[d]:
                            ready.append(d)
                    else:
                        stack.append((d, self._result(d, SKIPPED, why)))

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while ready or in_flight:
                # schedule all currently ready, in stage/definition order
                while ready:
                    ready.sort(key=plan.sort_key)
                    name = ready.pop(0)
                    pj = plan.jobs[name]
                    if self._should_stop(pj.job):
                        settle(name, self._result(name, CANCELED, "pipeline canceled before the job started"))
                    elif self.fail_fast and failed_required:
                        settle(name, self._result(name, CANCELED, "canceled after a required job failed (fail-fast)"))
                    elif pj.decision.manual and name not in self.play:
                        settle(name, self._result(name, MANUAL, "waiting for manual action"))
                    else:
                        fut = pool.submit(self._run_job, pj)
                        in_flight[fut] = name

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready jobs
                try:
                    fut = next(as_completed(list(in_flight.keys())))
                except KeyboardInterrupt:
                    console.print_info("\nInterrupted: canceling interruptible jobs")
                    self.cancel()
                    continue
                name = in_flight.pop(fut)

                try:
                    result = fut.result()
                except Exception as e:
                    logger.exception("job %s crashed", name)
                    result = self._result(name, FAILED, str(e))

                if result.status == FAILED and not result.allow_failure:
                    failed_required = True
                settle(name, result)

        ordered = {n: results[n] for n in sorted(results, key=plan.sort_key)}
        return PipelineResult(status=pipeline_status(ordered.values()), jobs=ordered)

    def _result(self, name: str, status: str, reason: str = "") -> JobResult:
        pj = self.plan.jobs[name]
        return JobResult(
            name=name,
            status=status,
            stage=pj.stage,
            allow_failure=pj.decision.allow_failure,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # One job (runs on a worker thread)
    # ------------------------------------------------------------------

    def job_variables(self, pj: PlannedJob) -> Dict[str, str]:
        variables = self.plan.context.as_variables(self.plan.variables, pj.decision.variables)
        variables["CI_PIPELINE_ID"] = self.pipeline_id
        variables["CI_JOB_NAME"] = pj.name
        variables["CI_JOB_STAGE"] = pj.stage
        return variables

    def _run_job(self, pj: PlannedJob) -> JobResult:
        """Returns a terminal JobResult; failures are captured, not raised."""
        console = get_console()
        job = pj.job
        variables = self.job_variables(pj)
        started = time.monotonic()
        attempt = 0

        while True:
            attempt += 1
            console.print_job_start(job.name, attempt)
            workspace: Optional[Path] = None
            try:
                workspace = self._prepare_workspace(job)
                self._stage_artifacts(pj, workspace)
                self._restore_cache(job, variables, workspace)
                output = self.executor.run(job, variables, workspace, lambda: self._should_stop(job))
            except JobCanceled as e:
                return self._finish(pj, CANCELED, attempt, started, reason=str(e))
            except Exception as e:
                failure_class = classify_failure(e)
                if job.retry.should_retry(failure_class, attempt) and not self._should_stop(job):
                    console.print_retry(job.name, attempt, failure_class)
                    continue

                exit_code = getattr(e, "exit_code", None)
                output = getattr(e, "output", "") or ""
                allowed = pj.decision.allow_failure or (
                    exit_code is not None and exit_code in job.allow_failure_exit_codes
                )
                reason = str(e)
                hint = hint_for(output)
                if hint:
                    reason = f"{reason}\nHint: {hint}"
                result = self._finish(
                    pj, FAILED, attempt, started,
                    reason=reason, failure_class=failure_class, exit_code=exit_code,
                    output=output, allow_failure=allowed,
                )
                if workspace is not None:
                    self._collect(pj, result, workspace, success=False)
                return result

            result = self._finish(pj, SUCCESS, attempt, started, output=output)
            result.coverage = parse_coverage(job.coverage, output)
            self._collect(pj, result, workspace, success=True)
            self._save_cache(job, variables, workspace)
            return result

    def _finish(self, pj: PlannedJob, status: str, attempt: int, started: float, **fields) -> JobResult:
        fields.setdefault("allow_failure", pj.decision.allow_failure)
        return JobResult(
            name=pj.name,
            status=status,
            stage=pj.stage,
            attempts=attempt,
            duration=time.monotonic() - started,
            **fields,
        )

    # ------------------------------------------------------------------
    # Workspace, artifacts, cache
    # ------------------------------------------------------------------

    def _prepare_workspace(self, job: Job) -> Path:
        """
        In-place runs share the repository checkout. Isolated runs, and every
        job that may be retried, get a fresh copy per attempt so nothing leaks
        between jobs or attempts except through artifacts and cache.
        """
        if not self.isolated and job.retry.max == 0:
            return self.repo_root
        ws = self.work_dir / sanitize_key(ref_slug(self.plan.context.ref) or "head") / sanitize_key(job.name)
        ensure_clean_dir(ws)
        shutil.copytree(self.repo_root, ws, dirs_exist_ok=True, ignore=self._ignore_in_copy)
        return ws

    def _ignore_in_copy(self, directory: str, names: List[str]) -> set:
        skipped = set(shutil.ignore_patterns(".git", ".ciplan")(directory, names))
        # our own stores may live inside the checkout
        own = {self.work_dir, self.artifacts.root}
        if self.cache is not None:
            own.add(self.cache.root)
        for name in names:
            if (Path(directory) / name).resolve() in own:
                skipped.add(name)
        return skipped

    def _stage_artifacts(self, pj: PlannedJob, workspace: Path) -> None:
        """Bring in upstream artifacts for every edge that asks for them."""
        ref = self.plan.context.ref
        for edge in self.plan.upstream[pj.name]:
            if not edge.artifacts:
                continue
            upstream = self.plan.jobs[edge.upstream].job
            try:
                record = self.artifacts.restore(edge.upstream, ref, workspace, self.pipeline_id)
            except (OSError, tarfile.TarError) as e:
                raise RunnerSystemFailure(job=pj.name, message=f"cannot stage artifacts of '{edge.upstream}': {e}") from e
            if record is not None:
                get_console().print_artifacts(pj.name, f"staged {len(record.files)} file(s) from {edge.upstream}")
            elif upstream.artifacts is not None and not edge.implicit:
                get_console().print_warning(f"[{pj.name}] no artifacts from '{edge.upstream}' in this pipeline (missing or expired)")

    def _collect(self, pj: PlannedJob, result: JobResult, workspace: Path, *, success: bool) -> None:
        spec = pj.job.artifacts
        if spec is None:
            return
        if spec.reports:
            result.reports = collect_reports(spec.reports, workspace)
        wanted = {"always": True, "on_success": success, "on_failure": not success}.get(spec.when, success)
        if not wanted:
            return
        variables = self.job_variables(pj)
        paths = [expand_variables(p, variables) for p in spec.all_paths]
        try:
            record = self.artifacts.save(
                pj.name, self.plan.context.ref, paths, workspace,
                expire_in=spec.expire_in, reports=spec.reports, pipeline_id=self.pipeline_id,
            )
        except (OSError, tarfile.TarError) as e:
            get_console().print_warning(f"[{pj.name}] cannot save artifacts: {e}")
            return
        if record is not None:
            get_console().print_artifacts(pj.name, f"saved {len(record.files)} file(s)")

    def _restore_cache(self, job: Job, variables: Mapping[str, str], workspace: Path) -> None:
        if self.cache is None:
            return
        for spec in job.cache:
            try:
                hit = self.cache.restore(spec, variables, workspace)
            except OSError as e:
                get_console().print_cache(job.name, f"restore skipped: {e}")
                continue
            get_console().print_cache(job.name, f"{hit.key}: {hit.reason}")

    def _save_cache(self, job: Job, variables: Mapping[str, str], workspace: Path) -> None:
        if self.cache is None:
            return
        for spec in job.cache:
            try:
                key = self.cache.save(spec, variables, workspace)
            except (OSError, tarfile.TarError) as e:
                get_console().print_cache(job.name, f"save failed: {e}")
                continue
            if key:
                get_console().print_cache(job.name, f"saved ({key})")


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_pipeline(
    pipeline: Pipeline,
    context: PipelineContext,
    **kwargs,
) -> PipelineResult:
    """Plan the pipeline for a context and run it. kwargs go to PipelineRun."""
    plan = plan_pipeline(pipeline, context)
    return PipelineRun(plan, **kwargs).run()
