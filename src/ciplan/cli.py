# cli.py
from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from . import settings
from .artifacts import ArtifactStore
from .cache import CacheStore
from .context import PIPELINE_SOURCES, PipelineContext, detect_context
from .dag import plan_pipeline
from .errors import PipelineConfigError
from .loader import DEFAULT_PIPELINE_FILES, find_pipeline_files, load_pipeline
from .model import CANCELED, SKIPPED, SUCCESS
from .runner import PipelineRun
from .ui.console import Console, set_console, get_console


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Discover pipeline file from argument or default.

    Args:
        pipeline_arg: Optional --pipeline argument from CLI

    Returns:
        Path to pipeline file

    Raises:
        SystemExit: If no file can be found or several candidates exist
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  ciplan run --pipeline .ciplan.yml",
            )
            sys.exit(1)
        return path

    candidates = find_pipeline_files(".")

    if len(candidates) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:"] + [f"  {name}" for name in DEFAULT_PIPELINE_FILES] + ["  *_workflow.py"],
            suggestion="Create .ciplan.yml or specify a pipeline explicitly:\n  ciplan run --pipeline my_workflow.py",
        )
        sys.exit(1)

    if len(candidates) > 1:
        file_list = "\n".join(f"  {f}" for f in candidates)
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a pipeline explicitly:\n  ciplan run --pipeline .ciplan.yml",
        )
        sys.exit(1)

    return candidates[0]


def _parse_vars(pairs) -> dict[str, str]:
    out: dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--var")
        key, value = pair.split("=", 1)
        out[key.strip()] = value
    return out


def context_options(fn):
    """Options describing the triggering event, shared by plan and run."""
    options = [
        click.option("--pipeline", "pipeline_file", default=None,
                     help="Pipeline file (.yml/.yaml or .py); defaults to .ciplan.yml or *_workflow.py"),
        click.option("--branch", default=None, help="Branch name (defaults to the checked-out branch)"),
        click.option("--tag", default=None, help="Tag name (makes this a tag pipeline)"),
        click.option("--default-branch", default=settings.DEFAULT_BRANCH, show_default=True),
        click.option("--author", default=None, help="Commit author (defaults to HEAD's author)"),
        click.option("--message", default=None, help="Commit message (defaults to HEAD's message)"),
        click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)"),
        click.option("--source", type=click.Choice(PIPELINE_SOURCES), default="push", show_default=True),
        click.option("--mr-iid", default=None, help="Merge request IID (merge request pipelines)"),
        click.option("--var", "variables", multiple=True, help="Pipeline variable KEY=VALUE (repeatable)"),
        click.option("--changes/--no-changes", default=False, show_default=True,
                     help="Compute changed files against origin/<default-branch> for rules: changes"),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def _build_context(kw) -> PipelineContext:
    return detect_context(
        branch=kw["branch"],
        tag=kw["tag"],
        default_branch=kw["default_branch"],
        sha=kw["sha"],
        author=kw["author"],
        message=kw["message"],
        source=kw["source"],
        merge_request_iid=kw["mr_iid"],
        variables=_parse_vars(kw["variables"]),
        detect_changes=kw["changes"],
    )


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces, full logs and debug logging)",
)
@click.pass_context
def cli(ctx, debug):
    """ciplan: evaluate and run CI pipeline graphs locally."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--pipeline", "pipeline_file", default=None, help="Pipeline file to validate")
@click.pass_context
def validate(ctx, pipeline_file):
    """Load a pipeline and check stages, needs, rules and cycles."""
    console = get_console()
    path = discover_pipeline(pipeline_file)
    try:
        pipeline = load_pipeline(path)
    except (PipelineConfigError, TypeError, ValueError, FileNotFoundError) as e:
        console.print_error("Invalid pipeline", str(e), details=[str(path)])
        sys.exit(1)
    console.print_info(f"{path}: OK ({len(pipeline.jobs)} job(s), stages: {', '.join(pipeline.stages)})")


@cli.command()
@context_options
@click.pass_context
def plan(ctx, pipeline_file, **kw):
    """Show which jobs a context would run, and in which order."""
    console = get_console()
    path = discover_pipeline(pipeline_file)
    try:
        pipeline = load_pipeline(path)
        context = _build_context(kw)
        planned = plan_pipeline(pipeline, context)
    except click.BadParameter:
        raise
    except (PipelineConfigError, TypeError, ValueError, FileNotFoundError) as e:
        console.print_error("Cannot plan pipeline", str(e), details=[str(path)])
        sys.exit(1)

    source = context.source
    if context.is_merge_request and context.merge_request_iid:
        source += f", merge request !{context.merge_request_iid}"
    console.print_header(f"Pipeline for {context.ref} ({source})")
    if not planned.created:
        console.print_pipeline_skipped(planned.workflow.reason)
        return

    for pj in sorted(planned.jobs.values(), key=lambda p: planned.sort_key(p.name)):
        reason = pj.decision.reason
        if pj.decision.manual:
            reason += ", manual"
        if pj.decision.allow_failure:
            reason += ", allow_failure"
        console.print_plan_job(pj.name, pj.stage, reason)
    for name, decision in planned.excluded.items():
        console.print_plan_job_skipped(name, decision.reason)

    console.print_header("Execution levels")
    console.print_levels(planned.levels)


@cli.command()
@context_options
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--play", multiple=True, help="Manual job to run (repeatable)")
@click.option("--fail-fast/--no-fail-fast", default=False, help="Stop scheduling new jobs after a required failure")
@click.option("--isolated/--in-place", default=False, show_default=True,
              help="Run each job in a fresh copy of the repository")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--artifact-dir", default=settings.ARTIFACT_DIR, show_default=True, help="Artifact directory")
@click.option("--work-dir", default=settings.WORK_DIR, show_default=True, help="Workspaces for --isolated")
@click.pass_context
def run(ctx, pipeline_file, workers, play, fail_fast, isolated, cache_dir, artifact_dir, work_dir, **kw):
    """Plan and run a pipeline."""
    console = get_console()
    path = discover_pipeline(pipeline_file)

    try:
        pipeline = load_pipeline(path)
        context = _build_context(kw)
        planned = plan_pipeline(pipeline, context)
        console.print_debug(f"workflow: {planned.workflow.reason}; variables: {sorted(context.variables)}")

        console.print_run_started(
            pipeline=path.name,
            ref=context.ref,
            job_count=len(planned.jobs),
        )

        pipeline_run = PipelineRun(
            planned,
            artifacts=ArtifactStore(artifact_dir),
            cache=CacheStore(cache_dir, keep=settings.CACHE_KEEP),
            repo_root=".",
            work_dir=work_dir,
            isolated=isolated,
            max_workers=workers,
            play=play,
            fail_fast=fail_fast,
        )
        result = pipeline_run.run()
        if result.status != SKIPPED:
            console.print_results(result)

        if result.status == CANCELED or pipeline_run.canceled:
            sys.exit(130)
        if result.status not in (SUCCESS, SKIPPED):
            sys.exit(1)

    except click.BadParameter:
        raise
    except PipelineConfigError as e:
        console.print_error("Invalid pipeline", str(e), details=[str(path)])
        sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.group()
def artifacts():
    """Manage stored job artifacts."""


@artifacts.command("prune")
@click.option("--artifact-dir", default=settings.ARTIFACT_DIR, show_default=True)
def prune_artifacts(artifact_dir):
    """Delete expired artifacts."""
    console = get_console()
    removed = ArtifactStore(artifact_dir).prune_expired()
    for record in removed:
        console.print_info(f"  removed {record.ref}/{record.job}")
    console.print_info(f"Pruned {len(removed)} expired artifact(s)")


@artifacts.command("list")
@click.option("--artifact-dir", default=settings.ARTIFACT_DIR, show_default=True)
def list_artifacts(artifact_dir):
    """Show stored artifacts and when they expire."""
    console = get_console()
    store = ArtifactStore(artifact_dir)
    now = store.clock()
    for record in store.records():
        if record.expires_at is None:
            expiry = "never expires"
        elif record.expired(now):
            expiry = "expired"
        else:
            expiry = f"expires in {int((record.expires_at - now) // 3600)}h"
        console.print_info(f"  {record.ref}/{record.job}: {len(record.files)} file(s), {expiry}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
