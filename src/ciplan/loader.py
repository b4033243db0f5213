"""Pipeline definition loading: GitLab-CI style YAML and Python workflow files."""

from __future__ import annotations

import copy
import logging
import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .artifacts import parse_duration
from .dag import validate_pipeline
from .errors import PipelineConfigError
from .model import (
    DEFAULT_STAGE,
    DEFAULT_STAGES,
    WHEN_VALUES,
    ArtifactSpec,
    CacheSpec,
    Job,
    Need,
    Pipeline,
    Rule,
    Step,
)
from .retry import parse_retry

logger = logging.getLogger(__name__)

DEFAULT_PIPELINE_FILES = [
    ".ciplan.yml",
    ".ciplan.yaml",
    "ciplan.yml",
    "ciplan.yaml",
    "ciplan_workflow.py",
]

GLOBAL_KEYS = {"stages", "variables", "default", "workflow"}
# deprecated top-level spelling of `default:` entries
LEGACY_DEFAULT_KEYS = {"image", "before_script", "after_script", "cache"}
DEFAULT_KEYS = {"image", "tags", "before_script", "after_script", "retry", "interruptible", "cache"}

JOB_KEYS = {
    "stage", "script", "before_script", "after_script", "image", "tags", "rules",
    "needs", "retry", "artifacts", "cache", "allow_failure", "interruptible",
    "variables", "coverage", "when", "extends",
}
# accepted for compatibility, no effect on planning or execution
IGNORED_JOB_KEYS = {"environment", "services", "timeout", "resource_group", "description"}

RULE_KEYS = {"if", "when", "allow_failure", "variables", "changes"}
NEED_KEYS = {"job", "artifacts", "optional"}
ARTIFACT_KEYS = {"paths", "expire_in", "when", "reports", "name", "expose_as"}
CACHE_KEYS = {"key", "paths", "policy"}


# ----------------------------------------------------------------------
# Entry points
# ----------------------------------------------------------------------

def find_pipeline_files(directory: str | Path = ".") -> List[Path]:
    """Default pipeline files plus any *_workflow.py in directory."""
    d = Path(directory)
    found = [d / name for name in DEFAULT_PIPELINE_FILES if (d / name).exists()]
    for path in sorted(d.glob("*_workflow.py")):
        if path not in found:
            found.append(path)
    return found


def load_pipeline(path: str | Path) -> Pipeline:
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")
    if p.suffix in (".yml", ".yaml"):
        return load_yaml_pipeline(p)
    if p.suffix == ".py":
        return load_workflow(p)
    raise PipelineConfigError(f"Pipeline must be a .yml/.yaml or .py file, got: {p.name}")


def load_yaml_pipeline(path: str | Path) -> Pipeline:
    p = Path(path)
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise PipelineConfigError(f"Invalid YAML in {p.name}: {e}") from e
    pipeline = parse_pipeline(data or {}, name=p.name)
    logger.debug("loaded %d job(s) from %s", len(pipeline.jobs), p)
    return pipeline


def load_workflow(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a python file.

    The file must define one of:
      - pipeline() -> Pipeline
      - workflow() -> List[Job]   (optionally with STAGES = [...])
      - JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"ciplan_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    if callable(globals_dict.get("pipeline")):
        pipeline = globals_dict["pipeline"]()
        if not isinstance(pipeline, Pipeline):
            raise TypeError("pipeline() must return a ciplan Pipeline")
        validate_pipeline(pipeline)
        return pipeline

    jobs = None
    if callable(globals_dict.get("workflow")):
        try:
            jobs = globals_dict["workflow"]()
        except TypeError as e:
            if "positional arguments but" in str(e) and "was given" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from ciplan import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise TypeError(
            "Workflow must return/define a List[Job]. "
            "Define pipeline() -> Pipeline, workflow() -> List[Job] or JOBS = [Job, ...]."
        )

    stages = list(globals_dict.get("STAGES") or DEFAULT_STAGES)
    pipeline = Pipeline(jobs=jobs, stages=stages, name=wf_path.name)
    validate_pipeline(pipeline)
    return pipeline


# ----------------------------------------------------------------------
# YAML -> model
# ----------------------------------------------------------------------

def parse_pipeline(data: Dict[str, Any], name: str = "pipeline") -> Pipeline:
    if not isinstance(data, dict):
        raise PipelineConfigError("Pipeline definition must be a mapping at the top level")
    if "include" in data:
        raise PipelineConfigError("include: is not supported; inline the included jobs")

    stages = _str_list(data.get("stages"), "stages") if "stages" in data else list(DEFAULT_STAGES)
    # .pre and .post always exist, first and last
    stages = [".pre"] + [s for s in stages if s not in (".pre", ".post")] + [".post"]

    defaults = dict(_mapping(data.get("default"), "default"))
    unknown = set(defaults) - DEFAULT_KEYS
    if unknown:
        raise PipelineConfigError(f"default: unknown keys {sorted(unknown)}")
    for key in LEGACY_DEFAULT_KEYS:
        if key in data and key not in defaults:
            defaults[key] = data[key]

    workflow = _mapping(data.get("workflow"), "workflow")
    workflow_rules = None
    if "rules" in workflow:
        workflow_rules = [_parse_rule(r, "workflow") for r in _list(workflow["rules"], "workflow: rules")]

    raw_jobs = {
        k: v for k, v in data.items()
        if k not in GLOBAL_KEYS and k not in LEGACY_DEFAULT_KEYS
    }
    templates = {k: v for k, v in raw_jobs.items() if k.startswith(".")}
    jobs: List[Job] = []
    for job_name, body in raw_jobs.items():
        if job_name.startswith("."):
            continue
        if not isinstance(body, dict):
            raise PipelineConfigError(f"Job '{job_name}' must be a mapping")
        merged = _resolve_extends(job_name, body, templates, ())
        jobs.append(_parse_job(job_name, merged, defaults))

    pipeline = Pipeline(
        jobs=jobs,
        stages=stages,
        variables=_variables(data.get("variables"), "variables"),
        workflow_rules=workflow_rules,
        name=name,
    )
    validate_pipeline(pipeline)
    return pipeline


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Mappings merge recursively; everything else (lists included) is replaced."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _resolve_extends(name: str, body: Dict[str, Any], templates: Dict[str, Any], chain: tuple) -> Dict[str, Any]:
    if name in chain:
        raise PipelineConfigError(f"extends cycle: {' -> '.join(chain + (name,))}")
    parents = body.get("extends")
    if parents is None:
        return dict(body)
    if isinstance(parents, str):
        parents = [parents]

    merged: Dict[str, Any] = {}
    for parent in parents:
        if parent not in templates:
            raise PipelineConfigError(f"'{name}' extends unknown template '{parent}'")
        resolved = _resolve_extends(parent, templates[parent], templates, chain + (name,))
        merged = _deep_merge(merged, resolved)
    own = {k: v for k, v in body.items() if k != "extends"}
    merged = _deep_merge(merged, own)
    merged.pop("extends", None)
    return merged


def _parse_job(name: str, body: Dict[str, Any], defaults: Dict[str, Any]) -> Job:
    unknown = set(body) - JOB_KEYS - IGNORED_JOB_KEYS
    if unknown:
        raise PipelineConfigError(f"Job '{name}': unknown keys {sorted(unknown)}")
    ignored = set(body) & IGNORED_JOB_KEYS
    if ignored:
        logger.debug("job %s: ignoring %s", name, sorted(ignored))

    if "script" not in body:
        raise PipelineConfigError(f"Job '{name}' has no script")

    before = _commands(body.get("before_script", defaults.get("before_script")), f"{name}: before_script")
    script = _commands(body["script"], f"{name}: script")
    after = _commands(body.get("after_script", defaults.get("after_script")), f"{name}: after_script")
    if not script:
        raise PipelineConfigError(f"Job '{name}' has an empty script")

    when = body.get("when", "on_success")
    if when not in WHEN_VALUES:
        raise PipelineConfigError(f"Job '{name}': unknown when {when!r}")

    allow_failure, exit_codes = _allow_failure(body.get("allow_failure"), name)

    needs = None
    if "needs" in body:
        needs = [_parse_need(n, name) for n in _list(body["needs"], f"{name}: needs")]

    cache_raw = body.get("cache", defaults.get("cache"))
    cache_items = [] if cache_raw is None else (cache_raw if isinstance(cache_raw, list) else [cache_raw])

    return Job(
        name=name,
        steps=[_step(cmd) for cmd in before + script],
        stage=str(body.get("stage", DEFAULT_STAGE)),
        needs=needs,
        rules=[_parse_rule(r, name) for r in _list(body.get("rules"), f"{name}: rules")],
        when=when,
        image=_image(body.get("image", defaults.get("image"))),
        tags=_str_list(body.get("tags", defaults.get("tags")), f"{name}: tags"),
        variables=_variables(body.get("variables"), f"{name}: variables"),
        after_steps=[_step(cmd) for cmd in after],
        retry=parse_retry(body.get("retry", defaults.get("retry"))),
        artifacts=_parse_artifacts(body.get("artifacts"), name),
        cache=[_parse_cache(c, name) for c in cache_items],
        allow_failure=allow_failure,
        allow_failure_exit_codes=exit_codes,
        interruptible=bool(body.get("interruptible", defaults.get("interruptible", False))),
        coverage=body.get("coverage"),
    )


def _step(cmd: str) -> Step:
    first = cmd.strip().splitlines()[0] if cmd.strip() else cmd
    label = first if len(first) <= 60 else first[:57] + "..."
    return Step(name=label, run=cmd)


def _parse_rule(raw: Any, owner: str) -> Rule:
    data = _mapping(raw, f"{owner}: rule")
    unknown = set(data) - RULE_KEYS
    if unknown:
        raise PipelineConfigError(f"{owner}: unknown rule keys {sorted(unknown)}")
    changes = data.get("changes")
    if isinstance(changes, dict):
        changes = changes.get("paths")
    allow_failure = data.get("allow_failure")
    if allow_failure is not None and not isinstance(allow_failure, bool):
        raise PipelineConfigError(f"{owner}: rule allow_failure must be true/false")
    return Rule(
        if_=data.get("if"),
        when=data.get("when", "on_success"),
        allow_failure=allow_failure,
        variables=_variables(data.get("variables"), f"{owner}: rule variables"),
        changes=_str_list(changes, f"{owner}: rule changes") if changes is not None else None,
    )


def _parse_need(raw: Any, owner: str) -> Need:
    if isinstance(raw, str):
        return Need(job=raw)
    data = _mapping(raw, f"{owner}: needs entry")
    unknown = set(data) - NEED_KEYS
    if unknown or "job" not in data:
        raise PipelineConfigError(f"{owner}: needs entries need `job` and allow only {sorted(NEED_KEYS)}")
    return Need(
        job=str(data["job"]),
        artifacts=bool(data.get("artifacts", True)),
        optional=bool(data.get("optional", False)),
    )


def _parse_artifacts(raw: Any, owner: str) -> Optional[ArtifactSpec]:
    if raw is None:
        return None
    data = _mapping(raw, f"{owner}: artifacts")
    unknown = set(data) - ARTIFACT_KEYS
    if unknown:
        raise PipelineConfigError(f"{owner}: unknown artifacts keys {sorted(unknown)}")

    reports: Dict[str, List[str]] = {}
    for kind, value in _mapping(data.get("reports"), f"{owner}: artifacts reports").items():
        if isinstance(value, dict):
            # coverage_report: {coverage_format: cobertura, path: coverage.xml}
            value = value.get("path")
        if value is None:
            continue
        reports[kind] = _str_list(value, f"{owner}: artifacts reports {kind}")

    when = data.get("when", "on_success")
    if when not in ("on_success", "on_failure", "always"):
        raise PipelineConfigError(f"{owner}: artifacts when must be on_success, on_failure or always")
    expire_in = data.get("expire_in")
    parse_duration(expire_in)  # validate now
    return ArtifactSpec(
        paths=_str_list(data.get("paths"), f"{owner}: artifacts paths"),
        expire_in=None if expire_in is None else str(expire_in),
        when=when,
        reports=reports,
    )


def _parse_cache(raw: Any, owner: str) -> CacheSpec:
    data = _mapping(raw, f"{owner}: cache")
    unknown = set(data) - CACHE_KEYS
    if unknown:
        raise PipelineConfigError(f"{owner}: unknown cache keys {sorted(unknown)}")
    policy = data.get("policy", "pull-push")
    if policy not in ("pull-push", "pull", "push"):
        raise PipelineConfigError(f"{owner}: cache policy must be pull-push, pull or push")

    key = data.get("key", "default")
    files = prefix = None
    if isinstance(key, dict):
        files = _str_list(key.get("files"), f"{owner}: cache key files")
        if not files:
            raise PipelineConfigError(f"{owner}: cache key files must not be empty")
        prefix = key.get("prefix")
        key = "default"
    return CacheSpec(
        paths=_str_list(data.get("paths"), f"{owner}: cache paths"),
        key=str(key),
        files=files,
        prefix=None if prefix is None else str(prefix),
        policy=policy,
    )


def _allow_failure(raw: Any, owner: str):
    if raw is None:
        return None, []
    if isinstance(raw, bool):
        return raw, []
    if isinstance(raw, dict) and set(raw) == {"exit_codes"}:
        codes = raw["exit_codes"]
        codes = [codes] if isinstance(codes, int) else list(codes)
        return False, [int(c) for c in codes]
    raise PipelineConfigError(f"{owner}: allow_failure must be true/false or {{exit_codes: [...]}}")


# ----------------------------------------------------------------------
# Small shape helpers
# ----------------------------------------------------------------------

def _mapping(raw: Any, what: str) -> Dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise PipelineConfigError(f"{what} must be a mapping")
    return raw


def _list(raw: Any, what: str) -> List[Any]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise PipelineConfigError(f"{what} must be a list")
    return raw


def _str_list(raw: Any, what: str) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw]
    return [str(x) for x in _list(raw, what)]


def _commands(raw: Any, what: str) -> List[str]:
    """Scripts may be a string or a (nested) list of strings."""
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw]
    out: List[str] = []
    for item in _list(raw, what):
        out.extend(_commands(item, what))
    return out


def _variables(raw: Any, what: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for key, value in _mapping(raw, what).items():
        if isinstance(value, dict):
            # {value: ..., description: ...}
            value = value.get("value", "")
        if isinstance(value, bool):
            value = "true" if value else "false"
        out[str(key)] = "" if value is None else str(value)
    return out


def _image(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw.get("name")
    return str(raw)
