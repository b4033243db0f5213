# context.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

from .git_facts import git

PIPELINE_SOURCES = (
    "push",
    "merge_request_event",
    "schedule",
    "web",
    "api",
    "trigger",
)


def ref_slug(ref: str) -> str:
    """
    CI_COMMIT_REF_SLUG: lowercased, anything outside [a-z0-9] replaced by '-',
    at most 63 chars, no leading/trailing '-'.
    """
    slug = re.sub(r"[^a-z0-9]", "-", ref.lower())[:63]
    return slug.strip("-")


@dataclass(frozen=True)
class PipelineContext:
    """
    What triggered the pipeline. Produced once per event and never mutated;
    rules only ever read it through `as_variables()`.

    changed_files=None means "unknown" (rules: changes then always match).
    """
    branch: str | None = None
    tag: str | None = None
    default_branch: str = "main"
    sha: str | None = None
    author: str | None = None
    message: str | None = None
    source: str = "push"
    merge_request_iid: str | None = None
    changed_files: Optional[Tuple[str, ...]] = None
    variables: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # freeze the mapping so jobs cannot rebind pipeline-wide variables
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))
        if self.changed_files is not None:
            object.__setattr__(self, "changed_files", tuple(self.changed_files))

    @property
    def ref(self) -> str:
        return self.tag or self.branch or "HEAD"

    @property
    def is_merge_request(self) -> bool:
        return self.source == "merge_request_event" or self.merge_request_iid is not None

    def predefined_variables(self) -> Dict[str, str]:
        out: Dict[str, str] = {
            "CI": "true",
            "CI_DEFAULT_BRANCH": self.default_branch,
            "CI_COMMIT_REF_NAME": self.ref,
            "CI_COMMIT_REF_SLUG": ref_slug(self.ref),
            "CI_PIPELINE_SOURCE": self.source,
        }
        # undefined, not empty, when missing: `$CI_COMMIT_TAG` must be falsy on branches
        optional = {
            "CI_COMMIT_BRANCH": self.branch if not self.tag else None,
            "CI_COMMIT_TAG": self.tag,
            "CI_COMMIT_SHA": self.sha,
            "CI_COMMIT_SHORT_SHA": self.sha[:8] if self.sha else None,
            "CI_COMMIT_AUTHOR": self.author,
            "CI_COMMIT_MESSAGE": self.message,
            "CI_MERGE_REQUEST_IID": self.merge_request_iid,
        }
        out.update({k: v for k, v in optional.items() if v is not None})
        return out

    def as_variables(self, *layers: Mapping[str, str]) -> Dict[str, str]:
        """
        Variables visible to rules and job scripts, lowest priority first:
        layers (pipeline/job variables) < custom trigger variables < predefined.
        """
        out: Dict[str, str] = {}
        for layer in layers:
            out.update({k: str(v) for k, v in layer.items()})
        out.update(self.variables)
        out.update(self.predefined_variables())
        return out


def detect_context(
    *,
    branch: str | None = None,
    tag: str | None = None,
    default_branch: str = "main",
    sha: str | None = None,
    author: str | None = None,
    message: str | None = None,
    source: str = "push",
    merge_request_iid: str | None = None,
    variables: Optional[Mapping[str, str]] = None,
    detect_changes: bool = False,
    cwd: str | None = None,
) -> PipelineContext:
    """
    Build a context from explicit values, falling back to the local git
    checkout for anything not given.
    """
    if tag is None and branch is None:
        tag = git.current_tag(cwd=cwd)
    if branch is None and tag is None:
        branch = git.current_branch(cwd=cwd)

    changed = None
    if detect_changes:
        changed = git.changed_since(f"origin/{default_branch}", cwd=cwd)

    return PipelineContext(
        branch=branch,
        tag=tag,
        default_branch=default_branch,
        sha=sha or git.head_sha(cwd=cwd),
        author=author or git.commit_author(cwd=cwd),
        message=message or git.commit_message(cwd=cwd),
        source=source,
        merge_request_iid=merge_request_iid,
        changed_files=changed,
        variables=dict(variables or {}),
    )
