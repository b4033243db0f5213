# artifacts.py
from __future__ import annotations

import json
import logging
import re
import tarfile
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .cache import add_to_tar, extract_tar, resolve_globs, sanitize_key
from .context import ref_slug
from .errors import PipelineConfigError

logger = logging.getLogger(__name__)

DEFAULT_ARTIFACT_DIR = ".ciplan/artifacts"
DEFAULT_EXPIRE_IN = "30 days"

_UNITS = {
    "s": 1, "sec": 1, "secs": 1, "second": 1, "seconds": 1,
    "m": 60, "min": 60, "mins": 60, "minute": 60, "minutes": 60,
    "h": 3600, "hr": 3600, "hrs": 3600, "hour": 3600, "hours": 3600,
    "d": 86400, "day": 86400, "days": 86400,
    "w": 604800, "wk": 604800, "wks": 604800, "week": 604800, "weeks": 604800,
    "mo": 2592000, "month": 2592000, "months": 2592000,
    "y": 31536000, "yr": 31536000, "yrs": 31536000, "year": 31536000, "years": 31536000,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]+)")


def parse_duration(value) -> Optional[float]:
    """
    "30 days", "1 week 2 days", "3 hrs", "90" (seconds), 90 -> seconds.
    "never" -> None (keep forever).
    """
    if value is None:
        return parse_duration(DEFAULT_EXPIRE_IN)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip().lower()
    if text == "never":
        return None
    if text.isdigit():
        return float(text)

    total = 0.0
    pos = 0
    for m in _DURATION_PART.finditer(text):
        if text[pos:m.start()].strip(" ,and"):
            break
        unit = _UNITS.get(m.group(2))
        if unit is None:
            raise PipelineConfigError(f"unknown duration unit {m.group(2)!r} in {value!r}")
        total += float(m.group(1)) * unit
        pos = m.end()
    if pos == 0 or text[pos:].strip():
        raise PipelineConfigError(f"cannot parse duration {value!r}")
    return total


@dataclass
class ArtifactRecord:
    job: str
    ref: str
    created_at: float
    expires_at: Optional[float]
    files: List[str] = field(default_factory=list)
    reports: Dict[str, List[str]] = field(default_factory=dict)
    pipeline_id: Optional[str] = None   # the run that wrote it

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class ArtifactStore:
    """
    Job artifacts, namespaced by ref and job so writers never collide:
      root/
        <ref_slug>/
          <job>/
            artifacts.tar.gz
            meta.json

    A record is written once per job run (last writer for the namespace
    replaces it atomically); readers extract a snapshot into their own
    workspace. Records are stamped with the pipeline that wrote them so a
    later pipeline on the same ref never stages an older snapshot.
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR, *, clock: Callable[[], float] = time.time):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.clock = clock

    def _dir(self, job_name: str, ref: str) -> Path:
        return self.root / sanitize_key(ref_slug(ref) or "head") / sanitize_key(job_name)

    def archive_path(self, job_name: str, ref: str) -> Path:
        return self._dir(job_name, ref) / "artifacts.tar.gz"

    def meta_path(self, job_name: str, ref: str) -> Path:
        return self._dir(job_name, ref) / "meta.json"

    def save(
        self,
        job_name: str,
        ref: str,
        paths: List[str],
        workspace: str | Path,
        *,
        expire_in=None,
        reports: Optional[Dict[str, List[str]]] = None,
        pipeline_id: str | None = None,
    ) -> Optional[ArtifactRecord]:
        """Snapshot the declared paths. Returns None when nothing matched."""
        root = Path(workspace).resolve()
        sources = resolve_globs(root, paths)
        if not sources:
            logger.warning("[%s] artifacts: no files matched %s", job_name, paths)
            return None

        d = self._dir(job_name, ref)
        d.mkdir(parents=True, exist_ok=True)
        now = self.clock()
        ttl = parse_duration(expire_in)
        record = ArtifactRecord(
            job=job_name,
            ref=ref,
            created_at=now,
            expires_at=None if ttl is None else now + ttl,
            reports={k: list(v) for k, v in (reports or {}).items()},
            pipeline_id=pipeline_id,
        )

        art = self.archive_path(job_name, ref)
        tmp = art.with_suffix(".tmp")
        try:
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for src in sources:
                    record.files.extend(add_to_tar(tar, root, src, exclude_globs=[".ciplan/**"]))
            tmp.replace(art)
            self.meta_path(job_name, ref).write_text(json.dumps(asdict(record), indent=2), encoding="utf-8")
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        logger.debug("[%s] artifacts saved: %d file(s)", job_name, len(record.files))
        return record

    def load(self, job_name: str, ref: str, pipeline_id: str | None = None) -> Optional[ArtifactRecord]:
        """
        Current record, or None if absent or expired. With pipeline_id, a
        record written by any other pipeline counts as absent.
        """
        meta = self.meta_path(job_name, ref)
        if not meta.exists() or not self.archive_path(job_name, ref).exists():
            return None
        try:
            record = ArtifactRecord(**json.loads(meta.read_text(encoding="utf-8")))
        except (ValueError, TypeError) as e:
            logger.warning("[%s] unreadable artifact metadata: %s", job_name, e)
            return None
        if record.expired(self.clock()):
            return None
        if pipeline_id is not None and record.pipeline_id != pipeline_id:
            return None
        return record

    def restore(
        self, job_name: str, ref: str, workspace: str | Path, pipeline_id: str | None = None
    ) -> Optional[ArtifactRecord]:
        """Extract the upstream's artifacts into workspace. None if there are none."""
        record = self.load(job_name, ref, pipeline_id)
        if record is None:
            return None
        extract_tar(self.archive_path(job_name, ref), Path(workspace).resolve())
        return record

    def records(self) -> List[ArtifactRecord]:
        out: List[ArtifactRecord] = []
        for meta in sorted(self.root.glob("*/*/meta.json")):
            try:
                out.append(ArtifactRecord(**json.loads(meta.read_text(encoding="utf-8"))))
            except (ValueError, TypeError):
                continue
        return out

    def prune_expired(self) -> List[ArtifactRecord]:
        """Delete expired entries. Returns what was removed."""
        now = self.clock()
        removed: List[ArtifactRecord] = []
        for record in self.records():
            if not record.expired(now):
                continue
            self.archive_path(record.job, record.ref).unlink(missing_ok=True)
            self.meta_path(record.job, record.ref).unlink(missing_ok=True)
            removed.append(record)
        return removed
