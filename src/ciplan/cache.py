# cache.py
from __future__ import annotations

import hashlib
import json
import logging
import shutil
import tarfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Mapping, Optional

from .expressions import expand_variables
from .model import CacheSpec

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Cache entries are best effort. A job declares:
#   cache:
#     key: "$CI_COMMIT_REF_SLUG-deps"      (templated on context variables)
#     key: {files: [poetry.lock], prefix: deps}   (content addressed)
#     paths: [.venv/]
#     policy: pull-push | pull | push
#
# Layout:
#   root/
#     <key>/
#       <unix_ms>.tar.gz
#
# Restore picks the newest archive for the key. A missing or unreadable
# archive never fails the job, it only means a cold start.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".ciplan/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".ciplan/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

PULL_POLICIES = ("pull", "pull-push")
PUSH_POLICIES = ("push", "pull-push")


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    for g in globs:
        if rel_path.match(g):
            return True
    return False


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def resolve_globs(root: Path, patterns: List[str]) -> List[Path]:
    """
    Expand path patterns relative to root into existing paths.
    Supports:
      - file path: "pyproject.toml"
      - dir path:  "dist/"
      - glob:      "reports/**/*.xml"
    Paths escaping root are ignored.
    """
    root = root.resolve()
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        if Path(pat).is_absolute():
            logger.warning("ignoring absolute path pattern: %s", pat)
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(root.glob(pat)) if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = p.resolve()
        if not rp.is_relative_to(root):
            logger.warning("ignoring path outside workspace: %s", p)
            continue
        if str(rp) not in seen:
            seen.add(str(rp))
            uniq.append(p)
    return uniq


def add_to_tar(tar: tarfile.TarFile, root: Path, src: Path, *, exclude_globs: List[str]) -> List[str]:
    """
    Add src (file/dir) into tar under its path relative to root, skipping
    excluded paths. Returns the archived relative paths.
    """
    src = src.resolve()
    added: List[str] = []
    if not src.exists():
        return added

    files = [src] if src.is_file() else list(_iter_files_under(src))
    for f in files:
        rel = _relpath(f, root)
        if _matches_any_glob(rel, exclude_globs):
            continue
        tar.add(str(f), arcname=rel, recursive=False)
        added.append(rel)
    return added


def extract_tar(archive: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(str(archive), mode="r:gz") as tar:
        if hasattr(tarfile, "data_filter"):
            tar.extractall(path=str(dest), filter="data")
        else:
            tar.extractall(path=str(dest))


def sanitize_key(key: str) -> str:
    safe = "".join(c if c.isalnum() or c in "-_." else "-" for c in key).strip(".")
    return safe or "default"


def compute_cache_key(spec: CacheSpec, variables: Mapping[str, str], workspace: str | Path = ".") -> str:
    """
    Template keys are expanded against the job's variables. `files` keys hash
    the listed files' contents (missing files hash as absent), so the key
    only changes when e.g. a lock file changes.
    """
    if spec.files:
        root = Path(workspace).resolve()
        fps = []
        for path in resolve_globs(root, [expand_variables(f, variables) for f in spec.files]):
            if path.is_file():
                fps.append((_relpath(path, root), _hash_file_contents(path)))
        digest = _sha256_str(_json_dumps_stable(sorted(fps)))[:16]
        prefix = expand_variables(spec.prefix, variables) if spec.prefix else ""
        return sanitize_key(f"{prefix}-{digest}" if prefix else digest)
    return sanitize_key(expand_variables(spec.key, variables))


class CacheStore:
    """
    File-based, key-addressed cache store shared by all jobs:
      root/
        <key>/
          <stamp>.tar.gz
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR, keep: int = 3):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.keep = keep

    def _key_dir(self, key: str) -> Path:
        d = self.root / sanitize_key(key)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def entries(self, key: str) -> List[Path]:
        """Archives for a key, newest first."""
        d = self.root / sanitize_key(key)
        if not d.exists():
            return []
        return sorted(d.glob("*.tar.gz"), key=lambda p: p.name, reverse=True)

    def restore(self, spec: CacheSpec, variables: Mapping[str, str], workspace: str | Path) -> CacheHit:
        """Never raises: any problem is reported as a miss."""
        key = compute_cache_key(spec, variables, workspace)
        if spec.policy not in PULL_POLICIES:
            return CacheHit(hit=False, key=key, reason=f"policy {spec.policy} does not pull")

        archives = self.entries(key)
        if not archives:
            return CacheHit(hit=False, key=key, reason="cache miss")

        try:
            extract_tar(archives[0], Path(workspace).resolve())
        except (OSError, tarfile.TarError) as e:
            logger.warning("cache %s exists but restore failed: %s", key, e)
            return CacheHit(hit=False, key=key, reason=f"cache exists but restore failed: {e}")

        return CacheHit(hit=True, key=key, reason="cache hit: restored")

    def save(self, spec: CacheSpec, variables: Mapping[str, str], workspace: str | Path) -> Optional[str]:
        """
        Snapshot spec.paths under the key. Returns the key, or None when the
        policy does not push or nothing matched.
        """
        if spec.policy not in PUSH_POLICIES:
            return None

        root = Path(workspace).resolve()
        key = compute_cache_key(spec, variables, root)
        sources = resolve_globs(root, [expand_variables(p, variables) for p in spec.paths])
        if not sources:
            logger.debug("cache %s: no paths matched %s", key, spec.paths)
            return None

        d = self._key_dir(key)
        art = d / f"{int(time.time() * 1000):015d}.tar.gz"
        tmp = art.with_suffix(".tmp")
        try:
            # Build tar.gz in tmp, then atomic rename
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for src in sources:
                    add_to_tar(tar, root, src, exclude_globs=DEFAULT_CACHE_EXCLUDES)
            tmp.replace(art)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        self.prune(key, keep=self.keep)
        return key

    def prune(self, key: str, keep: int = 3) -> None:
        """Keep only the newest N archives for a key."""
        for p in self.entries(key)[keep:]:
            p.unlink(missing_ok=True)


# ---------------------------------------------------------------------
# Convenience helpers
# ---------------------------------------------------------------------

def ensure_clean_dir(path: str | Path) -> None:
    p = Path(path)
    if p.exists():
        shutil.rmtree(p)
    p.mkdir(parents=True, exist_ok=True)
