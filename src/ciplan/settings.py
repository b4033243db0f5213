from __future__ import annotations
import os

CACHE_DIR = os.environ.get("CIPLAN_CACHE_DIR", ".ciplan/cache")
ARTIFACT_DIR = os.environ.get("CIPLAN_ARTIFACT_DIR", ".ciplan/artifacts")
WORK_DIR = os.environ.get("CIPLAN_WORK_DIR", ".ciplan/work")
DEFAULT_BRANCH = os.environ.get("CIPLAN_DEFAULT_BRANCH", "main")
CACHE_KEEP = int(os.environ.get("CIPLAN_CACHE_KEEP", "3"))
WORKERS = int(os.environ["CIPLAN_WORKERS"]) if os.environ.get("CIPLAN_WORKERS") else None


def default_workers() -> int:
    if WORKERS:
        return WORKERS
    c = os.cpu_count() or 2
    return max(1, c - 1)
