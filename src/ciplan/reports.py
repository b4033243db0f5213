"""Job reports: coverage percentage from the log, JUnit summaries from files."""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Dict, List, Optional

from .cache import resolve_globs
from .errors import PipelineConfigError

logger = logging.getLogger(__name__)

DEFAULT_COVERAGE_REGEX = r"/TOTAL.*\s+(\d+%)/"

_NUMBER = re.compile(r"\d+(?:\.\d+)?")


def _strip_slashes(pattern: str) -> str:
    if len(pattern) >= 2 and pattern.startswith("/") and pattern.endswith("/"):
        return pattern[1:-1]
    return pattern


def compile_coverage(pattern: str) -> re.Pattern:
    """Compile a `/regex/` coverage pattern; a broken one is a config error."""
    try:
        return re.compile(_strip_slashes(pattern), re.MULTILINE)
    except re.error as e:
        raise PipelineConfigError(f"invalid coverage regex {pattern!r}: {e}") from e


def parse_coverage(pattern: str | None, output: str) -> Optional[float]:
    """
    Apply the job's coverage regex to its log. The last match wins; the first
    group is used when the regex has one.

    >>> parse_coverage(DEFAULT_COVERAGE_REGEX, "TOTAL   120   12   90%")
    90.0
    """
    if not pattern or not output:
        return None
    regex = compile_coverage(pattern)
    matches = list(regex.finditer(output))
    if not matches:
        return None
    last = matches[-1]
    text = last.group(1) if regex.groups else last.group(0)
    number = _NUMBER.search(text or "")
    return float(number.group(0)) if number else None


def summarize_junit(path: Path) -> Dict[str, int]:
    root = ET.parse(path).getroot()
    suites = [root] if root.tag == "testsuite" else root.findall("testsuite")
    summary = {"tests": 0, "failures": 0, "errors": 0, "skipped": 0}
    for suite in suites:
        for key in summary:
            summary[key] += int(suite.get(key, 0) or 0)
    return summary


def collect_reports(reports: Dict[str, List[str]], workspace: str | Path) -> Dict[str, dict]:
    """
    Resolve declared report paths and summarise what can be summarised.
    Missing or malformed reports are logged, never fatal.
    """
    root = Path(workspace).resolve()
    out: Dict[str, dict] = {}
    for kind, patterns in reports.items():
        files = resolve_globs(root, patterns)
        entry: dict = {"files": [str(f.relative_to(root)) for f in files]}
        if kind == "junit":
            totals = {"tests": 0, "failures": 0, "errors": 0, "skipped": 0}
            for f in files:
                try:
                    for k, v in summarize_junit(f).items():
                        totals[k] += v
                except (ET.ParseError, ValueError, OSError) as e:
                    logger.warning("cannot read junit report %s: %s", f, e)
            entry.update(totals)
        out[kind] = entry
    return out
