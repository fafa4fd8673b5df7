"""Pytest plugin that instruments a test run and records its results.

Loaded into the child pytest process with ``-p uta.coverage.agent``. The
plugin is driven entirely by environment variables so the parent process never
has to share state with it:

``UTA_RECORD_PATH``
    Where to write the binary coverage record. Coverage is only measured when
    this is set.
``UTA_COVERAGE_SOURCE``
    ``os.pathsep``-separated directories to measure (defaults to the cwd).
``UTA_OUTCOMES_PATH``
    Where to write the JSON list of per-test outcomes: every call phase, plus
    any failed or skipped setup, teardown or collection, with xfail marked.
``UTA_SESSION_ID``
    Identifier stored in the record's session block.

Each test runs in its own coverage.py dynamic context, so the hit count stored
for a line is the number of distinct tests that executed it.
"""

from __future__ import annotations

import ast
import json
import os
import tempfile
import time
import tokenize
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

import coverage
from coverage.exceptions import NoDataError
import pytest

from .model import CoverageUnit
from .record import SessionInfo, write_record

ENV_RECORD_PATH = "UTA_RECORD_PATH"
ENV_COVERAGE_SOURCE = "UTA_COVERAGE_SOURCE"
ENV_OUTCOMES_PATH = "UTA_OUTCOMES_PATH"
ENV_SESSION_ID = "UTA_SESSION_ID"

_TEST_OMIT = ["*/tests/*", "*/test_*.py", "*_test.py", "*/conftest.py"]
_MAX_MESSAGE = 4000
_MAX_FRAMES = 12

_STATE: Dict[str, Any] = {"outcomes": []}


@dataclass(frozen=True, slots=True)
class _Region:
    class_name: str
    method: str
    first_line: int
    last_line: int


def _regions_for(source: str) -> List[_Region]:
    """Return class/method regions, innermost-last, for attributing lines."""
    try:
        tree = ast.parse(source)
    except SyntaxError:
        return []
    regions: List[_Region] = []
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            regions.append(_Region("", node.name, _first_line(node), node.end_lineno or node.lineno))
        elif isinstance(node, ast.ClassDef):
            regions.append(_Region(node.name, "", _first_line(node), node.end_lineno or node.lineno))
            for child in node.body:
                if isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef)):
                    regions.append(
                        _Region(node.name, child.name, _first_line(child), child.end_lineno or child.lineno)
                    )
    return regions


def _first_line(node: ast.AST) -> int:
    decorators = getattr(node, "decorator_list", None) or []
    lines = [node.lineno, *(decorator.lineno for decorator in decorators)]
    return min(lines)


def _region_of(line: int, regions: List[_Region]) -> _Region | None:
    match: _Region | None = None
    for region in regions:
        if region.first_line <= line <= region.last_line:
            if match is None or region.first_line >= match.first_line:
                match = region
    return match


def build_units(path: str, source: str, file_report: Dict[str, Any]) -> List[CoverageUnit]:
    """Convert one file entry of coverage.py's JSON report into units."""
    regions = _regions_for(source)
    line_count = max(len(source.splitlines()), 1)
    contexts: Dict[str, List[str]] = file_report.get("contexts") or {}

    def _hits(line: int) -> int:
        names = {name for name in contexts.get(str(line), []) if name}
        return max(len(names), 1)

    buckets: Dict[tuple[str, str, int, int], Dict[str, Dict]] = {}

    def _bucket(line: int) -> Dict[str, Dict]:
        region = _region_of(line, regions)
        if region is None:
            key = ("", "", 1, line_count)
        else:
            key = (region.class_name, region.method, region.first_line, region.last_line)
        return buckets.setdefault(key, {"lines": {}, "branches": {}})

    for line in file_report.get("executed_lines", []):
        _bucket(line)["lines"][line] = _hits(line)
    for line in file_report.get("missing_lines", []):
        _bucket(line)["lines"].setdefault(line, 0)
    for source_line, destination in file_report.get("executed_branches", []):
        _bucket(source_line)["branches"][(source_line, destination)] = 1
    for source_line, destination in file_report.get("missing_branches", []):
        _bucket(source_line)["branches"].setdefault((source_line, destination), 0)

    return [
        CoverageUnit.build(
            path,
            class_name,
            method,
            first_line,
            last_line,
            lines=tables["lines"],
            branches=tables["branches"],
        )
        for (class_name, method, first_line, last_line), tables in buckets.items()
    ]


def _collect_units(cov: coverage.Coverage) -> List[CoverageUnit]:
    handle, json_path = tempfile.mkstemp(prefix="uta-cov-", suffix=".json")
    os.close(handle)
    try:
        try:
            cov.json_report(outfile=json_path, show_contexts=True)
        except NoDataError:
            return []
        payload = json.loads(Path(json_path).read_text(encoding="utf-8"))
    finally:
        Path(json_path).unlink(missing_ok=True)

    units: List[CoverageUnit] = []
    for raw_path, file_report in sorted((payload.get("files") or {}).items()):
        path = Path(raw_path)
        try:
            with tokenize.open(path) as handle:
                source = handle.read()
        except (OSError, SyntaxError, UnicodeDecodeError):
            source = ""
        units.extend(build_units(path.as_posix(), source, file_report))
    return units


def pytest_configure(config: pytest.Config) -> None:
    _STATE["started"] = time.time()
    _STATE["outcomes"] = []
    if not os.environ.get(ENV_RECORD_PATH):
        return
    sources = [entry for entry in os.environ.get(ENV_COVERAGE_SOURCE, "").split(os.pathsep) if entry]
    cov = coverage.Coverage(
        data_file=None,
        branch=True,
        source=sources or [os.getcwd()],
        omit=_TEST_OMIT,
    )
    cov.start()
    _STATE["coverage"] = cov


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_protocol(item: pytest.Item, nextitem: pytest.Item | None):
    cov = _STATE.get("coverage")
    if cov is not None:
        cov.switch_context(item.nodeid)
    yield
    if cov is not None:
        cov.switch_context("")


def _frames(excinfo: pytest.ExceptionInfo[BaseException]) -> List[Dict[str, Any]]:
    frames: List[Dict[str, Any]] = []
    for entry in list(excinfo.traceback)[-_MAX_FRAMES:]:
        frames.append({"path": str(entry.path), "line": entry.lineno + 1, "name": entry.name})
    return frames


def _skip_reason(longrepr: Any) -> str:
    if isinstance(longrepr, tuple) and len(longrepr) == 3:
        return str(longrepr[2])
    return str(longrepr or "")


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo[None]):
    outcome = yield
    report = outcome.get_result()
    if report.when != "call" and not (report.failed or report.skipped):
        return
    entry: Dict[str, Any] = {
        "nodeid": report.nodeid,
        "when": report.when,
        "outcome": report.outcome,
        "duration": getattr(report, "duration", 0.0),
    }
    if hasattr(report, "wasxfail"):
        entry["xfail"] = True
        entry["message"] = str(report.wasxfail)[:_MAX_MESSAGE]
    elif report.skipped:
        entry["message"] = _skip_reason(report.longrepr)[:_MAX_MESSAGE]
    elif report.failed and call.excinfo is not None:
        entry["exception"] = call.excinfo.typename
        entry["message"] = str(call.excinfo.value)[:_MAX_MESSAGE]
        entry["frames"] = _frames(call.excinfo)
    elif report.failed:
        entry["message"] = str(report.longrepr)[:_MAX_MESSAGE]
    _STATE["outcomes"].append(entry)


def pytest_collectreport(report: pytest.CollectReport) -> None:
    if report.passed:
        return
    _STATE["outcomes"].append(
        {
            "nodeid": report.nodeid,
            "when": "collect",
            "outcome": report.outcome,
            "message": (
                _skip_reason(report.longrepr) if report.skipped else str(report.longrepr)
            )[-_MAX_MESSAGE:],
        }
    )


def pytest_unconfigure(config: pytest.Config) -> None:
    cov = _STATE.pop("coverage", None)
    record_path = os.environ.get(ENV_RECORD_PATH)
    if cov is not None and record_path:
        cov.stop()
        session = SessionInfo.now(
            os.environ.get(ENV_SESSION_ID) or f"pid-{os.getpid()}",
            started=_STATE.get("started"),
        )
        write_record(record_path, _collect_units(cov), session=session)

    outcomes_path = os.environ.get(ENV_OUTCOMES_PATH)
    if outcomes_path:
        target = Path(outcomes_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(_STATE["outcomes"], indent=2), encoding="utf-8")
