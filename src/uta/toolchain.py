"""Compile/execute seam between the verification pipeline and pytest."""

from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .coverage.agent import (
    ENV_COVERAGE_SOURCE,
    ENV_OUTCOMES_PATH,
    ENV_RECORD_PATH,
    ENV_SESSION_ID,
)
from .schema import SourceLocation, StackFrame
from .tools.pytest_runner import prepend_pythonpath, run_pytest

LOGGER = logging.getLogger(__name__)

AGENT_PLUGIN = "uta.coverage.agent"
_PACKAGE_PARENT = Path(__file__).resolve().parent.parent
_NODE_ID_RE = re.compile(r"^(?P<node>\S+\.py::\S.*)$", re.MULTILINE)
_ERROR_LOCATION_RE = re.compile(r'^\s*File "(?P<path>[^"]+)", line (?P<line>\d+)', re.MULTILINE)
_PYTEST_LOCATION_RE = re.compile(r"^(?P<path>[^\s:]+\.py):(?P<line>\d+):", re.MULTILINE)
_MAX_OUTPUT = 6000


@dataclass(frozen=True, slots=True)
class SourceSet:
    """Files to compile: a project tree plus the test modules written into it."""

    project_root: Path
    test_files: Tuple[str, ...]
    artifacts: Path
    source_roots: Tuple[str, ...] = ("src", ".")


@dataclass(frozen=True, slots=True)
class CompiledUnit:
    """A source set that byte-compiled and collected successfully."""

    project_root: Path
    test_files: Tuple[str, ...]
    artifacts: Path
    source_roots: Tuple[str, ...]
    node_ids: Tuple[str, ...] = ()


@dataclass(slots=True)
class CompileResult:
    ok: bool
    unit: Optional[CompiledUnit] = None
    message: str = ""
    location: Optional[SourceLocation] = None
    duration: float = 0.0


@dataclass(frozen=True, slots=True)
class ExecutionTimeouts:
    per_test: float
    per_suite: float


@dataclass(slots=True)
class TestOutcome:
    """Outcome of one test phase as reported by the agent plugin."""

    __test__ = False

    nodeid: str
    outcome: str
    when: str = "call"
    exception: str = ""
    message: str = ""
    frames: Tuple[StackFrame, ...] = ()
    duration: float = 0.0
    xfail: bool = False

    @property
    def failed(self) -> bool:
        return self.outcome == "failed"

    @property
    def skipped(self) -> bool:
        return self.outcome == "skipped" or self.xfail

    @property
    def passed(self) -> bool:
        return self.outcome == "passed" and self.when == "call" and not self.xfail

    @property
    def timed_out(self) -> bool:
        return self.failed and self.exception == "Failed" and self.message.startswith("Timeout")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TestOutcome":
        frames = tuple(
            StackFrame(path=str(item.get("path", "")), line=int(item.get("line", 0)), name=str(item.get("name", "")))
            for item in data.get("frames") or []
            if isinstance(item, Mapping)
        )
        return cls(
            nodeid=str(data.get("nodeid", "")),
            outcome=str(data.get("outcome", "")),
            when=str(data.get("when", "call")),
            exception=str(data.get("exception") or ""),
            message=str(data.get("message") or ""),
            frames=frames,
            duration=float(data.get("duration") or 0.0),
            xfail=bool(data.get("xfail")),
        )


@dataclass(slots=True)
class ExecutionResult:
    exit_code: Optional[int]
    timed_out: bool
    outcomes: List[TestOutcome] = field(default_factory=list)
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    collected: Optional[int] = None
    record_path: Optional[Path] = None

    @property
    def failures(self) -> List[TestOutcome]:
        return [outcome for outcome in self.outcomes if outcome.failed]

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class Toolchain(Protocol):
    """Narrow seam the verification pipeline drives."""

    async def compile(self, sources: SourceSet) -> CompileResult:
        ...

    async def execute(
        self,
        unit: CompiledUnit,
        timeouts: ExecutionTimeouts,
        *,
        record_path: Optional[Path] = None,
        session_id: str = "",
    ) -> ExecutionResult:
        ...


def _tail(text: str, limit: int = _MAX_OUTPUT) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return "...\n" + text[-limit:]


def _first_location(text: str, project_root: Path) -> Optional[SourceLocation]:
    for pattern in (_PYTEST_LOCATION_RE, _ERROR_LOCATION_RE):
        for match in pattern.finditer(text):
            raw = Path(match.group("path"))
            try:
                relative = raw.resolve().relative_to(project_root.resolve()) if raw.is_absolute() else raw
            except ValueError:
                continue
            return SourceLocation(path=relative.as_posix(), line=int(match.group("line")))
    return None


class PytestToolchain:
    """Byte-compiles candidates and runs them with pytest under the coverage agent."""

    def __init__(self, *, python: Optional[str] = None, collect_timeout: float = 60.0) -> None:
        self._python = python
        self._collect_timeout = collect_timeout

    def _environment(self, source_roots: Sequence[Path]) -> Dict[str, str]:
        env = {
            "PYTHONDONTWRITEBYTECODE": "1",
            "PYTHONHASHSEED": "0",
        }
        env.update({key: value for key, value in os.environ.items() if key not in env})
        prepend_pythonpath(env, [*source_roots, _PACKAGE_PARENT])
        return env

    @staticmethod
    def _roots(project_root: Path, source_roots: Sequence[str]) -> List[Path]:
        roots: List[Path] = []
        for entry in source_roots:
            candidate = (project_root / entry).resolve()
            if candidate.is_dir() and candidate not in roots:
                roots.append(candidate)
        return roots or [project_root.resolve()]

    async def compile(self, sources: SourceSet) -> CompileResult:
        started = time.monotonic()
        for relative in sources.test_files:
            path = sources.project_root / relative
            try:
                compile(path.read_text(encoding="utf-8"), relative, "exec")
            except SyntaxError as error:
                return CompileResult(
                    ok=False,
                    message=f"SyntaxError: {error.msg}",
                    location=SourceLocation(path=relative, line=error.lineno or 0),
                    duration=time.monotonic() - started,
                )
            except (OSError, ValueError) as error:
                return CompileResult(
                    ok=False,
                    message=f"Cannot compile {relative}: {error}",
                    location=SourceLocation(path=relative, line=0),
                    duration=time.monotonic() - started,
                )

        roots = self._roots(sources.project_root, sources.source_roots)
        result = await run_pytest(
            ["--collect-only", "-q", "-p", "no:cacheprovider", *sources.test_files],
            cwd=sources.project_root,
            env=self._environment(roots),
            timeout=self._collect_timeout,
            python=self._python,
        )
        duration = time.monotonic() - started
        if result.status == "timeout":
            return CompileResult(
                ok=False,
                message=f"Test collection exceeded {self._collect_timeout:g}s",
                duration=duration,
            )
        output = "\n".join(part for part in (result.stdout, result.stderr) if part)
        if result.exit_code != 0:
            message = "No tests were collected" if result.status == "no-tests" else _tail(output)
            return CompileResult(
                ok=False,
                message=message,
                location=_first_location(output, sources.project_root),
                duration=duration,
            )
        node_ids = tuple(match.group("node").strip() for match in _NODE_ID_RE.finditer(result.stdout))
        unit = CompiledUnit(
            project_root=sources.project_root,
            test_files=sources.test_files,
            artifacts=sources.artifacts,
            source_roots=sources.source_roots,
            node_ids=node_ids,
        )
        return CompileResult(ok=True, unit=unit, duration=duration)

    async def execute(
        self,
        unit: CompiledUnit,
        timeouts: ExecutionTimeouts,
        *,
        record_path: Optional[Path] = None,
        session_id: str = "",
    ) -> ExecutionResult:
        roots = self._roots(unit.project_root, unit.source_roots)
        outcomes_path = unit.artifacts / "outcomes.json"
        outcomes_path.unlink(missing_ok=True)
        env = self._environment(roots)
        env[ENV_OUTCOMES_PATH] = str(outcomes_path)
        env[ENV_COVERAGE_SOURCE] = os.pathsep.join(str(root) for root in roots)
        env[ENV_SESSION_ID] = session_id or unit.project_root.parent.name
        if record_path is not None:
            record_path.unlink(missing_ok=True)
            env[ENV_RECORD_PATH] = str(record_path)
        else:
            env[ENV_RECORD_PATH] = ""

        args = [
            "-p",
            AGENT_PLUGIN,
            "-p",
            "no:cacheprovider",
            "-q",
            f"--timeout={timeouts.per_test:g}",
            *unit.test_files,
        ]
        result = await run_pytest(
            args,
            cwd=unit.project_root,
            env=env,
            timeout=timeouts.per_suite,
            python=self._python,
        )
        outcomes: List[TestOutcome] = []
        if outcomes_path.exists():
            try:
                raw = json.loads(outcomes_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as error:
                LOGGER.warning("Unreadable outcomes file %s: %s", outcomes_path, error)
            else:
                outcomes = [TestOutcome.from_mapping(item) for item in raw if isinstance(item, Mapping)]
        return ExecutionResult(
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            outcomes=outcomes,
            stdout=result.stdout,
            stderr=result.stderr,
            duration=result.duration,
            collected=result.collected,
            record_path=record_path if record_path is not None and record_path.exists() else None,
        )


__all__ = [
    "AGENT_PLUGIN",
    "CompileResult",
    "CompiledUnit",
    "ExecutionResult",
    "ExecutionTimeouts",
    "PytestToolchain",
    "SourceSet",
    "TestOutcome",
    "Toolchain",
]
