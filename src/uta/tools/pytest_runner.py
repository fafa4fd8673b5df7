"""Pytest and subprocess execution helpers for the verification pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Literal, Mapping, Sequence

import asyncio
import contextlib
import os
import re
import signal
import sys
import time

PytestStatus = Literal["passed", "failed", "error", "no-tests", "timeout"]

_KILL_PROCESS_GROUP = hasattr(os, "killpg")


@dataclass(slots=True)
class CommandResult:
    """Captured outcome of an external process."""

    command: tuple[str, ...]
    cwd: Path
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


@dataclass(slots=True)
class PytestResult:
    """Structured summary of a pytest invocation."""

    command: tuple[str, ...]
    cwd: Path
    exit_code: int | None
    status: PytestStatus
    collected: int | None
    stdout: str
    stderr: str
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "passed"

    @property
    def timed_out(self) -> bool:
        return self.status == "timeout"


def _merge_env(extra: Mapping[str, str] | None) -> Dict[str, str]:
    """Merge provided environment overrides with the current process state."""
    env: Dict[str, str] = os.environ.copy()
    if extra:
        env.update({str(key): str(value) for key, value in extra.items()})
    return env


def prepend_pythonpath(env: Dict[str, str], entries: Iterable[Path | str]) -> Dict[str, str]:
    """Put ``entries`` at the front of ``PYTHONPATH`` without duplicates."""
    current = [part for part in env.get("PYTHONPATH", "").split(os.pathsep) if part]
    ordered: list[str] = []
    for entry in [*(str(item) for item in entries), *current]:
        if entry not in ordered:
            ordered.append(entry)
    if ordered:
        env["PYTHONPATH"] = os.pathsep.join(ordered)
    return env


_COLLECT_RE = re.compile(r"collected\s+(\d+)\s+item")
_SUMMARY_RE = re.compile(
    r"(\d+)\s+(passed|failed|errors?|skipped|xfailed|xpassed|deselected)"
)
_NO_TESTS_RE = re.compile(r"no tests ran|collected 0 items")
_PROGRESS_RE = re.compile(r"^\s*([.FEsSkxX!P]+)\s*\[[^\]]+\]\s*$")
_PROGRESS_SYMBOLS = frozenset(".FEsSkxX!P")
_COLLECT_ONLY_RE = re.compile(r"^(\d+)\s+tests?\s+collected", re.MULTILINE)


def parse_collected(stdout: str, stderr: str = "") -> int | None:
    """Extract the number of collected tests from pytest output streams."""
    text = "\n".join(part for part in (stdout, stderr) if part)
    match = _COLLECT_RE.search(text) or _COLLECT_ONLY_RE.search(text)
    if match:
        return int(match.group(1))

    matches = _SUMMARY_RE.findall(text)
    if not matches:
        for line in text.splitlines():
            progress = _PROGRESS_RE.match(line)
            if progress:
                symbols = progress.group(1)
                total = sum(1 for char in symbols if char in _PROGRESS_SYMBOLS)
                if total:
                    return total
        if _NO_TESTS_RE.search(text):
            return 0
        return None
    return sum(int(amount) for amount, kind in matches if kind != "deselected")


def status_from_exit_code(exit_code: int | None) -> PytestStatus:
    """Translate pytest's exit codes into the consolidated status enum."""
    if exit_code is None:
        return "timeout"
    if exit_code == 0:
        return "passed"
    if exit_code == 5:
        return "no-tests"
    if exit_code == 1:
        return "failed"
    return "error"


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """Kill ``process`` (and its process group where supported) and reap it."""
    if process.returncode is None:
        try:
            if _KILL_PROCESS_GROUP:
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            pass
        except PermissionError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
    await process.wait()


async def run_command(
    command: Sequence[str],
    *,
    cwd: Path | str,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run ``command`` and capture its output, killing it on timeout or cancellation."""
    workdir = Path(cwd).resolve()
    invocation = tuple(str(part) for part in command)
    started = time.monotonic()
    process = await asyncio.create_subprocess_exec(
        *invocation,
        cwd=workdir,
        env=dict(env) if env is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=_KILL_PROCESS_GROUP,
    )
    try:
        raw_stdout, raw_stderr = await asyncio.wait_for(process.communicate(), timeout)
    except asyncio.TimeoutError:
        await _terminate(process)
        return CommandResult(
            command=invocation,
            cwd=workdir,
            exit_code=None,
            stdout="",
            stderr=f"Process exceeded the {timeout:g}s time limit and was killed.",
            timed_out=True,
            duration=time.monotonic() - started,
        )
    except asyncio.CancelledError:
        await _terminate(process)
        raise

    return CommandResult(
        command=invocation,
        cwd=workdir,
        exit_code=process.returncode,
        stdout=raw_stdout.decode("utf-8", errors="replace"),
        stderr=raw_stderr.decode("utf-8", errors="replace"),
        duration=time.monotonic() - started,
    )


async def run_pytest(
    args: Sequence[str] | None = None,
    *,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    python: str | None = None,
) -> PytestResult:
    """Execute pytest in a subprocess and return a structured result."""

    workdir = Path(cwd or Path.cwd()).resolve()
    raw_args = tuple(args or ("-q",))
    invocation = (python or sys.executable, "-m", "pytest", *raw_args)

    env_vars = _merge_env(env)
    entries: list[Path] = [workdir]
    src_dir = workdir / "src"
    if src_dir.is_dir():
        entries.insert(0, src_dir)
    prepend_pythonpath(env_vars, entries)

    result = await run_command(invocation, cwd=workdir, env=env_vars, timeout=timeout)
    status = "timeout" if result.timed_out else status_from_exit_code(result.exit_code)
    return PytestResult(
        command=result.command,
        cwd=workdir,
        exit_code=result.exit_code,
        status=status,
        collected=parse_collected(result.stdout, result.stderr),
        stdout=result.stdout,
        stderr=result.stderr,
        duration=result.duration,
    )


__all__ = [
    "CommandResult",
    "PytestResult",
    "PytestStatus",
    "parse_collected",
    "prepend_pythonpath",
    "run_command",
    "run_pytest",
    "status_from_exit_code",
]
