from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import pytest

from uta.tools.pytest_runner import (
    parse_collected,
    prepend_pythonpath,
    run_command,
    status_from_exit_code,
)


@pytest.mark.parametrize(
    "stdout, expected",
    [
        ("collected 4 items\n\n....  [100%]", 4),
        ("3 tests collected in 0.01s", 3),
        ("1 failed, 2 passed in 0.10s", 3),
        ("..F  [100%]", 3),
        ("no tests ran in 0.01s", 0),
        ("", None),
    ],
)
def test_parse_collected(stdout: str, expected) -> None:
    assert parse_collected(stdout) == expected


@pytest.mark.parametrize(
    "exit_code, status",
    [(None, "timeout"), (0, "passed"), (1, "failed"), (2, "error"), (5, "no-tests")],
)
def test_status_from_exit_code(exit_code, status: str) -> None:
    assert status_from_exit_code(exit_code) == status


def test_prepend_pythonpath_deduplicates() -> None:
    env = {"PYTHONPATH": os.pathsep.join(["/b", "/c"])}
    prepend_pythonpath(env, ["/a", "/b"])
    assert env["PYTHONPATH"].split(os.pathsep) == ["/a", "/b", "/c"]


def test_run_command_captures_output(tmp_path: Path) -> None:
    result = asyncio.run(
        run_command([sys.executable, "-c", "print('hello')"], cwd=tmp_path, timeout=30)
    )
    assert result.ok
    assert result.stdout.strip() == "hello"


def test_run_command_kills_on_timeout(tmp_path: Path) -> None:
    result = asyncio.run(
        run_command([sys.executable, "-c", "import time; time.sleep(30)"], cwd=tmp_path, timeout=0.5)
    )
    assert result.timed_out
    assert result.exit_code is None
    assert result.duration < 10
