from __future__ import annotations

import os
import subprocess
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@dataclass(slots=True)
class TinyRepo:
    """Fixture payload representing the synthetic project under test."""

    root: Path
    config_path: Path

    def run_cli(self, *args: str) -> subprocess.CompletedProcess[str]:
        """Invoke ``python -m uta.cli`` with the provided arguments."""

        env = os.environ.copy()
        pythonpath = str(SRC)
        if env.get("PYTHONPATH"):
            pythonpath = os.pathsep.join([pythonpath, env["PYTHONPATH"]])
        env["PYTHONPATH"] = pythonpath

        command = [sys.executable, "-m", "uta.cli", *args]
        return subprocess.run(  # noqa: S603
            command,
            cwd=self.root,
            env=env,
            capture_output=True,
            text=True,
            check=False,
        )


def write_tiny_project(repo_root: Path) -> None:
    """Lay out a small src-layout package with one class and two functions."""

    src_dir = repo_root / "src" / "tiny_app"
    src_dir.mkdir(parents=True)
    (src_dir / "__init__.py").write_text('"""Tiny app package."""\n', encoding="utf-8")
    (src_dir / "calculator.py").write_text(
        textwrap.dedent(
            """
            from __future__ import annotations

            import math


            class Calculator:
                \"\"\"Keeps a running total.\"\"\"

                def __init__(self, start: int = 0) -> None:
                    self.total = start

                @property
                def value(self) -> int:
                    return self.total

                def get_total(self) -> int:
                    return self.total

                def add(self, amount: int) -> int:
                    self.total += amount
                    return self.total

                def divide(self, divisor: int) -> float:
                    if divisor == 0:
                        raise ZeroDivisionError("divisor must be non-zero")
                    return self.total / divisor

                def _reset(self) -> None:
                    self.total = 0


            def add(left: int, right: int) -> int:
                return left + right


            def hypot(a: float, b: float) -> float:
                return math.sqrt(a * a + b * b)


            def _private() -> None:
                return None
            """
        ).lstrip(),
        encoding="utf-8",
    )
    (src_dir / "shapes.py").write_text(
        textwrap.dedent(
            """
            class Square:
                def __init__(self, side: float) -> None:
                    self.side = side

                def area(self) -> float:
                    return self.side * self.side
            """
        ).lstrip(),
        encoding="utf-8",
    )

    tests_dir = repo_root / "tests"
    tests_dir.mkdir()
    (tests_dir / "test_calculator.py").write_text(
        textwrap.dedent(
            """
            from tiny_app.calculator import add


            def test_add_returns_sum() -> None:
                assert add(2, 3) == 5
            """
        ).lstrip(),
        encoding="utf-8",
    )


@pytest.fixture()
def tiny_repo(tmp_path: Path) -> TinyRepo:
    """Create a tiny project with a uta configuration for CLI and engine tests."""

    repo_root = tmp_path / "tiny-repo"
    repo_root.mkdir()
    write_tiny_project(repo_root)
    (repo_root / "uta.yaml").write_text(
        textwrap.dedent(
            """
            project:
              name: tiny-app
              repo_root: .
              source_roots: [src]
              tests_dir: tests
            engine:
              maxAttempts: 2
              concurrencyLimit: 2
              perTestTimeout: 20
              perSuiteTimeout: 120
              backoffBase: 0
              backoffCap: 0
            models:
              default: offline
            paths:
              data: .uta
              logs: .uta/logs
            """
        ).lstrip(),
        encoding="utf-8",
    )
    return TinyRepo(root=repo_root, config_path=repo_root / "uta.yaml")
