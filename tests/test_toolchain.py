from __future__ import annotations

import asyncio
import textwrap
from pathlib import Path

from uta.coverage.agent import build_units
from uta.coverage.collector import CoverageCollector, find_record_file
from uta.coverage.record import read_record
from uta.schema import DiagnosticKind
from uta.toolchain import CompiledUnit, ExecutionTimeouts, PytestToolchain, SourceSet, TestOutcome
from uta.verification import classify_execution

TIMEOUTS = ExecutionTimeouts(per_test=2, per_suite=120)


def _write_test(root: Path, name: str, body: str) -> str:
    relative = f"tests/{name}"
    (root / relative).write_text(textwrap.dedent(body).lstrip(), encoding="utf-8")
    return relative


def _sources(root: Path, artifacts: Path, *files: str) -> SourceSet:
    artifacts.mkdir(parents=True, exist_ok=True)
    return SourceSet(project_root=root, test_files=files, artifacts=artifacts, source_roots=("src",))


def test_compile_reports_syntax_errors(tiny_repo, tmp_path: Path) -> None:
    relative = _write_test(tiny_repo.root, "test_broken.py", "def test_x(:\n    pass\n")
    result = asyncio.run(PytestToolchain().compile(_sources(tiny_repo.root, tmp_path / "artifacts", relative)))

    assert not result.ok
    assert result.message.startswith("SyntaxError")
    assert result.location is not None
    assert result.location.path == relative
    assert result.location.line == 1


def test_compile_reports_import_errors(tiny_repo, tmp_path: Path) -> None:
    relative = _write_test(
        tiny_repo.root,
        "test_bad_import.py",
        """
        from tiny_app.calculator import does_not_exist


        def test_x():
            assert does_not_exist
        """,
    )
    result = asyncio.run(PytestToolchain().compile(_sources(tiny_repo.root, tmp_path / "artifacts", relative)))

    assert not result.ok
    assert "does_not_exist" in result.message


def test_execute_records_outcomes_and_coverage(tiny_repo, tmp_path: Path) -> None:
    relative = _write_test(
        tiny_repo.root,
        "test_divide_generated.py",
        """
        import pytest

        from tiny_app.calculator import Calculator


        def test_divide():
            assert Calculator(6).divide(2) == 3


        def test_divide_by_zero():
            with pytest.raises(ZeroDivisionError):
                Calculator(1).divide(0)
        """,
    )
    toolchain = PytestToolchain()
    sources = _sources(tiny_repo.root, tmp_path / "artifacts", relative)
    compiled = asyncio.run(toolchain.compile(sources))
    assert compiled.ok, compiled.message
    assert len(compiled.unit.node_ids) == 2

    record_path = tmp_path / "artifacts" / "coverage.rec"
    result = asyncio.run(toolchain.execute(compiled.unit, TIMEOUTS, record_path=record_path, session_id="it"))

    assert result.exit_code == 0, result.output
    assert [outcome.outcome for outcome in result.outcomes] == ["passed", "passed"]
    diagnostic = classify_execution(result, duration=result.duration, timeouts=TIMEOUTS)
    assert diagnostic.kind is DiagnosticKind.SUCCESS

    assert result.record_path == record_path
    report = read_record(record_path)
    assert report.sessions == ("it",)
    divide = next(unit for unit in report.units() if unit.method == "divide")
    assert divide.path.endswith("tiny_app/calculator.py")
    assert divide.class_name == "Calculator"
    assert divide.line_covered == divide.line_total
    assert divide.branch_total == 2
    assert divide.branch_covered == 2
    hypot = next(unit for unit in report.units() if unit.method == "hypot")
    assert hypot.line_covered < hypot.line_total


def test_execute_classifies_failures(tiny_repo, tmp_path: Path) -> None:
    relative = _write_test(
        tiny_repo.root,
        "test_failing.py",
        """
        from tiny_app.calculator import add


        def test_wrong_sum():
            assert add(1, 1) == 3


        def test_type_error():
            add(1, "x")
        """,
    )
    toolchain = PytestToolchain()
    compiled = asyncio.run(toolchain.compile(_sources(tiny_repo.root, tmp_path / "artifacts", relative)))
    result = asyncio.run(toolchain.execute(compiled.unit, TIMEOUTS))

    assert result.exit_code == 1
    exceptions = sorted(outcome.exception for outcome in result.failures)
    assert exceptions == ["AssertionError", "TypeError"]
    assert result.record_path is None
    diagnostic = classify_execution(result, duration=result.duration, timeouts=TIMEOUTS)
    assert diagnostic.kind is DiagnosticKind.RUNTIME_EXCEPTION
    assert len(diagnostic.failing_tests) == 2


def test_execute_reports_skipped_and_xfailed_tests(tiny_repo, tmp_path: Path) -> None:
    relative = _write_test(
        tiny_repo.root,
        "test_skippy.py",
        """
        import pytest

        from tiny_app.calculator import add


        @pytest.mark.skip(reason="not today")
        def test_skipped():
            assert add(1, 1) == 2


        @pytest.mark.xfail(reason="known bug")
        def test_expected_failure():
            assert add(1, 1) == 3
        """,
    )
    toolchain = PytestToolchain()
    compiled = asyncio.run(toolchain.compile(_sources(tiny_repo.root, tmp_path / "artifacts", relative)))
    result = asyncio.run(toolchain.execute(compiled.unit, TIMEOUTS))

    assert result.exit_code == 0
    assert sorted((outcome.when, outcome.xfail) for outcome in result.outcomes if outcome.skipped) == [
        ("call", True),
        ("setup", False),
    ]
    diagnostic = classify_execution(result, duration=result.duration, timeouts=TIMEOUTS)
    assert diagnostic.kind is DiagnosticKind.ASSERTION_FAILURE
    assert "not today" in diagnostic.message


def test_execute_reports_module_level_skip(tiny_repo, tmp_path: Path) -> None:
    relative = _write_test(
        tiny_repo.root,
        "test_module_skip.py",
        """
        import pytest

        pytest.skip("whole module", allow_module_level=True)


        def test_never_runs():
            assert False
        """,
    )
    sources = _sources(tiny_repo.root, tmp_path / "artifacts", relative)
    unit = CompiledUnit(
        project_root=sources.project_root,
        test_files=sources.test_files,
        artifacts=sources.artifacts,
        source_roots=sources.source_roots,
    )
    result = asyncio.run(PytestToolchain().execute(unit, TIMEOUTS))

    assert [(outcome.when, outcome.outcome) for outcome in result.outcomes] == [("collect", "skipped")]
    diagnostic = classify_execution(result, duration=result.duration, timeouts=TIMEOUTS)
    assert diagnostic.kind is DiagnosticKind.ASSERTION_FAILURE
    assert "whole module" in diagnostic.message


def test_execute_enforces_per_test_timeout(tiny_repo, tmp_path: Path) -> None:
    relative = _write_test(
        tiny_repo.root,
        "test_slow.py",
        """
        import time


        def test_sleeps():
            time.sleep(30)
        """,
    )
    toolchain = PytestToolchain()
    compiled = asyncio.run(toolchain.compile(_sources(tiny_repo.root, tmp_path / "artifacts", relative)))
    timeouts = ExecutionTimeouts(per_test=1, per_suite=60)
    result = asyncio.run(toolchain.execute(compiled.unit, timeouts))

    diagnostic = classify_execution(result, duration=result.duration, timeouts=timeouts)
    assert diagnostic.kind is DiagnosticKind.TIMEOUT
    assert result.duration < 30


def test_execute_kills_suite_on_timeout(tiny_repo, tmp_path: Path) -> None:
    relative = _write_test(
        tiny_repo.root,
        "test_hang.py",
        """
        import time


        def test_hangs():
            time.sleep(30)
        """,
    )
    toolchain = PytestToolchain()
    compiled = asyncio.run(toolchain.compile(_sources(tiny_repo.root, tmp_path / "artifacts", relative)))
    timeouts = ExecutionTimeouts(per_test=60, per_suite=3)
    result = asyncio.run(toolchain.execute(compiled.unit, timeouts))

    assert result.timed_out
    assert result.exit_code is None
    assert classify_execution(result, duration=result.duration, timeouts=timeouts).kind is DiagnosticKind.TIMEOUT


def test_collector_writes_record_to_requested_path(tiny_repo) -> None:
    record_path = tiny_repo.root / ".uta" / "coverage.rec"
    collector = CoverageCollector(timeouts=TIMEOUTS, source_roots=["src"])
    report = asyncio.run(collector.collect(tiny_repo.root, ["tests"], record_path=record_path))

    assert record_path.exists()
    assert find_record_file(tiny_repo.root) == record_path
    add = next(unit for unit in report.units() if unit.method == "add" and not unit.class_name)
    assert add.line_covered == add.line_total
    assert collector.read(record_path) == report


def test_build_units_attributes_lines_to_regions() -> None:
    source = textwrap.dedent(
        """
        import os


        class Box:
            size = 1

            def grow(self, amount):
                if amount:
                    self.size += amount
                return self.size


        def helper():
            return os.sep
        """
    ).lstrip()
    file_report = {
        "executed_lines": [1, 4, 5, 7, 8, 9, 10, 13],
        "missing_lines": [14],
        "executed_branches": [[8, 9]],
        "missing_branches": [[8, 10]],
        "contexts": {"8": ["t::a", "t::b"], "9": ["t::a"]},
    }
    units = {(unit.class_name, unit.method): unit for unit in build_units("pkg/box.py", source, file_report)}

    grow = units[("Box", "grow")]
    assert grow.line_table() == {7: 1, 8: 2, 9: 1, 10: 1}
    assert grow.branch_table() == {(8, 9): 1, (8, 10): 0}
    assert units[("", "helper")].line_table() == {13: 1, 14: 0}
    assert units[("Box", "")].line_table() == {4: 1, 5: 1}
    assert units[("", "")].line_table() == {1: 1}


def test_outcome_from_mapping() -> None:
    outcome = TestOutcome.from_mapping(
        {
            "nodeid": "tests/test_x.py::test_a",
            "when": "call",
            "outcome": "failed",
            "exception": "Failed",
            "message": "Timeout (>1.0s) from pytest-timeout.",
            "frames": [{"path": "tests/test_x.py", "line": 3, "name": "test_a"}],
        }
    )
    assert outcome.timed_out
    assert outcome.frames[0].render() == "tests/test_x.py:3 in test_a"
