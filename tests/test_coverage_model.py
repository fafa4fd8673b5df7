from __future__ import annotations

import pytest

from uta.coverage.model import (
    CoverageReport,
    CoverageSummary,
    CoverageUnit,
    check_thresholds,
    format_report,
    merge_reports,
)


def _report(hits: int, *, extra: bool = False) -> CoverageReport:
    units = [
        CoverageUnit.build(
            "src/app/calc.py",
            "Calculator",
            "add",
            5,
            7,
            lines={5: hits, 6: hits, 7: 0},
            branches={(6, 7): 0, (6, 8): hits},
        )
    ]
    if extra:
        units.append(CoverageUnit.build("src/app/util.py", "", "helper", 1, 2, lines={1: 1, 2: 1}))
    return CoverageReport.from_units(units, sessions=[f"s{hits}"])


def test_merge_takes_max_hits() -> None:
    merged = merge_reports(_report(1), _report(4))
    unit = next(merged.units())
    assert unit.line_table() == {5: 4, 6: 4, 7: 0}
    assert merged.sessions == ("s1", "s4")


def test_merge_is_commutative_and_idempotent() -> None:
    left = _report(2)
    right = _report(3, extra=True)
    assert left.merge(right) == right.merge(left)
    assert left.merge(left).files == left.files
    assert merge_reports(left, right, right) == merge_reports(left, right)


def test_merge_of_nothing_is_empty() -> None:
    assert merge_reports().is_empty


def test_merge_keeps_partial_flag() -> None:
    partial = CoverageReport(partial=True)
    assert merge_reports(_report(1), partial).partial


def test_units_of_different_regions_do_not_merge() -> None:
    first = CoverageUnit.build("a.py", "", "f", 1, 2)
    second = CoverageUnit.build("a.py", "", "g", 3, 4)
    with pytest.raises(ValueError):
        first.merge(second)


def test_summary_counts_methods_and_classes() -> None:
    summary = _report(1, extra=True).summary()
    assert summary.line_covered == 4
    assert summary.line_total == 5
    assert summary.branch_covered == 1
    assert summary.branch_total == 2
    assert summary.method_covered == 2
    assert summary.class_total == 2
    assert summary.instruction_ratio == summary.line_ratio


def test_uncovered_unit_counts_against_method_ratio() -> None:
    report = CoverageReport.from_units(
        [
            CoverageUnit.build("a.py", "A", "run", 1, 2, lines={1: 1, 2: 1}),
            CoverageUnit.build("a.py", "A", "stop", 3, 4, lines={3: 0, 4: 0}),
        ]
    )
    summary = report.summary()
    assert summary.method_total == 2
    assert summary.method_covered == 1
    assert summary.class_covered == 1


def test_format_report_lists_classes_and_totals() -> None:
    text = format_report(_report(1, extra=True))
    assert text.startswith("Coverage report")
    assert "Class: src/app/calc.py::Calculator" in text
    assert "Class: src/app/util.py" in text
    assert "  Line coverage: 66.67%" in text
    assert "  Branch coverage: 50.00%" in text
    assert "Total: lines 4/5 (80.00%), branches 1/2 (50.00%)" in text


def test_format_report_of_empty_report() -> None:
    text = format_report(CoverageReport())
    assert "No coverage data recorded" in text


def test_check_thresholds_reports_violations() -> None:
    summary = CoverageSummary(line_covered=7, line_total=10, branch_covered=1, branch_total=4)
    violations = check_thresholds(summary, min_line=80, min_branch=20)
    assert violations == ["Line coverage 70.00% is below the minimum of 80.00%"]


def test_check_thresholds_ignores_empty_metrics() -> None:
    assert check_thresholds(CoverageSummary(), min_line=100, min_branch=100) == []
