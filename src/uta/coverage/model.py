"""Immutable coverage data model.

A :class:`CoverageReport` maps source files to ordered :class:`CoverageUnit`
records. Each unit attributes per-line and per-branch hit counts to a
``(class, method, line-range)`` region of a file. Reports never change after
construction; combining two reports always produces a new one.

Hit counts from different units or reports that describe the same line are
combined with ``max`` rather than summed, so collecting the same run twice
and merging the results leaves the numbers unchanged.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Dict, List, Tuple

__all__ = [
    "BranchHit",
    "CoverageReport",
    "CoverageSummary",
    "CoverageUnit",
    "FileCoverage",
    "LineHit",
    "UnitKey",
    "check_thresholds",
    "format_report",
    "merge_reports",
]

UnitKey = Tuple[str, str, str, int, int]

MODULE_REGION = "<module>"


@dataclass(frozen=True, slots=True)
class LineHit:
    """Number of times a single source line executed."""

    line: int
    hits: int


@dataclass(frozen=True, slots=True)
class BranchHit:
    """Number of times the arc ``source -> destination`` was taken."""

    source: int
    destination: int
    hits: int


def _max_merge(left: Mapping, right: Mapping) -> Dict:
    merged = dict(left)
    for key, hits in right.items():
        current = merged.get(key)
        if current is None or hits > current:
            merged[key] = hits
    return merged


@dataclass(frozen=True, slots=True)
class CoverageUnit:
    """Hit counters for one class/method region of a source file.

    ``class_name`` and ``method`` are empty strings for module-level code and
    ``method`` is empty for class bodies outside any method.
    """

    path: str
    class_name: str
    method: str
    first_line: int
    last_line: int
    lines: tuple[LineHit, ...] = ()
    branches: tuple[BranchHit, ...] = ()

    @classmethod
    def build(
        cls,
        path: str,
        class_name: str,
        method: str,
        first_line: int,
        last_line: int,
        *,
        lines: Mapping[int, int] | None = None,
        branches: Mapping[tuple[int, int], int] | None = None,
    ) -> "CoverageUnit":
        """Create a unit with hit tables in canonical (sorted) order."""
        line_table = lines or {}
        branch_table = branches or {}
        return cls(
            path=path,
            class_name=class_name or "",
            method=method or "",
            first_line=int(first_line),
            last_line=int(last_line),
            lines=tuple(LineHit(line, max(int(hits), 0)) for line, hits in sorted(line_table.items())),
            branches=tuple(
                BranchHit(source, destination, max(int(hits), 0))
                for (source, destination), hits in sorted(branch_table.items())
            ),
        )

    @property
    def key(self) -> UnitKey:
        return (self.path, self.class_name, self.method, self.first_line, self.last_line)

    @property
    def display_name(self) -> str:
        if self.class_name and self.method:
            return f"{self.class_name}.{self.method}"
        return self.class_name or self.method or MODULE_REGION

    def line_table(self) -> Dict[int, int]:
        return {entry.line: entry.hits for entry in self.lines}

    def branch_table(self) -> Dict[tuple[int, int], int]:
        return {(entry.source, entry.destination): entry.hits for entry in self.branches}

    @property
    def line_total(self) -> int:
        return len(self.lines)

    @property
    def line_covered(self) -> int:
        return sum(1 for entry in self.lines if entry.hits > 0)

    @property
    def branch_total(self) -> int:
        return len(self.branches)

    @property
    def branch_covered(self) -> int:
        return sum(1 for entry in self.branches if entry.hits > 0)

    # Statements are the smallest unit coverage.py measures, so instruction
    # counters mirror the statement (line) counters.
    @property
    def instruction_total(self) -> int:
        return self.line_total

    @property
    def instruction_covered(self) -> int:
        return self.line_covered

    @property
    def covered(self) -> bool:
        return self.line_covered > 0

    def merge(self, other: "CoverageUnit") -> "CoverageUnit":
        """Combine two records of the same region, keeping the max hit counts."""
        if other.key != self.key:
            raise ValueError(f"Cannot merge coverage units {self.key} and {other.key}")
        return CoverageUnit.build(
            self.path,
            self.class_name,
            self.method,
            self.first_line,
            self.last_line,
            lines=_max_merge(self.line_table(), other.line_table()),
            branches=_max_merge(self.branch_table(), other.branch_table()),
        )


def _unit_sort_key(unit: CoverageUnit) -> tuple[int, int, str, str]:
    return (unit.first_line, unit.last_line, unit.class_name, unit.method)


@dataclass(frozen=True, slots=True)
class FileCoverage:
    """Ordered coverage units for a single source file."""

    path: str
    units: tuple[CoverageUnit, ...]

    def line_hits(self) -> Dict[int, int]:
        """Return line -> hits for the file, taking the max across units."""
        table: Dict[int, int] = {}
        for unit in self.units:
            table = _max_merge(table, unit.line_table())
        return table


def _ratio(covered: int, total: int) -> float:
    return covered / total if total else 0.0


@dataclass(frozen=True, slots=True)
class CoverageSummary:
    """Aggregate counters and ratios for a report."""

    line_covered: int = 0
    line_total: int = 0
    branch_covered: int = 0
    branch_total: int = 0
    instruction_covered: int = 0
    instruction_total: int = 0
    method_covered: int = 0
    method_total: int = 0
    class_covered: int = 0
    class_total: int = 0

    @property
    def line_ratio(self) -> float:
        return _ratio(self.line_covered, self.line_total)

    @property
    def branch_ratio(self) -> float:
        return _ratio(self.branch_covered, self.branch_total)

    @property
    def instruction_ratio(self) -> float:
        return _ratio(self.instruction_covered, self.instruction_total)

    @property
    def method_ratio(self) -> float:
        return _ratio(self.method_covered, self.method_total)

    @property
    def class_ratio(self) -> float:
        return _ratio(self.class_covered, self.class_total)

    def to_dict(self) -> Dict[str, float | int]:
        return {
            "line_covered": self.line_covered,
            "line_total": self.line_total,
            "line_ratio": self.line_ratio,
            "branch_covered": self.branch_covered,
            "branch_total": self.branch_total,
            "branch_ratio": self.branch_ratio,
            "instruction_covered": self.instruction_covered,
            "instruction_total": self.instruction_total,
            "instruction_ratio": self.instruction_ratio,
            "method_covered": self.method_covered,
            "method_total": self.method_total,
            "method_ratio": self.method_ratio,
            "class_covered": self.class_covered,
            "class_total": self.class_total,
            "class_ratio": self.class_ratio,
        }


def _summarise(units: Iterable[CoverageUnit]) -> CoverageSummary:
    counters = dict.fromkeys(
        (
            "line_covered",
            "line_total",
            "branch_covered",
            "branch_total",
            "method_covered",
            "method_total",
        ),
        0,
    )
    classes: Dict[tuple[str, str], bool] = {}
    for unit in units:
        counters["line_covered"] += unit.line_covered
        counters["line_total"] += unit.line_total
        counters["branch_covered"] += unit.branch_covered
        counters["branch_total"] += unit.branch_total
        if unit.method:
            counters["method_total"] += 1
            if unit.covered:
                counters["method_covered"] += 1
        owner = (unit.path, unit.class_name or MODULE_REGION)
        classes[owner] = classes.get(owner, False) or unit.covered
    return CoverageSummary(
        line_covered=counters["line_covered"],
        line_total=counters["line_total"],
        branch_covered=counters["branch_covered"],
        branch_total=counters["branch_total"],
        instruction_covered=counters["line_covered"],
        instruction_total=counters["line_total"],
        method_covered=counters["method_covered"],
        method_total=counters["method_total"],
        class_covered=sum(1 for covered in classes.values() if covered),
        class_total=len(classes),
    )


@dataclass(frozen=True, slots=True)
class CoverageReport:
    """Immutable mapping of file -> ordered coverage units.

    ``partial`` marks reports decoded from a truncated record; ``sessions``
    lists the collection sessions that contributed data.
    """

    files: tuple[FileCoverage, ...] = ()
    partial: bool = False
    sessions: tuple[str, ...] = ()

    @classmethod
    def from_units(
        cls,
        units: Iterable[CoverageUnit],
        *,
        partial: bool = False,
        sessions: Iterable[str] = (),
    ) -> "CoverageReport":
        """Group ``units`` by file, merging duplicate regions by max hits."""
        by_key: Dict[UnitKey, CoverageUnit] = {}
        for unit in units:
            existing = by_key.get(unit.key)
            by_key[unit.key] = unit if existing is None else existing.merge(unit)

        grouped: Dict[str, List[CoverageUnit]] = {}
        for unit in by_key.values():
            grouped.setdefault(unit.path, []).append(unit)

        files = tuple(
            FileCoverage(path=path, units=tuple(sorted(grouped[path], key=_unit_sort_key)))
            for path in sorted(grouped)
        )
        return cls(files=files, partial=partial, sessions=tuple(sorted(set(sessions))))

    def units(self) -> Iterator[CoverageUnit]:
        for file in self.files:
            yield from file.units

    def by_file(self) -> Dict[str, tuple[CoverageUnit, ...]]:
        return {file.path: file.units for file in self.files}

    def file(self, path: str) -> FileCoverage | None:
        for file in self.files:
            if file.path == path:
                return file
        return None

    @property
    def is_empty(self) -> bool:
        return not self.files

    def summary(self) -> CoverageSummary:
        return _summarise(self.units())

    def merge(self, other: "CoverageReport") -> "CoverageReport":
        return CoverageReport.from_units(
            [*self.units(), *other.units()],
            partial=self.partial or other.partial,
            sessions=(*self.sessions, *other.sessions),
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "partial": self.partial,
            "sessions": list(self.sessions),
            "summary": self.summary().to_dict(),
            "files": {
                file.path: [
                    {
                        "class": unit.class_name,
                        "method": unit.method,
                        "first_line": unit.first_line,
                        "last_line": unit.last_line,
                        "lines": {str(entry.line): entry.hits for entry in unit.lines},
                        "branches": [
                            [entry.source, entry.destination, entry.hits] for entry in unit.branches
                        ],
                    }
                    for unit in file.units
                ]
                for file in self.files
            },
        }


def merge_reports(*reports: CoverageReport) -> CoverageReport:
    """Merge any number of reports with the max-hit-count rule."""
    if not reports:
        return CoverageReport()
    return CoverageReport.from_units(
        (unit for report in reports for unit in report.units()),
        partial=any(report.partial for report in reports),
        sessions=(session for report in reports for session in report.sessions),
    )


def _percent(value: float) -> str:
    return f"{value * 100:.2f}%"


def format_report(report: CoverageReport) -> str:
    """Render a per-class plain-text coverage report."""
    lines = ["Coverage report", "==============="]
    if report.partial:
        lines.append("(partial: the coverage record was truncated)")
    if report.is_empty:
        lines.append("No coverage data recorded. Run the tests under the coverage agent first.")
        return "\n".join(lines) + "\n"

    owners: Dict[tuple[str, str], List[CoverageUnit]] = {}
    for unit in report.units():
        owners.setdefault((unit.path, unit.class_name), []).append(unit)

    for (path, class_name), units in owners.items():
        summary = _summarise(units)
        label = f"{path}::{class_name}" if class_name else path
        lines.append(f"Class: {label}")
        lines.append(f"  Line coverage: {_percent(summary.line_ratio)}")
        lines.append(f"  Branch coverage: {_percent(summary.branch_ratio)}")
        lines.append(f"  Instruction coverage: {_percent(summary.instruction_ratio)}")
        lines.append(f"  Method coverage: {_percent(summary.method_ratio)}")
        lines.append(f"  Class coverage: {_percent(summary.class_ratio)}")
        lines.append("")

    total = report.summary()
    lines.append(
        "Total: "
        f"lines {total.line_covered}/{total.line_total} ({_percent(total.line_ratio)}), "
        f"branches {total.branch_covered}/{total.branch_total} ({_percent(total.branch_ratio)})"
    )
    return "\n".join(lines) + "\n"


def check_thresholds(
    summary: CoverageSummary,
    *,
    min_line: float | None = None,
    min_branch: float | None = None,
) -> list[str]:
    """Return human-readable violations of the minimum coverage percentages.

    Metrics with nothing to measure (zero totals) never violate.
    """
    violations: list[str] = []
    if min_line is not None and summary.line_total and summary.line_ratio * 100 < min_line:
        violations.append(
            f"Line coverage {_percent(summary.line_ratio)} is below the minimum of {min_line:.2f}%"
        )
    if min_branch is not None and summary.branch_total and summary.branch_ratio * 100 < min_branch:
        violations.append(
            f"Branch coverage {_percent(summary.branch_ratio)} is below the minimum of {min_branch:.2f}%"
        )
    return violations
