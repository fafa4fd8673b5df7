"""Verification pipeline: compile, execute and measure one test candidate."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Set, Tuple

from .coverage.errors import CollectionError, CollectionErrorKind
from .coverage.model import CoverageReport
from .coverage.record import read_record
from .schema import Diagnostic, DiagnosticKind, SourceLocation, TestCandidate
from .toolchain import ExecutionResult, ExecutionTimeouts, PytestToolchain, SourceSet, Toolchain
from .tools.scratch import ScratchArea
from .utils.slug import identifier_slug

LOGGER = logging.getLogger(__name__)

_ASSERTION_TYPES = frozenset({"AssertionError", "Failed"})
_SUITE_TIMEOUT_MARKER = "+++++ Timeout +++++"
_MAX_MESSAGE = 4000


class CandidateInFlightError(RuntimeError):
    """Raised when a candidate is submitted while its verification is still running."""


@dataclass(slots=True)
class VerificationResult:
    diagnostic: Diagnostic
    coverage: Optional[CoverageReport] = None
    coverage_error: Optional[CollectionError] = None

    @property
    def ok(self) -> bool:
        return self.diagnostic.ok


def classify_execution(result: ExecutionResult, *, duration: float, timeouts: ExecutionTimeouts) -> Diagnostic:
    """Map a test run onto a :class:`Diagnostic`.

    A killed suite or a per-test timeout yields ``Timeout``; collection
    errors yield ``CompileError``; failed assertions and skipped or xfailed
    tests yield ``AssertionFailure``; any other failure yields
    ``RuntimeException``. ``Success`` needs at least one passing test and
    nothing skipped.
    """
    if result.timed_out:
        return Diagnostic(
            kind=DiagnosticKind.TIMEOUT,
            message=f"The test suite exceeded {timeouts.per_suite:g}s and was killed.",
            duration=duration,
        )

    failures = result.failures
    collect_errors = [outcome for outcome in failures if outcome.when == "collect"]
    if collect_errors:
        return Diagnostic(
            kind=DiagnosticKind.COMPILE_ERROR,
            message=collect_errors[0].message[:_MAX_MESSAGE],
            failing_tests=tuple(outcome.nodeid for outcome in collect_errors),
            duration=duration,
        )

    timed_out = [outcome for outcome in failures if outcome.timed_out]
    if timed_out or (result.exit_code not in (0, None) and _SUITE_TIMEOUT_MARKER in result.output):
        return Diagnostic(
            kind=DiagnosticKind.TIMEOUT,
            message=f"Tests exceeded the per-test limit of {timeouts.per_test:g}s.",
            failing_tests=tuple(outcome.nodeid for outcome in timed_out),
            duration=duration,
        )

    if failures:
        first = failures[0]
        kind = (
            DiagnosticKind.ASSERTION_FAILURE
            if all(outcome.exception in _ASSERTION_TYPES for outcome in failures if outcome.when == "call")
            and any(outcome.when == "call" for outcome in failures)
            else DiagnosticKind.RUNTIME_EXCEPTION
        )
        location = None
        if first.frames:
            last = first.frames[-1]
            location = SourceLocation(path=last.path, line=last.line)
        message = "\n".join(
            f"{outcome.nodeid} [{outcome.when}] {outcome.exception or 'error'}: {outcome.message}".strip()
            for outcome in failures
        )
        return Diagnostic(
            kind=kind,
            message=message[:_MAX_MESSAGE],
            location=location,
            frames=first.frames,
            failing_tests=tuple(outcome.nodeid for outcome in failures),
            duration=duration,
        )

    skipped = [outcome for outcome in result.outcomes if outcome.skipped]
    if skipped and result.exit_code in (0, 5):
        message = "\n".join(
            f"{outcome.nodeid} [{outcome.when}] {'xfail' if outcome.xfail else 'skipped'}: {outcome.message}".strip()
            for outcome in skipped
        )
        return Diagnostic(
            kind=DiagnosticKind.ASSERTION_FAILURE,
            message=f"tests were skipped\n{message}"[:_MAX_MESSAGE],
            failing_tests=tuple(outcome.nodeid for outcome in skipped),
            duration=duration,
        )

    if result.exit_code == 0 and any(outcome.passed for outcome in result.outcomes):
        return Diagnostic(kind=DiagnosticKind.SUCCESS, message="All tests passed.", duration=duration)

    if result.exit_code == 0:
        return Diagnostic(
            kind=DiagnosticKind.RUNTIME_EXCEPTION,
            message="pytest exited cleanly but reported no passing test.",
            duration=duration,
        )

    if result.exit_code == 5:
        return Diagnostic(kind=DiagnosticKind.COMPILE_ERROR, message="No tests were collected.", duration=duration)

    output = result.output.strip()
    return Diagnostic(
        kind=DiagnosticKind.RUNTIME_EXCEPTION,
        message=(output[-_MAX_MESSAGE:] or f"pytest exited with status {result.exit_code}"),
        duration=duration,
    )


class VerificationPipeline:
    """Runs candidates in isolated scratch copies of the project."""

    def __init__(
        self,
        project_root: Path | str,
        *,
        toolchain: Optional[Toolchain] = None,
        timeouts: ExecutionTimeouts = ExecutionTimeouts(per_test=10.0, per_suite=120.0),
        source_roots: Sequence[str] = ("src", "."),
        scratch_parent: Optional[Path] = None,
        collect_coverage: bool = True,
    ) -> None:
        self._project_root = Path(project_root).resolve()
        self._toolchain = toolchain or PytestToolchain()
        self._timeouts = timeouts
        self._source_roots = tuple(source_roots)
        self._scratch_parent = scratch_parent
        self._collect_coverage = collect_coverage
        self._in_flight: Set[Tuple[str, int]] = set()

    @property
    def timeouts(self) -> ExecutionTimeouts:
        return self._timeouts

    async def verify(self, candidate: TestCandidate) -> VerificationResult:
        """Compile and run ``candidate``; coverage is read only after a Success."""
        key = candidate.key
        if key in self._in_flight:
            raise CandidateInFlightError(
                f"Attempt {candidate.attempt} of {candidate.target_id} is already being verified"
            )
        self._in_flight.add(key)
        try:
            return await self._verify(candidate)
        finally:
            self._in_flight.discard(key)

    async def _verify(self, candidate: TestCandidate) -> VerificationResult:
        started = time.monotonic()
        label = identifier_slug(candidate.target_id, max_length=32)
        async with ScratchArea(self._project_root, parent=self._scratch_parent, label=label) as scratch:
            scratch.write(candidate.test_path, candidate.source)
            sources = SourceSet(
                project_root=scratch.project,
                test_files=(candidate.test_path,),
                artifacts=scratch.artifacts,
                source_roots=self._source_roots,
            )
            compiled = await self._toolchain.compile(sources)
            if not compiled.ok or compiled.unit is None:
                return VerificationResult(
                    Diagnostic(
                        kind=DiagnosticKind.COMPILE_ERROR,
                        message=compiled.message,
                        location=compiled.location,
                        duration=time.monotonic() - started,
                    )
                )

            record_path = scratch.artifacts / "coverage.rec" if self._collect_coverage else None
            execution = await self._toolchain.execute(
                compiled.unit,
                self._timeouts,
                record_path=record_path,
                session_id=f"{candidate.target_id}#{candidate.attempt}",
            )
            diagnostic = classify_execution(
                execution,
                duration=time.monotonic() - started,
                timeouts=self._timeouts,
            )
            LOGGER.debug(
                "Attempt %s of %s verified as %s",
                candidate.attempt,
                candidate.target_id,
                diagnostic.kind.value,
            )
            if not diagnostic.ok or record_path is None:
                return VerificationResult(diagnostic)
            coverage, error = self._read_coverage(execution)
            return VerificationResult(diagnostic, coverage=coverage, coverage_error=error)

    def _read_coverage(
        self, execution: ExecutionResult
    ) -> Tuple[Optional[CoverageReport], Optional[CollectionError]]:
        if execution.record_path is None:
            return None, CollectionError(
                CollectionErrorKind.INSTRUMENTATION_FAILURE,
                "The test run passed but the coverage agent wrote no record",
            )
        try:
            return read_record(execution.record_path), None
        except CollectionError as error:
            LOGGER.warning("Coverage for a verified candidate could not be decoded: %s", error)
            return None, error
        except OSError as error:
            return None, CollectionError(CollectionErrorKind.EXECUTION_FAILURE, str(error))


__all__ = [
    "CandidateInFlightError",
    "VerificationPipeline",
    "VerificationResult",
    "classify_execution",
]
