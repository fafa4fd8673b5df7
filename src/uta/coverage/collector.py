"""Run a test suite under the coverage agent and decode what it recorded."""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Optional, Sequence

from ..toolchain import CompiledUnit, ExecutionTimeouts, PytestToolchain, Toolchain
from .errors import CollectionError, CollectionErrorKind
from .model import CoverageReport
from .record import read_record

LOGGER = logging.getLogger(__name__)

RECORD_FILE_NAME = "coverage.rec"
CONVENTIONAL_RECORD_PATHS = (
    ".uta/coverage.rec",
    "build/coverage.rec",
    "coverage.rec",
)


def find_record_file(root: Path | str) -> Optional[Path]:
    """Return the first coverage record found in the conventional locations."""
    base = Path(root)
    for relative in CONVENTIONAL_RECORD_PATHS:
        candidate = base / relative
        if candidate.is_file():
            return candidate
    return None


class CoverageCollector:
    """Collects coverage for a project's test suite through a :class:`Toolchain`."""

    def __init__(
        self,
        toolchain: Optional[Toolchain] = None,
        *,
        timeouts: ExecutionTimeouts = ExecutionTimeouts(per_test=10.0, per_suite=120.0),
        source_roots: Sequence[str] = ("src", "."),
    ) -> None:
        self._toolchain = toolchain or PytestToolchain()
        self._timeouts = timeouts
        self._source_roots = tuple(source_roots)

    async def collect(
        self,
        source_root: Path | str,
        test_suite: Sequence[str],
        *,
        record_path: Optional[Path] = None,
    ) -> CoverageReport:
        """Run ``test_suite`` (paths relative to ``source_root``) and decode its record.

        Every pass writes to a fresh record file; a stale record at
        ``record_path`` is removed before the run.
        """
        root = Path(source_root).resolve()
        if not root.is_dir():
            raise CollectionError(CollectionErrorKind.EXECUTION_FAILURE, f"Project root not found: {root}")
        with tempfile.TemporaryDirectory(prefix="uta-record-") as scratch:
            artifacts = Path(scratch)
            target = record_path.resolve() if record_path is not None else artifacts / RECORD_FILE_NAME
            target.parent.mkdir(parents=True, exist_ok=True)
            target.unlink(missing_ok=True)
            unit = CompiledUnit(
                project_root=root,
                test_files=tuple(test_suite),
                artifacts=artifacts,
                source_roots=self._source_roots,
            )
            result = await self._toolchain.execute(unit, self._timeouts, record_path=target)
            if result.timed_out:
                raise CollectionError(
                    CollectionErrorKind.EXECUTION_FAILURE,
                    f"Test suite exceeded {self._timeouts.per_suite:g}s",
                )
            if result.record_path is None or not target.exists():
                if result.exit_code in (0, 1):
                    raise CollectionError(
                        CollectionErrorKind.INSTRUMENTATION_FAILURE,
                        "The test run finished but the coverage agent wrote no record",
                    )
                raise CollectionError(
                    CollectionErrorKind.EXECUTION_FAILURE,
                    f"pytest exited with status {result.exit_code}: {result.output[-2000:]}",
                )
            if result.exit_code not in (0, 1):
                LOGGER.warning("pytest exited with status %s; coverage may be incomplete", result.exit_code)
            return self.read(target)

    def read(self, path: Path | str) -> CoverageReport:
        """Decode a record on disk, including stale records from earlier runs."""
        record = Path(path)
        try:
            return read_record(record)
        except OSError as error:
            raise CollectionError(
                CollectionErrorKind.EXECUTION_FAILURE, f"Cannot read coverage record {record}: {error}"
            ) from error


__all__ = [
    "CONVENTIONAL_RECORD_PATHS",
    "CoverageCollector",
    "RECORD_FILE_NAME",
    "find_record_file",
]
