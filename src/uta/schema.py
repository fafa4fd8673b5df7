"""Typed records shared by the resolver, generator, verifier and repair loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .coverage.model import CoverageReport


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class TargetKind(str, Enum):
    """Granularity of a generation target."""

    METHOD = "method"
    CLASS = "class"
    MODULE = "module"


class DiagnosticKind(str, Enum):
    """Classification of a verification outcome."""

    COMPILE_ERROR = "CompileError"
    ASSERTION_FAILURE = "AssertionFailure"
    RUNTIME_EXCEPTION = "RuntimeException"
    TIMEOUT = "Timeout"
    SUCCESS = "Success"


class TerminalStatus(str, Enum):
    """Final status of a repair session."""

    ACCEPTED = "Accepted"
    EXHAUSTED_RETRIES = "ExhaustedRetries"
    ABANDONED = "Abandoned"


@dataclass(frozen=True, slots=True)
class MethodInfo:
    """Callable under test together with the facts the prompt needs."""

    name: str
    qualname: str
    signature: str
    first_line: int
    last_line: int
    raises: Tuple[str, ...] = ()
    is_async: bool = False
    is_accessor: bool = False
    branches: bool = False
    docstring: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "qualname": self.qualname,
            "signature": self.signature,
            "lines": [self.first_line, self.last_line],
            "raises": list(self.raises),
            "async": self.is_async,
        }


@dataclass(frozen=True, slots=True)
class GenerationTarget:
    """A resolved unit of source for which tests are generated."""

    target_id: str
    kind: TargetKind
    path: str
    module: str
    class_name: Optional[str]
    methods: Tuple[MethodInfo, ...]
    test_path: str
    dependencies: Tuple[str, ...] = ()
    referenced_types: Tuple[str, ...] = ()
    source: str = ""
    existing_test: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.class_name:
            return f"{self.module}.{self.class_name}"
        return self.module

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_id": self.target_id,
            "kind": self.kind.value,
            "path": self.path,
            "module": self.module,
            "class_name": self.class_name,
            "methods": [method.to_dict() for method in self.methods],
            "test_path": self.test_path,
            "existing_test": self.existing_test,
        }


@dataclass(frozen=True, slots=True)
class TestCandidate:
    """Generated test source for one attempt at one target."""

    __test__ = False

    target_id: str
    attempt: int
    source: str
    test_path: str
    created_at: datetime = field(default_factory=utc_now)
    lineage: Tuple[int, ...] = ()
    prompt_digest: str = ""
    rationale: str = ""

    @property
    def key(self) -> Tuple[str, int]:
        return (self.target_id, self.attempt)


@dataclass(frozen=True, slots=True)
class SourceLocation:
    path: str
    line: int

    def render(self) -> str:
        return f"{self.path}:{self.line}"


@dataclass(frozen=True, slots=True)
class StackFrame:
    path: str
    line: int
    name: str

    def render(self) -> str:
        return f"{self.path}:{self.line} in {self.name}"


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """Structured result of verifying one candidate."""

    kind: DiagnosticKind
    message: str = ""
    location: Optional[SourceLocation] = None
    frames: Tuple[StackFrame, ...] = ()
    failing_tests: Tuple[str, ...] = ()
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.kind is DiagnosticKind.SUCCESS

    def render(self, *, max_chars: Optional[int] = None) -> str:
        """Render the diagnostic as prompt-ready text."""
        lines = [f"Outcome: {self.kind.value}"]
        if self.location is not None:
            lines.append(f"Location: {self.location.render()}")
        if self.failing_tests:
            lines.append("Failing tests: " + ", ".join(self.failing_tests))
        if self.message:
            lines.append(self.message.strip())
        if self.frames:
            lines.append("Traceback (most recent call last):")
            lines.extend(f"  {frame.render()}" for frame in self.frames)
        text = "\n".join(lines)
        if max_chars is not None and len(text) > max_chars:
            text = text[: max(max_chars - 3, 0)] + "..."
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "location": self.location.render() if self.location else None,
            "frames": [frame.render() for frame in self.frames],
            "failing_tests": list(self.failing_tests),
            "duration": round(self.duration, 3),
        }


@dataclass(frozen=True, slots=True)
class Attempt:
    """A candidate paired with the diagnostic its verification produced."""

    candidate: TestCandidate
    diagnostic: Diagnostic

    @property
    def number(self) -> int:
        return self.candidate.attempt

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt": self.candidate.attempt,
            "created_at": self.candidate.created_at.isoformat(),
            "lineage": list(self.candidate.lineage),
            "prompt_digest": self.candidate.prompt_digest,
            "rationale": self.candidate.rationale,
            "diagnostic": self.diagnostic.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class SessionSummary:
    """Read-only outcome of one repair session."""

    target_id: str
    status: TerminalStatus
    attempts: int
    reason: str = ""
    test_path: Optional[str] = None
    test_source: Optional[str] = None
    coverage: Optional[CoverageReport] = None
    history: Tuple[Attempt, ...] = ()

    @property
    def accepted(self) -> bool:
        return self.status is TerminalStatus.ACCEPTED

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "target_id": self.target_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "reason": self.reason,
            "test_path": self.test_path,
            "history": [attempt.to_dict() for attempt in self.history],
        }
        if self.coverage is not None:
            payload["coverage"] = self.coverage.summary().to_dict()
        return payload


@dataclass(frozen=True, slots=True)
class BatchReport:
    """Aggregated outcome of a batch run."""

    sessions: Tuple[SessionSummary, ...]
    coverage: CoverageReport
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime = field(default_factory=utc_now)

    def by_status(self, status: TerminalStatus) -> List[SessionSummary]:
        return [session for session in self.sessions if session.status is status]

    @property
    def accepted(self) -> List[SessionSummary]:
        return self.by_status(TerminalStatus.ACCEPTED)

    def to_dict(self) -> Dict[str, Any]:
        counts = {status.value: len(self.by_status(status)) for status in TerminalStatus}
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "counts": counts,
            "sessions": [session.to_dict() for session in self.sessions],
            "coverage": self.coverage.to_dict(),
        }


__all__ = [
    "Attempt",
    "BatchReport",
    "Diagnostic",
    "DiagnosticKind",
    "GenerationTarget",
    "MethodInfo",
    "SessionSummary",
    "SourceLocation",
    "StackFrame",
    "TargetKind",
    "TerminalStatus",
    "TestCandidate",
    "utc_now",
]
