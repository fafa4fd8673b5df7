"""Errors raised while collecting or decoding coverage data."""

from __future__ import annotations

from enum import Enum

__all__ = ["CollectionError", "CollectionErrorKind", "DecodeError"]


class CollectionErrorKind(str, Enum):
    """Failure categories for a coverage collection pass."""

    INSTRUMENTATION_FAILURE = "InstrumentationFailure"
    EXECUTION_FAILURE = "ExecutionFailure"
    DECODE_ERROR = "DecodeError"


class CollectionError(RuntimeError):
    """Raised when a coverage collection pass cannot produce a report."""

    def __init__(self, kind: CollectionErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    def __str__(self) -> str:
        return f"{self.kind.value}: {super().__str__()}"


class DecodeError(CollectionError):
    """Raised when a coverage record is malformed."""

    def __init__(self, message: str, *, offset: int | None = None) -> None:
        if offset is not None:
            message = f"{message} (at byte {offset})"
        super().__init__(CollectionErrorKind.DECODE_ERROR, message)
        self.offset = offset
