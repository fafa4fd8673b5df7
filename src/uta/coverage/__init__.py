"""Coverage data model and binary record codec."""

from .errors import CollectionError, CollectionErrorKind, DecodeError
from .model import (
    BranchHit,
    CoverageReport,
    CoverageSummary,
    CoverageUnit,
    FileCoverage,
    LineHit,
    check_thresholds,
    format_report,
    merge_reports,
)
from .record import SessionInfo, decode_record, encode_record, read_record, write_record

__all__ = [
    "BranchHit",
    "CollectionError",
    "CollectionErrorKind",
    "CoverageReport",
    "CoverageSummary",
    "CoverageUnit",
    "DecodeError",
    "FileCoverage",
    "LineHit",
    "SessionInfo",
    "check_thresholds",
    "decode_record",
    "encode_record",
    "format_report",
    "merge_reports",
    "read_record",
    "write_record",
]
