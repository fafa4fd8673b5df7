from __future__ import annotations

import struct
from pathlib import Path

import pytest

from uta.coverage.errors import CollectionErrorKind, DecodeError
from uta.coverage.model import CoverageReport, CoverageUnit
from uta.coverage.record import (
    BLOCK_HEADER,
    BLOCK_TRAILER,
    BLOCK_UNIT,
    SessionInfo,
    decode_record,
    encode_record,
    read_record,
    write_record,
)


def _units() -> list[CoverageUnit]:
    return [
        CoverageUnit.build(
            "src/app/calc.py",
            "Calculator",
            "divide",
            10,
            14,
            lines={10: 2, 11: 2, 12: 0, 13: 2},
            branches={(11, 12): 0, (11, 13): 2},
        ),
        CoverageUnit.build("src/app/calc.py", "", "add", 20, 21, lines={20: 1, 21: 1}),
    ]


def test_record_preserves_units_and_sessions() -> None:
    session = SessionInfo(id="run-1", start_ms=1_000, dump_ms=2_000)
    report = decode_record(encode_record(_units(), session=session))

    assert not report.partial
    assert report.sessions == ("run-1",)
    assert report == CoverageReport.from_units(_units(), sessions=["run-1"])
    divide = report.file("src/app/calc.py").units[0]
    assert divide.branch_table() == {(11, 12): 0, (11, 13): 2}


def _line_hits(report: CoverageReport) -> set[tuple]:
    return {(unit.key, line, hits) for unit in report.units() for line, hits in unit.line_table().items()}


def test_truncated_record_yields_complete_prefix() -> None:
    data = encode_record(_units())
    header_only = decode_record(data[:9])
    assert header_only.partial
    assert header_only.is_empty

    cut = decode_record(data[:-3])
    assert cut.partial
    assert [unit.method for unit in cut.units()] == ["divide", "add"]

    without_trailer = decode_record(data[:-9])
    assert without_trailer.partial
    assert len(list(without_trailer.units())) == 2


def test_every_prefix_is_partial_subset_of_full_record() -> None:
    data = encode_record(_units(), session=SessionInfo(id="run-1", start_ms=1, dump_ms=2))
    full = decode_record(data)
    assert not full.partial
    full_hits = _line_hits(full)

    for size in range(len(data)):
        prefix = decode_record(data[:size])
        assert prefix.partial, size
        assert _line_hits(prefix) <= full_hits, size
        assert set(prefix.sessions) <= set(full.sessions)


def test_empty_stream_is_partial_and_empty() -> None:
    report = decode_record(b"")
    assert report.partial
    assert report.is_empty


def test_bad_magic_is_rejected() -> None:
    data = struct.pack(">BIHH", BLOCK_HEADER, 4, 0xBEEF, 1)
    with pytest.raises(DecodeError) as excinfo:
        decode_record(data)
    assert excinfo.value.kind is CollectionErrorKind.DECODE_ERROR
    assert "magic" in str(excinfo.value)


def test_unsupported_version_is_rejected() -> None:
    data = struct.pack(">BIHH", BLOCK_HEADER, 4, 0xC0C0, 9)
    with pytest.raises(DecodeError, match="version"):
        decode_record(data)


def test_block_before_header_is_rejected() -> None:
    data = encode_record(_units())
    without_header = data[9:]
    with pytest.raises(DecodeError, match="header"):
        decode_record(without_header)


def test_length_mismatch_is_rejected() -> None:
    header = struct.pack(">BIHH", BLOCK_HEADER, 4, 0xC0C0, 1)
    unit = encode_record(_units()[:1])[9:-9]
    tag, length = struct.unpack(">BI", unit[:5])
    assert tag == BLOCK_UNIT
    padded = struct.pack(">BI", tag, length + 2) + unit[5:] + b"\x00\x00"
    with pytest.raises(DecodeError, match="unread"):
        decode_record(header + padded)

    short = struct.pack(">BI", tag, 6) + unit[5:11]
    with pytest.raises(DecodeError, match="needs more"):
        decode_record(header + short)


def test_unknown_block_is_rejected() -> None:
    data = encode_record([])
    with pytest.raises(DecodeError, match="0x7f"):
        decode_record(data[:9] + struct.pack(">BI", 0x7F, 0) + data[9:])


def test_trailer_must_match_units_and_end_the_record() -> None:
    data = encode_record(_units())
    wrong_count = data[:-4] + struct.pack(">I", 5)
    with pytest.raises(DecodeError, match="Trailer declares 5"):
        decode_record(wrong_count)

    with pytest.raises(DecodeError, match="after the trailer"):
        decode_record(data + struct.pack(">BI", BLOCK_TRAILER, 4) + struct.pack(">I", 2))


def test_write_and_read_record_on_disk(tmp_path: Path) -> None:
    path = write_record(tmp_path / "nested" / "coverage.rec", CoverageReport.from_units(_units()))
    assert path.exists()
    assert read_record(path).summary().line_total == 6
