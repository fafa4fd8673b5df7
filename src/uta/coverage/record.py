"""Binary coverage record codec.

A record is a sequence of blocks, each framed as ``tag:u8 length:u32`` followed
by ``length`` payload bytes (all integers big-endian)::

    0x01 header   magic:u16 (0xC0C0) version:u16
    0x10 session  id:str start:u64 dump:u64            (epoch milliseconds)
    0x11 unit     path:str class:str method:str first:u32 last:u32
                  n:u32 (line:u32 hits:u32){n}
                  m:u32 (source:i32 destination:i32 hits:u32){m}
    0x1F trailer  units:u32                            (count of unit blocks)

Strings are a ``u16`` byte length followed by UTF-8. The header must come
first and the trailer last. Decoding is a pure function of the bytes: payloads
that do not fill their declared length exactly are rejected, while a stream that
stops before its trailer (a run killed mid-write) yields the complete blocks
read so far with ``partial`` set.
"""

from __future__ import annotations

import struct
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List

from .errors import DecodeError
from .model import CoverageReport, CoverageUnit

__all__ = [
    "BLOCK_HEADER",
    "BLOCK_SESSION",
    "BLOCK_UNIT",
    "BLOCK_TRAILER",
    "FORMAT_VERSION",
    "MAGIC",
    "SessionInfo",
    "decode_record",
    "encode_record",
    "read_record",
    "write_record",
]

MAGIC = 0xC0C0
FORMAT_VERSION = 1

BLOCK_HEADER = 0x01
BLOCK_SESSION = 0x10
BLOCK_UNIT = 0x11
BLOCK_TRAILER = 0x1F

_FRAME = struct.Struct(">BI")
_U16 = struct.Struct(">H")
_U32 = struct.Struct(">I")
_U64 = struct.Struct(">Q")
_LINE = struct.Struct(">II")
_BRANCH = struct.Struct(">iiI")
_HEADER = struct.Struct(">HH")


@dataclass(frozen=True, slots=True)
class SessionInfo:
    """Identity and timing of the run that produced a record."""

    id: str
    start_ms: int
    dump_ms: int

    @classmethod
    def now(cls, session_id: str, *, started: float | None = None) -> "SessionInfo":
        current = int(time.time() * 1000)
        start = int(started * 1000) if started is not None else current
        return cls(id=session_id, start_ms=start, dump_ms=current)


def _pack_str(value: str) -> bytes:
    raw = value.encode("utf-8")
    if len(raw) > 0xFFFF:
        raise ValueError(f"String too long for coverage record: {value[:40]}...")
    return _U16.pack(len(raw)) + raw


def _frame(tag: int, payload: bytes) -> bytes:
    return _FRAME.pack(tag, len(payload)) + payload


def _unit_payload(unit: CoverageUnit) -> bytes:
    parts = [
        _pack_str(unit.path),
        _pack_str(unit.class_name),
        _pack_str(unit.method),
        _U32.pack(unit.first_line),
        _U32.pack(unit.last_line),
        _U32.pack(len(unit.lines)),
    ]
    parts.extend(_LINE.pack(entry.line, entry.hits) for entry in unit.lines)
    parts.append(_U32.pack(len(unit.branches)))
    parts.extend(_BRANCH.pack(entry.source, entry.destination, entry.hits) for entry in unit.branches)
    return b"".join(parts)


def encode_record(
    units: CoverageReport | Iterable[CoverageUnit],
    *,
    session: SessionInfo | None = None,
) -> bytes:
    """Serialise coverage units (or a whole report) into the record format."""
    units = list(units.units()) if isinstance(units, CoverageReport) else list(units)
    blocks = [_frame(BLOCK_HEADER, _HEADER.pack(MAGIC, FORMAT_VERSION))]
    if session is not None:
        blocks.append(
            _frame(
                BLOCK_SESSION,
                _pack_str(session.id) + _U64.pack(session.start_ms) + _U64.pack(session.dump_ms),
            )
        )
    blocks.extend(_frame(BLOCK_UNIT, _unit_payload(unit)) for unit in units)
    blocks.append(_frame(BLOCK_TRAILER, _U32.pack(len(units))))
    return b"".join(blocks)


class _PayloadReader:
    """Cursor over one block payload that refuses to read past its end."""

    def __init__(self, data: bytes, start: int, end: int, tag: int) -> None:
        self._data = data
        self._start = start
        self._pos = start
        self._end = end
        self._tag = tag

    def _take(self, size: int) -> bytes:
        if self._pos + size > self._end:
            raise DecodeError(
                f"Block 0x{self._tag:02x} declares {self._end - self._start} bytes "
                "but its content needs more",
                offset=self._pos,
            )
        chunk = self._data[self._pos : self._pos + size]
        self._pos += size
        return chunk

    def unpack(self, fmt: struct.Struct) -> tuple:
        return fmt.unpack(self._take(fmt.size))

    def u32(self) -> int:
        return self.unpack(_U32)[0]

    def u64(self) -> int:
        return self.unpack(_U64)[0]

    def string(self) -> str:
        (length,) = self.unpack(_U16)
        raw = self._take(length)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as error:
            raise DecodeError(f"Invalid UTF-8 in block 0x{self._tag:02x}", offset=self._pos) from error

    def finish(self) -> None:
        if self._pos != self._end:
            raise DecodeError(
                f"Block 0x{self._tag:02x} has {self._end - self._pos} unread byte(s) "
                "beyond its content",
                offset=self._pos,
            )


def _read_unit(reader: _PayloadReader) -> CoverageUnit:
    path = reader.string()
    class_name = reader.string()
    method = reader.string()
    first_line = reader.u32()
    last_line = reader.u32()
    lines: dict[int, int] = {}
    for _ in range(reader.u32()):
        line, hits = reader.unpack(_LINE)
        lines[line] = max(hits, lines.get(line, 0))
    branches: dict[tuple[int, int], int] = {}
    for _ in range(reader.u32()):
        source, destination, hits = reader.unpack(_BRANCH)
        branches[(source, destination)] = max(hits, branches.get((source, destination), 0))
    reader.finish()
    return CoverageUnit.build(
        path,
        class_name,
        method,
        first_line,
        last_line,
        lines=lines,
        branches=branches,
    )


def decode_record(data: bytes) -> CoverageReport:
    """Decode ``data`` into a :class:`CoverageReport`.

    Raises :class:`DecodeError` for malformed content. A record that ends
    before its trailer decodes to the longest prefix of complete blocks with
    ``partial=True``.
    """
    units: List[CoverageUnit] = []
    sessions: List[str] = []
    position = 0
    total = len(data)
    seen_header = False
    seen_trailer = False

    while position < total:
        if seen_trailer:
            raise DecodeError("Unexpected data after the trailer block", offset=position)
        if position + _FRAME.size > total:
            return CoverageReport.from_units(units, partial=True, sessions=sessions)
        tag, length = _FRAME.unpack_from(data, position)
        start = position + _FRAME.size
        end = start + length
        if end > total:
            return CoverageReport.from_units(units, partial=True, sessions=sessions)

        reader = _PayloadReader(data, start, end, tag)
        if tag == BLOCK_HEADER:
            if seen_header:
                raise DecodeError("Duplicate header block", offset=position)
            magic, version = reader.unpack(_HEADER)
            reader.finish()
            if magic != MAGIC:
                raise DecodeError(f"Bad magic number 0x{magic:04x}", offset=position)
            if version != FORMAT_VERSION:
                raise DecodeError(f"Unsupported record version {version}", offset=position)
            seen_header = True
        elif not seen_header:
            raise DecodeError(f"Record must start with a header block, found 0x{tag:02x}", offset=position)
        elif tag == BLOCK_SESSION:
            session_id = reader.string()
            reader.u64()
            reader.u64()
            reader.finish()
            sessions.append(session_id)
        elif tag == BLOCK_UNIT:
            units.append(_read_unit(reader))
        elif tag == BLOCK_TRAILER:
            declared = reader.u32()
            reader.finish()
            if declared != len(units):
                raise DecodeError(
                    f"Trailer declares {declared} unit block(s) but the record holds {len(units)}",
                    offset=position,
                )
            seen_trailer = True
        else:
            raise DecodeError(f"Unknown block type 0x{tag:02x}", offset=position)
        position = end

    return CoverageReport.from_units(units, partial=not seen_trailer, sessions=sessions)


def read_record(path: Path | str) -> CoverageReport:
    """Decode a record stored on disk, regardless of which run produced it."""
    return decode_record(Path(path).read_bytes())


def write_record(
    path: Path | str,
    units: CoverageReport | Iterable[CoverageUnit],
    *,
    session: SessionInfo | None = None,
) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(encode_record(units, session=session))
    return target
