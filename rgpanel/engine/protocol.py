"""Decoder for the search tool's newline-delimited JSON output.

Each line on the tool's stdout is one self-describing record whose
``type`` is ``begin``, ``end``, ``match`` or ``summary``. Chunks read
from the pipe may end anywhere, including in the middle of a multi-byte
character, so splitting happens on raw bytes and only complete lines
are decoded.
"""

import base64
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .errors import ProtocolError
from .models import MatchRecord, Submatch, Summary

BAD_FILENAME = "<bad filename>"


class _Data(BaseModel):
    """Text field that is either UTF-8 ``text`` or base64 ``bytes``."""
    text: Optional[str] = None
    bytes: Optional[str] = None

    def decoded(self) -> Optional[str]:
        if self.text is not None:
            return self.text
        if self.bytes is not None:
            return base64.b64decode(self.bytes).decode("utf-8", errors="replace")
        return None


class _Span(BaseModel):
    start: int = Field(ge=0)
    end: int = Field(ge=0)


class _MatchData(BaseModel):
    path: Optional[_Data] = None
    lines: _Data
    line_number: int = Field(ge=1)
    submatches: List[_Span] = Field(default_factory=list)


class _Duration(BaseModel):
    secs: int = 0
    nanos: int = 0
    human: Optional[str] = None


class _Stats(BaseModel):
    matched_lines: int = 0


class _SummaryData(BaseModel):
    elapsed_total: _Duration = Field(default_factory=_Duration)
    stats: _Stats = Field(default_factory=_Stats)


class BeginMessage(BaseModel):
    type: Literal["begin"]
    data: Dict[str, Any] = Field(default_factory=dict)


class EndMessage(BaseModel):
    type: Literal["end"]
    data: Dict[str, Any] = Field(default_factory=dict)


class MatchMessage(BaseModel):
    type: Literal["match"]
    data: _MatchData


class SummaryMessage(BaseModel):
    type: Literal["summary"]
    data: _SummaryData


WireMessage = Annotated[
    Union[BeginMessage, EndMessage, MatchMessage, SummaryMessage],
    Field(discriminator="type"),
]

_wire = TypeAdapter(WireMessage)


@dataclass
class ParsedBatch:
    """Events decoded from one chunk, in stream order."""
    matches: List[MatchRecord] = field(default_factory=list)
    summary: Optional[Summary] = None

    def __bool__(self) -> bool:
        return bool(self.matches) or self.summary is not None


def decode_line(line: bytes) -> Union[BeginMessage, EndMessage, MatchMessage, SummaryMessage]:
    """Decode one complete protocol line, raising ProtocolError on bad input."""
    try:
        return _wire.validate_json(line)
    except ValidationError as e:
        raise ProtocolError(f"Unrecognized record ({e.error_count()} errors)", line) from e


def to_match_record(msg: MatchMessage) -> Optional[MatchRecord]:
    """Convert a match record; None when its line text is missing or truncated."""
    data = msg.data
    text = data.lines.text
    if text is None or not text.endswith("\n"):
        return None

    line_text = text[:-1].rstrip("\r")
    raw = line_text.encode("utf-8")
    limit = len(line_text)

    def char_offset(byte_offset: int) -> int:
        return min(limit, len(raw[:byte_offset].decode("utf-8", errors="ignore")))

    submatches = []
    for span in data.submatches:
        start, end = char_offset(span.start), char_offset(span.end)
        submatches.append(Submatch(start=start, end=max(start, end)))

    path = data.path.decoded() if data.path is not None else None
    return MatchRecord(
        file_path=path if path is not None else BAD_FILENAME,
        line_number=data.line_number,
        line_text=line_text,
        submatches=submatches,
    )


def to_summary(msg: SummaryMessage) -> Summary:
    elapsed = msg.data.elapsed_total
    seconds = elapsed.secs + elapsed.nanos * 1e-9
    return Summary.done(
        matches=msg.data.stats.matched_lines,
        elapsed=f"{seconds:.2f}s",
    )


class ProtocolParser:
    """Reassembles lines across chunk boundaries and decodes them."""

    def __init__(self):
        self._buffer = b""

    @property
    def pending(self) -> bytes:
        """Incomplete trailing fragment awaiting more input."""
        return self._buffer

    def feed(self, chunk: Union[bytes, str]) -> ParsedBatch:
        """Append a chunk and decode every line it completes."""
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")

        lines = (self._buffer + chunk).split(b"\n")
        self._buffer = lines.pop()
        return self._decode_lines(lines)

    def close(self) -> ParsedBatch:
        """Decode whatever remains once the stream has ended."""
        rest, self._buffer = self._buffer, b""
        return self._decode_lines([rest])

    def _decode_lines(self, lines: List[bytes]) -> ParsedBatch:
        batch = ParsedBatch()
        for line in lines:
            if not line.strip():
                continue
            try:
                msg = decode_line(line)
            except ProtocolError as e:
                e.partial = batch
                raise
            if isinstance(msg, MatchMessage):
                record = to_match_record(msg)
                if record is not None:
                    batch.matches.append(record)
            elif isinstance(msg, SummaryMessage):
                # Only the latest summary in a batch matters
                batch.summary = to_summary(msg)
        return batch
