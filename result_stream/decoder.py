"""Incremental decoding of framed test node records.

The decoder never buffers the whole input: it holds the record currently
being assembled plus whatever the last chunk carried past it. Three framings
are recognised from the start of the stream:

* newline-delimited records (``{...}\\n{...}\\n``),
* a single array of records (``[{...}, {...}]``),
* an object wrapping such an array (``{"nodes": [{...}, {...}]}``).

A leading object is a wrapper when one of its members is an array of objects
and no ``id`` member comes before it; otherwise it is the first record of a
newline-delimited stream. Key names play no other part, so records may carry
any tool-specific fields in any order.
"""

import json
import logging
import re
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator
from enum import Enum, StrEnum
from typing import BinaryIO

import pydantic

from result_stream.errors import DecodeError, ValidationError
from result_stream.models.diagnostics import SkippedRecord
from result_stream.models.node import TestNode

log = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

_BOM = b"\xef\xbb\xbf"
_WHITESPACE = b" \t\r\n"
_QUOTE = ord('"')
_BACKSLASH = ord("\\")
_OPENERS = frozenset(b"{[")

_STRUCTURAL = re.compile(rb'["{}\[\]]')
_STRING_SPECIAL = re.compile(rb'["\\]')
_SCALAR_END = re.compile(rb"[\s,\]}]")


class Framing(StrEnum):
    """How records are laid out in the byte stream."""

    LINES = "lines"
    ARRAY = "array"
    WRAPPED = "wrapped"


class _State(Enum):
    DETECT = "detect"
    HEAD_KEY = "head-key"
    HEAD_COLON = "head-colon"
    HEAD_VALUE = "head-value"
    HEAD_SEP = "head-sep"
    LINES = "lines"
    ARRAY_START = "array-start"
    ARRAY_ITEM = "array-item"
    ARRAY_SEP = "array-sep"
    WRAP_KEY = "wrap-key"
    WRAP_COLON = "wrap-colon"
    WRAP_VALUE = "wrap-value"
    WRAP_SEP = "wrap-sep"
    TRAILER = "trailer"
    FAILED = "failed"


_HEAD_STATES = frozenset(
    {_State.HEAD_KEY, _State.HEAD_COLON, _State.HEAD_VALUE, _State.HEAD_SEP}
)


class _ValueScanner:
    """Finds where one JSON value ends in a growing buffer.

    Only structure is tracked here; the value is parsed with ``json`` once
    complete. Progress is kept between calls so a large value split across
    many chunks is scanned once.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.start = -1
        self.index = 0
        self.depth = 0
        self.in_string = False

    def shift(self, count: int) -> None:
        """Adjust positions after ``count`` bytes were dropped from the buffer."""
        if self.start >= 0:
            self.start -= count
            self.index -= count

    def scan(self, buf: bytearray, start: int, final: bool) -> int | None:
        """Return the end position of the value at ``start``, or None if incomplete."""
        if start != self.start:
            self.reset()
            self.start = start
            self.index = start
        opener = buf[start]
        if opener == _QUOTE:
            if self.index == start:
                self.index += 1
            self.in_string = True
            end = self._scan_string(buf)
        elif opener in _OPENERS:
            end = self._scan_container(buf)
        else:
            match = _SCALAR_END.search(buf, start)
            if match is not None:
                end = match.start()
            elif final:
                end = len(buf)
            else:
                end = None
        if end is not None:
            self.reset()
        return end

    def _scan_string(self, buf: bytearray) -> int | None:
        i = self.index
        while True:
            match = _STRING_SPECIAL.search(buf, i)
            if match is None:
                self.index = len(buf)
                return None
            i = match.start()
            if buf[i] == _BACKSLASH:
                if i + 1 >= len(buf):
                    self.index = i
                    return None
                i += 2
                continue
            self.in_string = False
            return i + 1

    def _scan_container(self, buf: bytearray) -> int | None:
        i = self.index
        size = len(buf)
        while i < size:
            if self.in_string:
                self.index = i
                end = self._scan_string(buf)
                if end is None:
                    return None
                i = end
                continue
            match = _STRUCTURAL.search(buf, i)
            if match is None:
                break
            i = match.start()
            char = buf[i]
            if char == _QUOTE:
                self.in_string = True
            elif char in _OPENERS:
                self.depth += 1
            else:
                self.depth -= 1
                if self.depth == 0:
                    return i + 1
            i += 1
        self.index = size
        return None


class _NoRecord:
    """Marker for a parser step that made progress without producing a node."""


_NO_RECORD = _NoRecord()


def _parse_record(raw: bytes | bytearray, offset: int) -> TestNode:
    """Parse and validate one record starting at byte ``offset``."""
    try:
        text = bytes(raw).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeError("invalid UTF-8 in record", offset=offset + exc.start) from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        position = offset + len(text[: exc.pos].encode("utf-8"))
        raise DecodeError(f"malformed record: {exc.msg}", offset=position) from exc
    if not isinstance(data, dict):
        raise ValidationError(
            f"record must be a JSON object, got {type(data).__name__}", offset=offset
        )
    try:
        return TestNode.model_validate(data)
    except pydantic.ValidationError as exc:
        errors = exc.errors(include_url=False)
        summary = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'record'}: {error['msg']}"
            for error in errors
        )
        raise ValidationError(
            f"invalid record: {summary}", offset=offset, errors=errors
        ) from exc


def decode_record(data: bytes | str) -> TestNode:
    """Decode a single record.

    Raises:
        DecodeError: If the data is not valid JSON
        ValidationError: If the data does not describe a valid node

    """
    raw = data.encode("utf-8") if isinstance(data, str) else data
    return _parse_record(raw.strip(), 0)


class RecordParser:
    """Push parser turning byte chunks into validated records.

    ``feed`` and ``close`` return lazy iterators; consume each one before
    feeding the next chunk.

    In lenient mode, and only for newline-delimited framing, a malformed or
    invalid line is skipped and recorded in ``skipped``. Any other error puts
    the parser in a failed state: record boundaries cannot be re-established
    inside an array.
    """

    def __init__(self, *, lenient: bool = False) -> None:
        self.lenient = lenient
        self.framing: Framing | None = None
        self.skipped: list[SkippedRecord] = []
        self.records = 0
        self._buf = bytearray()
        self._pos = 0
        self._consumed = 0
        self._head_pos = -1
        self._head_empty_array = False
        self._line = 0
        self._state = _State.DETECT
        self._scanner = _ValueScanner()
        self._closed = False

    @property
    def offset(self) -> int:
        """Absolute byte offset of the next unread byte."""
        return self._consumed + self._pos

    def feed(self, data: bytes) -> Iterator[TestNode]:
        """Add a chunk and iterate over the records it completes."""
        self._check_usable()
        if self._pos:
            del self._buf[: self._pos]
            self._scanner.shift(self._pos)
            if self._head_pos >= 0:
                self._head_pos -= self._pos
            self._consumed += self._pos
            self._pos = 0
        self._buf.extend(data)
        return self._drain(final=False)

    def close(self) -> Iterator[TestNode]:
        """Signal end of input and iterate over the remaining records."""
        self._check_usable()
        self._closed = True
        return self._drain(final=True)

    def _check_usable(self) -> None:
        if self._state is _State.FAILED:
            raise DecodeError("stream aborted after an earlier error", offset=self.offset)
        if self._closed:
            raise DecodeError("parser already closed", offset=self.offset)

    def _fail(self, exc: Exception) -> None:
        self._state = _State.FAILED
        log.debug("Decoding aborted: %s", exc)

    def _drain(self, final: bool) -> Iterator[TestNode]:
        try:
            while True:
                node = self._step(final)
                if node is None:
                    break
                if node is not _NO_RECORD:
                    self.records += 1
                    yield node
            if final:
                self._finish()
        except (DecodeError, ValidationError) as exc:
            self._fail(exc)
            raise

    def _finish(self) -> None:
        if self._state in (_State.DETECT, _State.LINES, _State.TRAILER):
            return
        raise DecodeError(
            f"unexpected end of stream in {self.framing} framing", offset=self.offset
        )

    def _skip_whitespace(self) -> bool:
        """Advance past whitespace; return True if a significant byte is available."""
        buf = self._buf
        size = len(buf)
        while self._pos < size and buf[self._pos] in _WHITESPACE:
            self._pos += 1
        return self._pos < size

    def _step(self, final: bool) -> TestNode | _NoRecord | None:
        """Advance the state machine by one unit of work.

        Returns a node, ``_NO_RECORD`` when progress was made without a node,
        or None when more input is required.
        """
        state = self._state
        if state is _State.DETECT:
            return self._detect(final)
        if state in _HEAD_STATES:
            return self._head_member(final)
        if state is _State.LINES:
            return self._next_line(final)
        if state is _State.TRAILER:
            if self._skip_whitespace():
                raise DecodeError("unexpected data after records", offset=self.offset)
            return None
        if not self._skip_whitespace():
            return None

        char = self._buf[self._pos]
        if state is _State.ARRAY_START:
            if char == ord("]"):
                self._pos += 1
                self._end_array()
            else:
                self._state = _State.ARRAY_ITEM
            return _NO_RECORD
        if state is _State.ARRAY_ITEM:
            return self._next_array_item(final)
        if state is _State.ARRAY_SEP:
            return self._expect_separator(char, _State.ARRAY_ITEM, ord("]"))
        if state is _State.WRAP_KEY:
            if char != _QUOTE:
                raise DecodeError("expected a member name", offset=self.offset)
            end = self._scanner.scan(self._buf, self._pos, final)
            if end is None:
                return None
            self._pos = end
            self._state = _State.WRAP_COLON
            return _NO_RECORD
        if state is _State.WRAP_COLON:
            if char != ord(":"):
                raise DecodeError("expected ':' after member name", offset=self.offset)
            self._pos += 1
            self._state = _State.WRAP_VALUE
            return _NO_RECORD
        if state is _State.WRAP_VALUE:
            return self._wrapper_value(final)
        if state is _State.WRAP_SEP:
            return self._expect_separator(char, _State.WRAP_KEY, ord("}"))
        raise AssertionError(f"unhandled decoder state {state}")

    def _detect(self, final: bool) -> _NoRecord | None:
        if self.offset == 0 and self._buf.startswith(_BOM):
            self._pos = len(_BOM)
        elif self.offset == 0 and len(self._buf) < len(_BOM) and not final:
            if _BOM.startswith(bytes(self._buf)) and self._buf:
                return None
        if not self._skip_whitespace():
            return None
        char = self._buf[self._pos]
        if char == ord("["):
            self._pos += 1
            self._set_framing(Framing.ARRAY, _State.ARRAY_START)
            return _NO_RECORD
        if char != ord("{"):
            raise DecodeError(
                f"cannot detect framing from byte {bytes([char])!r}", offset=self.offset
            )
        self._head_pos = self._pos + 1
        self._head_empty_array = False
        self._state = _State.HEAD_KEY
        return _NO_RECORD

    def _head_member(self, final: bool) -> _NoRecord | None:
        """Walk the members of the first object until its role is known.

        The object wraps the records when one of its members is an array of
        objects and no ``id`` member comes before it. Otherwise it is the
        first record of a newline-delimited stream and is read again from its
        opening brace. Nothing before the decision is consumed.
        """
        buf = self._buf
        i = self._skip_whitespace_from(self._head_pos)
        self._head_pos = i
        if i >= len(buf):
            return self._undecided(final)
        char = buf[i]
        state = self._state

        if state is _State.HEAD_KEY:
            if char != _QUOTE:
                return self._as_lines()
            end = self._scanner.scan(buf, i, final)
            if end is None:
                return self._undecided(final)
            try:
                key = json.loads(bytes(buf[i:end]))
            except ValueError:
                return self._as_lines()
            if key == "id":
                return self._as_lines()
            self._head_pos = end
            self._state = _State.HEAD_COLON
        elif state is _State.HEAD_COLON:
            if char != ord(":"):
                return self._as_lines()
            self._head_pos = i + 1
            self._state = _State.HEAD_VALUE
        elif state is _State.HEAD_VALUE:
            if char == ord("["):
                first = self._skip_whitespace_from(i + 1)
                if first >= len(buf):
                    return self._undecided(final)
                if buf[first] == ord("{"):
                    self._pos = i + 1
                    self._head_pos = -1
                    self._set_framing(Framing.WRAPPED, _State.ARRAY_START)
                    return _NO_RECORD
                if buf[first] == ord("]"):
                    self._head_empty_array = True
            end = self._scanner.scan(buf, i, final)
            if end is None:
                return self._undecided(final)
            try:
                json.loads(bytes(buf[i:end]))
            except ValueError:
                return self._as_lines()
            self._head_pos = end
            self._state = _State.HEAD_SEP
        elif char == ord(","):
            self._head_pos = i + 1
            self._state = _State.HEAD_KEY
        elif char == ord("}") and self._head_empty_array:
            # Without an ``id`` member the object cannot be a record.
            self._pos = i + 1
            self._head_pos = -1
            self._set_framing(Framing.WRAPPED, _State.TRAILER)
        else:
            return self._as_lines()
        return _NO_RECORD

    def _skip_whitespace_from(self, pos: int) -> int:
        buf = self._buf
        size = len(buf)
        while pos < size and buf[pos] in _WHITESPACE:
            pos += 1
        return pos

    def _undecided(self, final: bool) -> _NoRecord | None:
        return self._as_lines() if final else None

    def _as_lines(self) -> _NoRecord:
        self._head_pos = -1
        self._scanner.reset()
        self._set_framing(Framing.LINES, _State.LINES)
        return _NO_RECORD

    def _set_framing(self, framing: Framing, state: _State) -> None:
        self.framing = framing
        self._state = state
        log.debug("Detected %s framing", framing)

    def _next_line(self, final: bool) -> TestNode | _NoRecord | None:
        buf = self._buf
        start = self._pos
        newline = buf.find(b"\n", start)
        if newline == -1:
            if not final or start >= len(buf):
                return None
            end = next_start = len(buf)
        else:
            end, next_start = newline, newline + 1
        self._pos = next_start
        self._line += 1

        raw = bytes(buf[start:end])
        stripped = raw.lstrip(_WHITESPACE)
        offset = self._consumed + start + (len(raw) - len(stripped))
        stripped = stripped.rstrip(_WHITESPACE)
        if not stripped:
            return _NO_RECORD
        try:
            return _parse_record(stripped, offset)
        except (DecodeError, ValidationError) as exc:
            if not self.lenient:
                raise
            log.warning("Skipping line %d: %s", self._line, exc)
            self.skipped.append(
                SkippedRecord(offset=offset, line=self._line, reason=str(exc))
            )
            return _NO_RECORD

    def _next_array_item(self, final: bool) -> TestNode | _NoRecord | None:
        start = self._pos
        end = self._scanner.scan(self._buf, start, final)
        if end is None:
            if final:
                raise DecodeError("truncated record", offset=self.offset)
            return None
        node = _parse_record(self._buf[start:end], self._consumed + start)
        self._pos = end
        self._state = _State.ARRAY_SEP
        return node

    def _expect_separator(
        self, char: int, next_state: _State, closer: int
    ) -> _NoRecord:
        if char == ord(","):
            self._pos += 1
            self._state = next_state
        elif char == closer:
            self._pos += 1
            if closer == ord("]"):
                self._end_array()
            else:
                self._state = _State.TRAILER
        else:
            raise DecodeError(
                f"expected ',' or {chr(closer)!r}, got {bytes([char])!r}",
                offset=self.offset,
            )
        return _NO_RECORD

    def _end_array(self) -> None:
        self._state = _State.WRAP_SEP if self.framing is Framing.WRAPPED else _State.TRAILER

    def _wrapper_value(self, final: bool) -> _NoRecord | None:
        start = self._pos
        end = self._scanner.scan(self._buf, start, final)
        if end is None:
            if final:
                raise DecodeError("truncated wrapper member", offset=self.offset)
            return None
        try:
            json.loads(bytes(self._buf[start:end]))
        except ValueError as exc:
            raise DecodeError(f"malformed wrapper member: {exc}", offset=self.offset) from exc
        self._pos = end
        self._state = _State.WRAP_SEP
        return _NO_RECORD


def _iter_chunks(
    source: BinaryIO | Iterable[bytes] | bytes, chunk_size: int
) -> Iterator[bytes]:
    if isinstance(source, bytes | bytearray | memoryview):
        yield bytes(source)
        return
    read = getattr(source, "read", None)
    if read is None:
        yield from source  # type: ignore[misc]
        return
    while chunk := read(chunk_size):
        yield chunk


def iter_records(
    source: BinaryIO | Iterable[bytes] | bytes,
    *,
    lenient: bool = False,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    parser: RecordParser | None = None,
) -> Iterator[TestNode]:
    """Lazily decode records from a binary stream or an iterable of chunks.

    Args:
        source: Binary file object, iterable of byte chunks, or bytes
        lenient: Skip malformed lines in newline-delimited framing
        chunk_size: Read size when ``source`` is a file object
        parser: Parser to drive, e.g. to inspect ``skipped`` afterwards

    Returns:
        Iterator over validated records in stream order

    """
    parser = parser if parser is not None else RecordParser(lenient=lenient)
    for chunk in _iter_chunks(source, chunk_size):
        yield from parser.feed(chunk)
    yield from parser.close()


async def aiter_records(
    chunks: AsyncIterable[bytes],
    *,
    lenient: bool = False,
    parser: RecordParser | None = None,
) -> AsyncIterator[TestNode]:
    """Lazily decode records from an asynchronous source of byte chunks."""
    parser = parser if parser is not None else RecordParser(lenient=lenient)
    async for chunk in chunks:
        for node in parser.feed(chunk):
            yield node
    for node in parser.close():
        yield node
