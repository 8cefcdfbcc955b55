"""
Event stream parsing.

StreamParser turns terminator-stripped lines into Event records. LineReader
splits network chunks into lines and enforces the per-line size limit.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Union

from ssefwd.errors import LineTooLongError, ParseError

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINE_SIZE = 512 * 1024

ID_PREFIX = b"id:"
EVENT_PREFIX = b"event:"
DATA_PREFIX = b"data:"


@dataclass(frozen=True)
class Event:
    """A completed server-sent event record."""

    id: str = ""
    name: str = ""
    data: bytes = b""

    def format(self) -> str:
        payload = self.data.decode("utf-8", errors="replace")
        return f"id={self.id}, name={self.name}, payload={payload}"


def _field_value(line: bytes, prefix: bytes) -> bytes:
    """Strip the field prefix and the single space that follows it."""
    value = line[len(prefix):]
    if value.startswith(b" "):
        value = value[1:]
    return value


class StreamParser:
    """
    Incremental parser for text/event-stream records.

    Only ``id:``, ``event:`` and ``data:`` fields are accepted. A blank line
    completes the current record; any other line raises ParseError.
    """

    def __init__(self):
        self._id = ""
        self._name = ""
        self._data = bytearray()

    def feed(self, line: Union[str, bytes]) -> Optional[Event]:
        """
        Consume one line.

        Args:
            line: Line without its terminator

        Returns:
            The completed Event when ``line`` is blank, otherwise None

        Raises:
            ParseError: If the line does not match a known field
        """
        if isinstance(line, str):
            line = line.encode("utf-8")

        logger.debug(f"len: {len(line)} line: {line[:200]!r}")

        if line.startswith(ID_PREFIX):
            self._id = _field_value(line, ID_PREFIX).decode("utf-8", errors="replace")
        elif line.startswith(EVENT_PREFIX):
            self._name = _field_value(line, EVENT_PREFIX).decode(
                "utf-8", errors="replace"
            )
        elif line.startswith(DATA_PREFIX):
            self._data += _field_value(line, DATA_PREFIX)
        elif not line:
            event = Event(id=self._id, name=self._name, data=bytes(self._data))
            self.reset()
            return event
        else:
            raise ParseError(line)

        return None

    def reset(self) -> None:
        """Discard any partially built record."""
        self._id = ""
        self._name = ""
        self._data = bytearray()

    @property
    def pending(self) -> bool:
        """True while a record has fields but no terminating blank line yet."""
        return bool(self._id or self._name or self._data)


class LineReader:
    """Splits a byte stream into LF or CRLF terminated lines."""

    def __init__(self, max_line_size: int = DEFAULT_MAX_LINE_SIZE):
        self.max_line_size = max_line_size
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> List[bytes]:
        """
        Add a chunk and return every line it completes.

        Raises:
            LineTooLongError: If a line grows beyond ``max_line_size``
        """
        self._buffer += chunk
        lines = []
        start = 0
        while True:
            end = self._buffer.find(b"\n", start)
            if end == -1:
                break
            line = bytes(self._buffer[start:end])
            if line.endswith(b"\r"):
                line = line[:-1]
            if len(line) > self.max_line_size:
                raise LineTooLongError(line, self.max_line_size)
            lines.append(line)
            start = end + 1
        del self._buffer[:start]

        if len(self._buffer) > self.max_line_size:
            raise LineTooLongError(bytes(self._buffer), self.max_line_size)
        return lines

    @property
    def remainder(self) -> bytes:
        """Bytes received after the last line terminator."""
        return bytes(self._buffer)
