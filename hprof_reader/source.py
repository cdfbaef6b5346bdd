"""Byte sources for the decoder.

A source is a forward-only cursor. The two implementations differ only in
how variable-length payloads are handed out:

- ``StreamSource`` reads a sequential (possibly non-seekable) binary stream
  through a read-ahead buffer and returns owned ``bytes`` copies, since the
  buffer window is reused.
- ``MemorySource`` walks a caller-held buffer and returns ``memoryview``
  slices of it without copying. The views stay valid for as long as the
  caller keeps the buffer alive and unmodified.
"""
from __future__ import annotations

import mmap
from typing import BinaryIO, Optional, Union

from .errors import TruncatedInput
from .types import Payload

DEFAULT_BUFFER_SIZE = 64 * 1024

Buffer = Union[bytes, bytearray, memoryview, mmap.mmap]


class ByteSource:
    """Forward-only reader over HPROF bytes."""

    #: True when payloads are independent copies of the input.
    owns_payloads = True

    position = 0

    def read(self, size: int):
        """Return exactly ``size`` bytes (bytes-like) or raise TruncatedInput."""
        raise NotImplementedError

    def read_payload(self, size: int) -> Payload:
        """Return ``size`` bytes in this source's ownership mode."""
        raise NotImplementedError

    def skip(self, size: int) -> None:
        raise NotImplementedError

    def peek(self, size: int, offset: int = 0):
        """Return up to ``size`` bytes starting ``offset`` bytes ahead, without consuming."""
        raise NotImplementedError

    def at_eof(self) -> bool:
        raise NotImplementedError

    def remaining(self) -> Optional[int]:
        """Bytes left in the input, or None when the source cannot tell."""
        return None

    def close(self) -> None:
        pass

    def read_until(self, delimiter: int, limit: int) -> Optional[bytes]:
        """Consume bytes up to and including ``delimiter``.

        Returns the bytes before the delimiter, or None when the delimiter
        does not occur within ``limit`` bytes. Nothing is consumed in that
        case.
        """
        window = bytes(self.peek(limit + 1))
        index = window.find(bytes((delimiter,)))
        if index < 0:
            return None
        data = bytes(self.read(index + 1))
        return data[:index]

    def _truncated(self, size: int, available: int) -> TruncatedInput:
        return TruncatedInput(
            f"Needed {size} bytes, only {available} left", self.position
        )


class MemorySource(ByteSource):
    """Zero-copy cursor over a contiguous buffer.

    ``base_offset`` shifts reported positions, so a cursor over a record
    body still reports absolute file offsets. With ``copy_payloads`` set,
    payloads are materialized as ``bytes`` (used for record bodies read by
    the stream front end).
    """

    def __init__(self, buffer: Buffer, base_offset: int = 0, copy_payloads: bool = False):
        view = buffer if isinstance(buffer, memoryview) else memoryview(buffer)
        if view.format != "B" or view.ndim != 1:
            view = view.cast("B")
        self._view = view
        self._offset = 0
        self._base = base_offset
        self.owns_payloads = copy_payloads

    @property
    def position(self) -> int:
        return self._base + self._offset

    def __len__(self) -> int:
        return len(self._view)

    def read(self, size: int) -> memoryview:
        start = self._offset
        end = start + size
        if end > len(self._view):
            raise self._truncated(size, len(self._view) - start)
        self._offset = end
        return self._view[start:end]

    def read_payload(self, size: int) -> Payload:
        data = self.read(size)
        if self.owns_payloads:
            return data.tobytes()
        return data

    def skip(self, size: int) -> None:
        if self._offset + size > len(self._view):
            raise self._truncated(size, len(self._view) - self._offset)
        self._offset += size

    def peek(self, size: int, offset: int = 0) -> memoryview:
        start = self._offset + offset
        return self._view[start:start + size]

    def at_eof(self) -> bool:
        return self._offset >= len(self._view)

    def remaining(self) -> int:
        return len(self._view) - self._offset

    def close(self) -> None:
        self._view = memoryview(b"")
        self._offset = 0


class StreamSource(ByteSource):
    """Buffered cursor over a blocking binary stream.

    The stream is only ever read forward; ``seek`` is never called, so pipes
    and sockets work. Reads larger than the buffer bypass it.
    """

    owns_payloads = True

    def __init__(self, stream: BinaryIO, buffer_size: int = DEFAULT_BUFFER_SIZE):
        if buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        self._stream = stream
        self._buffer_size = buffer_size
        self._buffer = bytearray()
        self._offset = 0
        self._eof = False
        self.position = 0

    @property
    def _buffered(self) -> int:
        return len(self._buffer) - self._offset

    def _fill(self, size: int) -> bool:
        """Try to have ``size`` bytes buffered; False if the stream ends first."""
        if self._buffered >= size:
            return True
        if self._offset:
            del self._buffer[:self._offset]
            self._offset = 0
        while len(self._buffer) < size and not self._eof:
            chunk = self._stream.read(max(self._buffer_size, size - len(self._buffer)))
            if not chunk:
                self._eof = True
                break
            self._buffer += chunk
        return len(self._buffer) >= size

    def _take(self, size: int) -> bytes:
        start = self._offset
        self._offset += size
        self.position += size
        return bytes(self._buffer[start:start + size])

    def read(self, size: int) -> bytes:
        if size <= self._buffer_size:
            if not self._fill(size):
                raise self._truncated(size, self._buffered)
            return self._take(size)
        return self._read_direct(size)

    def _read_direct(self, size: int) -> bytes:
        if self._buffered >= size:
            return self._take(size)
        data = bytearray(self._buffer[self._offset:])
        self._buffer = bytearray()
        self._offset = 0
        while len(data) < size and not self._eof:
            chunk = self._stream.read(size - len(data))
            if not chunk:
                self._eof = True
                break
            data += chunk
        if len(data) < size:
            # Keep what was read so position stays meaningful for the error.
            self._buffer = data
            raise self._truncated(size, len(data))
        self.position += size
        return bytes(data)

    read_payload = read

    def skip(self, size: int) -> None:
        buffered = min(size, self._buffered)
        self._offset += buffered
        self.position += buffered
        left = size - buffered
        while left > 0:
            chunk = self._stream.read(min(left, self._buffer_size))
            if not chunk:
                self._eof = True
                raise self._truncated(left, 0)
            left -= len(chunk)
            self.position += len(chunk)

    def peek(self, size: int, offset: int = 0) -> bytes:
        self._fill(offset + size)
        start = self._offset + offset
        return bytes(self._buffer[start:start + size])

    def at_eof(self) -> bool:
        return not self._fill(1)

    def close(self) -> None:
        self._buffer = bytearray()
        self._offset = 0
