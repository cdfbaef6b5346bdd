"""HPROF file header decoding.

Layout::

    "JAVA PROFILE 1.0.2\\0"   version string, NUL terminated, ASCII
    u4                       identifier width (4 or 8)
    u4 + u4                  creation time, ms since epoch (high, low word)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .errors import MalformedHeader, TruncatedInput
from .primitives import read_u4, read_u8
from .source import ByteSource
from .types import IdentifierWidth

logger = logging.getLogger(__name__)

MAX_VERSION_LENGTH = 64


@dataclass(frozen=True)
class HprofHeader:
    version: str
    identifier_width: IdentifierWidth
    timestamp_ms: int
    size: int  # bytes taken by the header

    @property
    def created_at(self) -> datetime:
        return datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(milliseconds=self.timestamp_ms)

    def record_time(self, time_delta: int) -> datetime:
        """Absolute time of a record from its microsecond delta."""
        return self.created_at + timedelta(microseconds=time_delta)


def decode_header(source: ByteSource) -> HprofHeader:
    """Read and validate the file preamble.

    Raises:
        TruncatedInput: fewer bytes than the fixed header needs.
        MalformedHeader: bad version string or identifier width.
    """
    start = source.position
    version_bytes = source.read_until(0, MAX_VERSION_LENGTH)
    if version_bytes is None:
        if len(source.peek(MAX_VERSION_LENGTH + 1)) <= MAX_VERSION_LENGTH:
            raise TruncatedInput("Input ends inside the version string", start)
        raise MalformedHeader(
            f"Version string not terminated within {MAX_VERSION_LENGTH} bytes", start
        )
    try:
        version = version_bytes.decode("ascii")
    except UnicodeDecodeError:
        raise MalformedHeader("Version string is not ASCII", start) from None

    width_offset = source.position
    width = read_u4(source)
    if width not in (4, 8):
        raise MalformedHeader(f"Identifier width {width} not supported", width_offset)
    timestamp_ms = read_u8(source)

    header = HprofHeader(
        version=version,
        identifier_width=IdentifierWidth(width),
        timestamp_ms=timestamp_ms,
        size=source.position - start,
    )
    logger.debug(
        "HPROF header: version=%r identifier_width=%d timestamp_ms=%d",
        header.version, header.identifier_width, header.timestamp_ms,
    )
    return header
