"""Reader sessions and the front ends that open them.

Typical use::

    with open_file("heap.hprof") as reader:
        for record in reader:
            ...

``open_stream`` reads any sequential binary stream and hands out owned
``bytes``. ``open_memory`` decodes a caller-held buffer and hands out
``memoryview`` slices of it, which are only valid while that buffer is.
"""
from __future__ import annotations

import logging
import mmap
import os
from dataclasses import dataclass
from typing import BinaryIO, Callable, List, Optional, Tuple, Union

from .errors import HprofError
from .framer import DEFAULT_MAX_LOOKAHEAD, Element, RecordFramer
from .header import HprofHeader, decode_header
from .registry import ClassRegistry, StringTable
from .source import DEFAULT_BUFFER_SIZE, Buffer, ByteSource, MemorySource, StreamSource
from .types import IdentifierWidth, InstanceDump
from .values import FieldValue, decode_instance_fields

logger = logging.getLogger(__name__)

# Files above this size are memory-mapped by open_file
MMAP_THRESHOLD = 100 * 1024 * 1024


@dataclass
class ReaderOptions:
    """Session settings.

    Attributes:
        buffer_size: Read-ahead size of the stream front end.
        load_primitive_arrays: Keep primitive array bodies; when off they
            are skipped and ``data`` is None.
        load_object_arrays: Same for object arrays.
        emit_segment_markers: Also yield HeapDumpSegment / HeapDumpEnd.
        strict_tags: Raise UnrecognizedTopLevelTag instead of yielding
            UnrecognizedRecord.
        max_lookahead: Bytes the segment boundary check may peek ahead.
    """
    buffer_size: int = DEFAULT_BUFFER_SIZE
    load_primitive_arrays: bool = True
    load_object_arrays: bool = True
    emit_segment_markers: bool = False
    strict_tags: bool = False
    max_lookahead: int = DEFAULT_MAX_LOOKAHEAD


class HprofReader:
    """One decoding session over one dump.

    The header is decoded on construction. Records are decoded lazily by
    ``pull()`` or by iterating; the string table and class registry fill
    up as they go by.
    """

    def __init__(self, source: ByteSource, options: Optional[ReaderOptions] = None,
                 on_close: Optional[Callable[[], None]] = None):
        self.options = options or ReaderOptions()
        self._source = source
        self._on_close = on_close
        self._closed = False
        try:
            self.header: HprofHeader = decode_header(source)
        except HprofError:
            self.close()
            raise
        self.strings = StringTable()
        self.classes = ClassRegistry(self.header.identifier_width)
        self._framer = RecordFramer(
            source,
            self.header.identifier_width,
            self.strings,
            self.classes,
            load_primitive_arrays=self.options.load_primitive_arrays,
            load_object_arrays=self.options.load_object_arrays,
            emit_segment_markers=self.options.emit_segment_markers,
            strict_tags=self.options.strict_tags,
            max_lookahead=self.options.max_lookahead,
        )

    @property
    def identifier_width(self) -> IdentifierWidth:
        return self.header.identifier_width

    @property
    def position(self) -> int:
        return self._source.position

    @property
    def last_span(self) -> Optional[Tuple[int, int]]:
        return self._framer.last_span

    @property
    def closed(self) -> bool:
        return self._closed

    def pull(self) -> Optional[Element]:
        """Next record or subrecord, or None once the dump is exhausted."""
        if self._closed:
            return None
        return self._framer.pull()

    def __iter__(self):
        return self

    def __next__(self) -> Element:
        element = self.pull()
        if element is None:
            raise StopIteration
        return element

    def decode_fields(self, instance: InstanceDump) -> List[FieldValue]:
        return decode_instance_fields(instance, self.classes)

    def class_name(self, class_id: int) -> Optional[str]:
        """Class name as written in the dump (e.g. ``java/lang/String``)."""
        entry = self.classes.get(class_id)
        if entry is None or entry.name_string_id is None:
            return None
        return self.strings.text(entry.name_string_id)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._source.close()
        if self._on_close is not None:
            self._on_close()

    def __enter__(self) -> "HprofReader":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


# ============================================================================
# FRONT ENDS
# ============================================================================

def open_stream(stream: BinaryIO, options: Optional[ReaderOptions] = None) -> HprofReader:
    """Decode a sequential binary stream. The caller keeps ownership of it."""
    options = options or ReaderOptions()
    return HprofReader(StreamSource(stream, options.buffer_size), options)


def open_memory(buffer: Buffer, options: Optional[ReaderOptions] = None) -> HprofReader:
    """Decode a contiguous in-memory buffer without copying payloads."""
    return HprofReader(MemorySource(buffer), options)


def open_file(path: Union[str, os.PathLike], options: Optional[ReaderOptions] = None,
              memory_map: Optional[bool] = None) -> HprofReader:
    """Open a dump file; the returned reader closes it.

    Args:
        path: Dump file.
        options: Session settings.
        memory_map: Force (True) or avoid (False) memory-mapping. By default
            files larger than MMAP_THRESHOLD are mapped.
    """
    options = options or ReaderOptions()
    handle = open(path, "rb")
    try:
        size = os.fstat(handle.fileno()).st_size
        if memory_map is None:
            memory_map = size > MMAP_THRESHOLD
        # mmap refuses empty files; those fail header decoding either way
        if memory_map and size:
            mapped = mmap.mmap(handle.fileno(), 0, access=mmap.ACCESS_READ)

            def release():
                _close_mapping(mapped)
                handle.close()

            logger.debug("Memory-mapping %s (%d bytes)", path, size)
            return HprofReader(MemorySource(mapped), options, on_close=release)
        return HprofReader(StreamSource(handle, options.buffer_size), options, on_close=handle.close)
    except Exception:
        handle.close()
        raise


def _close_mapping(mapped: mmap.mmap) -> None:
    try:
        mapped.close()
    except BufferError:
        # Records still hold views into the mapping; it is unmapped once
        # the last of them is garbage collected.
        logger.debug("Mapping still referenced by payload views; deferring unmap")
