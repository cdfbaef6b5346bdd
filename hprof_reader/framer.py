"""Top-level record framing.

Every top-level record is ``u1 tag, u4 time delta, u4 body length, body``.
Heap dump bodies are not taken as a unit: their subrecords are decoded and
emitted one by one, straight from the byte source.

Some JVMs write heap dump segments larger than 4 GiB and let the u4 length
wrap around. The declared segment length is therefore only used as a hint:
once it is reached, the bytes that follow must look like the start of a
top-level record, otherwise they are decoded as more subrecords of the
current segment.
"""
from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple, Union

from .errors import HprofError, MalformedRecord, TruncatedInput, UnrecognizedTopLevelTag
from .primitives import read_id, read_layout, read_u4
from .registry import ClassRegistry, StringTable
from .source import ByteSource, MemorySource
from .subrecords import SubrecordDecoder
from .types import (
    HEAP_DUMP_TAGS,
    AllocSite,
    AllocSitesRecord,
    ControlSettingsRecord,
    CpuSample,
    CpuSamplesRecord,
    EndThreadRecord,
    HeapDumpEnd,
    HeapDumpSegment,
    HeapSubrecord,
    HeapSummaryRecord,
    IdentifierWidth,
    LoadClassRecord,
    RecordTag,
    StackFrameRecord,
    StackTraceRecord,
    StartThreadRecord,
    StringRecord,
    TopLevelRecord,
    UnloadClassRecord,
    UnrecognizedRecord,
)

logger = logging.getLogger(__name__)

RECORD_HEADER = struct.Struct(">BII")
DEFAULT_MAX_LOOKAHEAD = 1024 * 1024

KNOWN_TAGS = frozenset(int(tag) for tag in RecordTag)

ALLOC_SITES_HEADER = struct.Struct(">HIIIQQI")
ALLOC_SITE = struct.Struct(">BIIIIII")
CPU_SAMPLE = struct.Struct(">II")

Element = Union[TopLevelRecord, HeapSubrecord]


def fixed_body_lengths(width: int) -> Dict[int, int]:
    """Body length of every top-level tag whose body has a fixed shape."""
    return {
        RecordTag.LOAD_CLASS: 8 + 2 * width,
        RecordTag.UNLOAD_CLASS: 4,
        RecordTag.STACK_FRAME: 4 * width + 8,
        RecordTag.HEAP_SUMMARY: 24,
        RecordTag.START_THREAD: 8 + 4 * width,
        RecordTag.END_THREAD: 4,
        RecordTag.CONTROL_SETTINGS: 6,
        RecordTag.HEAP_DUMP_END: 0,
    }


@dataclass
class _Segment:
    start: int
    declared_end: int
    declared_length: int
    subrecords: int = 0
    overflowed: bool = False


class RecordFramer:
    """Pull-based iterator over the records following the file header.

    ``pull()`` returns the next element or None once the input is done.
    Errors whose ``fatal`` flag is set end the session: later pulls return
    None. Other errors leave the cursor after the offending record.
    """

    def __init__(self, source: ByteSource, identifier_width: IdentifierWidth,
                 strings: StringTable, classes: ClassRegistry,
                 load_primitive_arrays: bool = True, load_object_arrays: bool = True,
                 emit_segment_markers: bool = False, strict_tags: bool = False,
                 max_lookahead: int = DEFAULT_MAX_LOOKAHEAD):
        self._source = source
        self.identifier_width = identifier_width
        self.strings = strings
        self.classes = classes
        self.emit_segment_markers = emit_segment_markers
        self.strict_tags = strict_tags
        self.max_lookahead = max_lookahead
        self.last_span: Optional[Tuple[int, int]] = None

        self._subrecords = SubrecordDecoder(
            identifier_width, classes,
            load_primitive_arrays=load_primitive_arrays,
            load_object_arrays=load_object_arrays,
        )
        self._fixed_lengths = fixed_body_lengths(identifier_width)
        self._segment: Optional[_Segment] = None
        self._done = False
        self._body_decoders: Dict[int, Callable[[ByteSource, int], TopLevelRecord]] = {
            RecordTag.STRING: self._string,
            RecordTag.LOAD_CLASS: self._load_class,
            RecordTag.UNLOAD_CLASS: self._unload_class,
            RecordTag.STACK_FRAME: self._stack_frame,
            RecordTag.STACK_TRACE: self._stack_trace,
            RecordTag.ALLOC_SITES: self._alloc_sites,
            RecordTag.HEAP_SUMMARY: self._heap_summary,
            RecordTag.START_THREAD: self._start_thread,
            RecordTag.END_THREAD: self._end_thread,
            RecordTag.CPU_SAMPLES: self._cpu_samples,
            RecordTag.CONTROL_SETTINGS: self._control_settings,
        }

    @property
    def position(self) -> int:
        return self._source.position

    @property
    def done(self) -> bool:
        return self._done

    def __iter__(self):
        return self

    def __next__(self) -> Element:
        element = self.pull()
        if element is None:
            raise StopIteration
        return element

    def pull(self) -> Optional[Element]:
        if self._done:
            return None
        start = self._source.position
        try:
            element = self._advance()
        except HprofError as exc:
            if exc.offset is None:
                exc.offset = start
            if exc.fatal:
                self._done = True
                self._segment = None
                logger.debug("Decoding stopped at 0x%X: %s", start, exc)
            else:
                self.last_span = (start, self._source.position)
            raise
        if element is None:
            self._done = True
            return None
        self.last_span = (start, self._source.position)
        return element

    def _advance(self) -> Optional[Element]:
        while True:
            segment = self._segment
            if segment is not None:
                if self._source.position < segment.declared_end or not self._segment_ends():
                    segment.subrecords += 1
                    return self._subrecords.decode(self._source)
                self._end_segment()
                continue
            if self._source.at_eof():
                return None
            record = self._read_record()
            if record is not None:
                return record

    # ========================================================================
    # HEAP DUMP SEGMENTS
    # ========================================================================

    def _begin_segment(self, tag: int, time_delta: int, length: int, start: int) -> Optional[HeapDumpSegment]:
        body_start = self._source.position
        self._segment = _Segment(start=start, declared_end=body_start + length, declared_length=length)
        logger.debug("Heap dump segment at 0x%X, declared length %d", start, length)
        if self.emit_segment_markers:
            return HeapDumpSegment(time_delta, length, legacy=tag == RecordTag.HEAP_DUMP)
        return None

    def _end_segment(self) -> None:
        segment = self._segment
        self._segment = None
        logger.debug(
            "Heap dump segment at 0x%X ended at 0x%X after %d subrecords",
            segment.start, self._source.position, segment.subrecords,
        )

    def _segment_ends(self) -> bool:
        """Decide, at or past the declared end, whether the segment is over."""
        if self._at_record_boundary():
            return True
        segment = self._segment
        if self._source.position == segment.declared_end:
            # A record with a tag we do not know may follow an intact segment.
            if not self._subrecords.handles(self._source.peek(1)[0]):
                return True
        if not segment.overflowed:
            segment.overflowed = True
            logger.warning(
                "Heap dump segment at 0x%X runs past its declared length %d; "
                "byte 0x%02X at 0x%X is not a record header, treating the length as wrapped",
                segment.start, segment.declared_length,
                self._source.peek(1)[0], self._source.position,
            )
        return False

    def _at_record_boundary(self) -> bool:
        source = self._source
        head = source.peek(RECORD_HEADER.size)
        if not len(head):
            return True
        length = self._plausible_body_length(head)
        if length is None:
            return False

        needed = RECORD_HEADER.size + length
        remaining = source.remaining()
        if remaining is not None:
            if needed > remaining:
                return False
            if needed == remaining:
                return True
        if source.position == self._segment.declared_end:
            # The declared length lands on a sound header; trust it.
            return True
        if needed + RECORD_HEADER.size > self.max_lookahead:
            # The record after it is out of reach; the first header has to do.
            return True

        following = source.peek(RECORD_HEADER.size, needed)
        if not len(following):
            return len(source.peek(1, needed - 1)) == 1
        # Only the shape matters here: a newer tag may follow.
        following_length = self._plausible_body_length(following, allow_unknown=True)
        if following_length is None:
            return False
        return remaining is None or needed + RECORD_HEADER.size + following_length <= remaining

    def _plausible_body_length(self, head, allow_unknown: bool = False) -> Optional[int]:
        """Body length if ``head`` looks like a top-level record header.

        Unknown tags are rejected unless ``allow_unknown`` is set, in which
        case their length is taken as is.
        """
        if len(head) < RECORD_HEADER.size:
            return None
        tag, _, length = RECORD_HEADER.unpack_from(head)
        if tag not in KNOWN_TAGS:
            return length if allow_unknown else None
        fixed = self._fixed_lengths.get(tag)
        if fixed is not None:
            return length if length == fixed else None

        width = self.identifier_width
        if tag == RecordTag.STRING and length < width:
            return None
        if tag == RecordTag.STACK_TRACE and (length < 12 or (length - 12) % width):
            return None
        if tag == RecordTag.CPU_SAMPLES and (length < 8 or (length - 8) % CPU_SAMPLE.size):
            return None
        if tag == RecordTag.ALLOC_SITES and (
            length < ALLOC_SITES_HEADER.size or (length - ALLOC_SITES_HEADER.size) % ALLOC_SITE.size
        ):
            return None
        return length

    # ========================================================================
    # TOP-LEVEL RECORDS
    # ========================================================================

    def _read_record(self) -> Optional[TopLevelRecord]:
        source = self._source
        start = source.position
        tag, time_delta, length = RECORD_HEADER.unpack(source.read(RECORD_HEADER.size))

        if tag in HEAP_DUMP_TAGS:
            return self._begin_segment(tag, time_delta, length, start)
        if tag == RecordTag.HEAP_DUMP_END:
            source.skip(length)
            return HeapDumpEnd(time_delta) if self.emit_segment_markers else None

        body_start = source.position
        body = source.read_payload(length)
        decoder = self._body_decoders.get(tag)
        if decoder is None:
            logger.warning("Unrecognized record tag 0x%02X at 0x%X, skipping %d bytes", tag, start, length)
            if self.strict_tags:
                raise UnrecognizedTopLevelTag(tag, start)
            return UnrecognizedRecord(time_delta, tag, body)

        body_source = MemorySource(body, base_offset=body_start, copy_payloads=source.owns_payloads)
        try:
            return decoder(body_source, time_delta)
        except TruncatedInput as exc:
            raise MalformedRecord(
                f"{RecordTag(tag).name} body of {length} bytes is too short", start
            ) from exc

    def _string(self, body: ByteSource, time_delta: int) -> StringRecord:
        string_id = read_id(body, self.identifier_width)
        data = body.read_payload(body.remaining())
        self.strings.insert(string_id, data)
        return StringRecord(time_delta, string_id, data)

    def _load_class(self, body: ByteSource, time_delta: int) -> LoadClassRecord:
        class_serial, class_id, stack_trace_serial, name_string_id = read_layout(
            body, self.identifier_width, "I{id}I{id}"
        )
        self.classes.record_load_class(class_id, name_string_id, class_serial, stack_trace_serial)
        return LoadClassRecord(time_delta, class_serial, class_id, stack_trace_serial, name_string_id)

    def _unload_class(self, body: ByteSource, time_delta: int) -> UnloadClassRecord:
        return UnloadClassRecord(time_delta, read_u4(body))

    def _stack_frame(self, body: ByteSource, time_delta: int) -> StackFrameRecord:
        return StackFrameRecord(time_delta, *read_layout(body, self.identifier_width, "{id}{id}{id}{id}Ii"))

    def _stack_trace(self, body: ByteSource, time_delta: int) -> StackTraceRecord:
        stack_trace_serial, thread_serial, frame_count = read_layout(body, self.identifier_width, "III")
        frame_ids = read_layout(body, self.identifier_width, f"{frame_count}{{id}}")
        return StackTraceRecord(time_delta, stack_trace_serial, thread_serial, frame_ids)

    def _alloc_sites(self, body: ByteSource, time_delta: int) -> AllocSitesRecord:
        (flags, cutoff_ratio, live_bytes, live_instances, bytes_allocated,
         instances_allocated, site_count) = ALLOC_SITES_HEADER.unpack(body.read(ALLOC_SITES_HEADER.size))
        sites = tuple(
            AllocSite(*ALLOC_SITE.unpack(body.read(ALLOC_SITE.size))) for _ in range(site_count)
        )
        return AllocSitesRecord(
            time_delta, flags, cutoff_ratio, live_bytes, live_instances,
            bytes_allocated, instances_allocated, sites,
        )

    def _heap_summary(self, body: ByteSource, time_delta: int) -> HeapSummaryRecord:
        return HeapSummaryRecord(time_delta, *read_layout(body, self.identifier_width, "IIQQ"))

    def _start_thread(self, body: ByteSource, time_delta: int) -> StartThreadRecord:
        return StartThreadRecord(time_delta, *read_layout(body, self.identifier_width, "I{id}I{id}{id}{id}"))

    def _end_thread(self, body: ByteSource, time_delta: int) -> EndThreadRecord:
        return EndThreadRecord(time_delta, read_u4(body))

    def _cpu_samples(self, body: ByteSource, time_delta: int) -> CpuSamplesRecord:
        total_samples, trace_count = read_layout(body, self.identifier_width, "II")
        samples = tuple(
            CpuSample(*CPU_SAMPLE.unpack(body.read(CPU_SAMPLE.size))) for _ in range(trace_count)
        )
        return CpuSamplesRecord(time_delta, total_samples, samples)

    def _control_settings(self, body: ByteSource, time_delta: int) -> ControlSettingsRecord:
        return ControlSettingsRecord(time_delta, *read_layout(body, self.identifier_width, "IH"))
