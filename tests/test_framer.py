import io
import logging
import struct

import pytest

from hprof_builder import INT, HprofBuilder
from hprof_reader import (
    ClassDump,
    GcRoot,
    HeapDumpEnd,
    HeapDumpSegment,
    InstanceDump,
    LoadClassRecord,
    MalformedRecord,
    PrimitiveArrayDump,
    ReaderOptions,
    StringRecord,
    TruncatedInput,
    UnknownClass,
    UnknownSubrecordTag,
    UnrecognizedRecord,
    UnrecognizedTopLevelTag,
    open_memory,
    open_stream,
)


def kinds(records):
    return [type(r).__name__ for r in records]


def build_wrapped_segment(width=8):
    """A segment whose declared length ends in the middle of its second subrecord."""
    b = HprofBuilder(identifier_width=width)
    b.string(1, b"java/lang/Object")
    subrecords = [
        b.class_dump(10, fields=[(1, INT)]),
        b.instance_dump(20, 10, b"\x00\x00\x00\x01"),
        b.instance_dump(21, 10, b"\x00\x00\x00\x02"),
        b.primitive_array(30, INT, [1, 2, 3]),
        b.root_unknown(20),
    ]
    b.heap_dump_segment(subrecords, length=len(subrecords[0]) + 3)
    b.string(2, b"tail")
    b.heap_dump_end()
    return b.build()


def build_mixed_dump():
    b = HprofBuilder()
    b.string(1, b"java/lang/Object")
    b.string(2, b"main")
    b.load_class(1, 10, 1)
    b.stack_trace(1, 1, [100, 101])
    b.record(0x42, b"future")
    b.record(0x0A, struct.pack(">I", 1) + b.id(500) + struct.pack(">I", 1) + b.id(2) + b.id(0) + b.id(0))
    b.heap_dump_segment([
        b.root_sticky_class(10),
        b.root_thread_object(500, 1, 1),
        b.class_dump(10, fields=[(1, INT)]),
        b.instance_dump(500, 10, b"\x00\x00\x00\x07"),
        b.primitive_array(600, INT, [5, 6]),
        b.object_array(601, 10, [500, 0]),
    ])
    b.heap_dump_segment([b.root_java_frame(500, 1, 0)], legacy=True)
    b.heap_dump_end()
    b.record(0x0B, struct.pack(">I", 1))
    return b.build()


# ---------------------------------------------------------------------------
# Framing completeness
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("data", [build_mixed_dump(), build_wrapped_segment()])
def test_spans_tile_the_input(data):
    reader = open_memory(data, ReaderOptions(emit_segment_markers=True))
    cursor = reader.header.size
    count = 0
    for _ in reader:
        start, end = reader.last_span
        assert start == cursor
        assert end > start or count == 0
        cursor = end
        count += 1
    assert cursor == len(data)
    assert reader.position == len(data)


def test_segment_markers_are_emitted_on_request():
    records = list(open_memory(build_mixed_dump(), ReaderOptions(emit_segment_markers=True)))
    markers = [r for r in records if isinstance(r, (HeapDumpSegment, HeapDumpEnd))]
    assert kinds(markers) == ["HeapDumpSegment", "HeapDumpSegment", "HeapDumpEnd"]
    assert markers[0].legacy is False
    assert markers[1].legacy is True


def test_segment_markers_are_hidden_by_default():
    records = list(open_memory(build_mixed_dump()))
    assert not any(isinstance(r, (HeapDumpSegment, HeapDumpEnd)) for r in records)
    assert kinds(records) == [
        "StringRecord", "StringRecord", "LoadClassRecord", "StackTraceRecord",
        "UnrecognizedRecord", "StartThreadRecord",
        "GcRoot", "GcRoot", "ClassDump", "InstanceDump", "PrimitiveArrayDump", "ObjectArrayDump",
        "GcRoot", "EndThreadRecord",
    ]


# ---------------------------------------------------------------------------
# Segment length overflow
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("width", [4, 8])
def test_wrapped_segment_length_is_recovered(width):
    records = list(open_memory(build_wrapped_segment(width)))
    assert kinds(records) == [
        "StringRecord", "ClassDump", "InstanceDump", "InstanceDump",
        "PrimitiveArrayDump", "GcRoot", "StringRecord",
    ]
    assert records[3].object_id == 21
    assert records[-1].data == b"tail"


def test_wrapped_segment_is_recovered_from_stream():
    data = build_wrapped_segment()
    from_stream = list(open_stream(io.BytesIO(data), ReaderOptions(buffer_size=16)))
    assert from_stream == list(open_memory(data))


def test_wrapped_segment_warns_once(caplog):
    caplog.set_level(logging.WARNING, logger="hprof_reader")
    list(open_memory(build_wrapped_segment()))
    warnings = [r for r in caplog.records if "declared length" in r.getMessage()]
    assert len(warnings) == 1


def test_segment_ending_at_declared_length_does_not_warn(caplog):
    caplog.set_level(logging.WARNING, logger="hprof_reader")
    list(open_memory(build_mixed_dump()))
    assert not [r for r in caplog.records if "declared length" in r.getMessage()]


def test_zero_declared_length_segment():
    b = HprofBuilder()
    b.heap_dump_segment([b.root_unknown(1), b.root_unknown(2)], length=0)
    records = list(open_memory(b.build()))
    assert [r.object_id for r in records] == [1, 2]


def test_unrecognized_record_right_after_segment():
    b = HprofBuilder()
    b.heap_dump_segment([b.root_unknown(1)])
    b.record(0x50, b"\x01\x02")
    records = list(open_memory(b.build()))
    assert kinds(records) == ["GcRoot", "UnrecognizedRecord"]
    assert records[1].tag == 0x50


def decode_with(front_end, data):
    if front_end == "stream":
        return list(open_stream(io.BytesIO(data), ReaderOptions(buffer_size=16)))
    return list(open_memory(data))


@pytest.mark.parametrize("front_end", ["memory", "stream"])
def test_string_then_unrecognized_record_after_segment(front_end, caplog):
    caplog.set_level(logging.WARNING, logger="hprof_reader")
    b = HprofBuilder()
    b.heap_dump_segment([b.root_unknown(1)])
    b.string(7, b"abc")
    b.record(0x50, b"\x01\x02")
    records = decode_with(front_end, b.build())
    assert kinds(records) == ["GcRoot", "StringRecord", "UnrecognizedRecord"]
    assert records[1].data == b"abc"
    assert records[2].data == b"\x01\x02"
    assert not [r for r in caplog.records if "declared length" in r.getMessage()]


@pytest.mark.parametrize("front_end", ["memory", "stream"])
def test_load_class_then_empty_unrecognized_record_after_segment(front_end):
    b = HprofBuilder()
    b.heap_dump_segment([b.root_unknown(1)])
    b.load_class(1, 10, 1)
    b.record(0x50, b"")
    records = decode_with(front_end, b.build())
    assert kinds(records) == ["GcRoot", "LoadClassRecord", "UnrecognizedRecord"]
    assert records[2].tag == 0x50


def test_wrapped_segment_followed_by_unrecognized_record():
    b = HprofBuilder()
    subrecords = [b.root_unknown(1), b.root_unknown(2), b.root_unknown(3)]
    b.heap_dump_segment(subrecords, length=len(subrecords[0]) + 2)
    b.load_class(1, 10, 1)
    b.record(0x50, b"\x01")
    records = list(open_memory(b.build()))
    assert kinds(records) == ["GcRoot", "GcRoot", "GcRoot", "LoadClassRecord", "UnrecognizedRecord"]


def test_wrap_warning_names_the_byte_after_the_declared_end(caplog):
    caplog.set_level(logging.WARNING, logger="hprof_reader")
    list(open_memory(build_wrapped_segment()))
    warning, = [r for r in caplog.records if "declared length" in r.getMessage()]
    # The second instance dump starts right where the scan resumes.
    assert "byte 0x21 at" in warning.getMessage()


# ---------------------------------------------------------------------------
# Unknown tags
# ---------------------------------------------------------------------------

def test_unrecognized_tag_is_skipped_by_length():
    b = HprofBuilder()
    b.record(0x42, b"\x00" * 10, time_delta=5)
    b.string(1, b"x")
    records = list(open_memory(b.build()))
    assert records[0] == UnrecognizedRecord(5, 0x42, b"\x00" * 10)
    assert isinstance(records[1], StringRecord)


def test_strict_tags_raise_and_allow_continuing():
    b = HprofBuilder()
    b.record(0x42, b"abc")
    b.string(1, b"x")
    reader = open_memory(b.build(), ReaderOptions(strict_tags=True))
    with pytest.raises(UnrecognizedTopLevelTag) as info:
        reader.pull()
    assert info.value.tag == 0x42
    assert info.value.offset == reader.header.size
    assert isinstance(reader.pull(), StringRecord)
    assert reader.pull() is None


def test_unknown_subrecord_tag_is_fatal():
    b = HprofBuilder()
    b.heap_dump_segment([b.root_unknown(1), b"\x50" + b.id(1)])
    b.string(1, b"x")
    reader = open_memory(b.build())
    assert isinstance(reader.pull(), GcRoot)
    with pytest.raises(UnknownSubrecordTag) as info:
        reader.pull()
    assert info.value.tag == 0x50
    assert reader.pull() is None


# ---------------------------------------------------------------------------
# Truncation and short bodies
# ---------------------------------------------------------------------------

def test_truncated_record_header():
    data = HprofBuilder().string(1, b"abc").build() + b"\x01\x00\x00"
    reader = open_memory(data)
    assert isinstance(reader.pull(), StringRecord)
    with pytest.raises(TruncatedInput):
        reader.pull()
    assert reader.pull() is None
    assert list(reader) == []


def test_truncated_record_body():
    data = HprofBuilder().record(0x01, b"\x00" * 4, length=100).build()
    with pytest.raises(TruncatedInput):
        list(open_stream(io.BytesIO(data)))


def test_truncated_subrecord():
    b = HprofBuilder()
    b.heap_dump_segment([b.root_unknown(1)])
    data = b.build()[:-3]
    with pytest.raises(TruncatedInput):
        list(open_memory(data))


def test_short_fixed_body_is_malformed():
    b = HprofBuilder()
    b.record(0x02, b"\x00\x00\x00\x01")
    b.string(1, b"never reached")
    reader = open_memory(b.build())
    with pytest.raises(MalformedRecord) as info:
        reader.pull()
    assert info.value.offset == reader.header.size
    assert isinstance(info.value.__cause__, TruncatedInput)
    assert reader.pull() is None


def test_trailing_body_bytes_are_ignored():
    b = HprofBuilder()
    body = struct.pack(">I", 1) + b.id(10) + struct.pack(">I", 0) + b.id(1) + b"extra"
    b.record(0x02, body)
    b.string(1, b"x")
    records = list(open_memory(b.build()))
    assert records[0] == LoadClassRecord(0, 1, 10, 0, 1)
    assert isinstance(records[1], StringRecord)


def test_last_span_covers_failed_record():
    b = HprofBuilder()
    b.heap_dump_segment([
        b.instance_dump(1, 10, b"\x00\x00"),
        b.root_unknown(2),
    ])
    reader = open_memory(b.build())
    with pytest.raises(UnknownClass):
        reader.pull()
    start, end = reader.last_span
    assert start == reader.header.size
    assert isinstance(reader.pull(), GcRoot)
    assert reader.last_span[0] == end


def test_time_delta_is_kept():
    data = HprofBuilder().string(1, b"x", time_delta=1234).build()
    record = next(open_memory(data))
    assert record.time_delta == 1234


def test_records_inside_segment_are_subrecords():
    b = HprofBuilder()
    b.heap_dump_segment([b.class_dump(10), b.primitive_array(1, INT, [])])
    records = list(open_memory(b.build()))
    assert isinstance(records[0], ClassDump)
    assert isinstance(records[1], PrimitiveArrayDump)
    assert records[1].length == 0
    assert not hasattr(records[0], "time_delta")


def test_instance_is_emitted_before_next_record():
    b = HprofBuilder()
    b.heap_dump_segment([b.class_dump(10), b.instance_dump(1, 10, b"")])
    records = list(open_memory(b.build()))
    assert isinstance(records[1], InstanceDump)
    assert bytes(records[1].data) == b""
