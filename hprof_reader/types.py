"""HPROF record tags, basic types and the decoded record structures.

Records only carry raw identifiers (plain ints). Variable-length payloads
(string bytes, instance field bytes, array bodies) are ``bytes`` when read
by the stream front end and ``memoryview`` slices of the caller's buffer
when read by the in-memory front end.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar, Optional, Tuple, Union

Payload = Union[bytes, memoryview]


# ============================================================================
# TAGS AND BASIC TYPES
# ============================================================================

class IdentifierWidth(IntEnum):
    """Size in bytes of every object, class and string identifier."""
    FOUR = 4
    EIGHT = 8


class RecordTag(IntEnum):
    """Top-level record tags."""
    STRING = 0x01
    LOAD_CLASS = 0x02
    UNLOAD_CLASS = 0x03
    STACK_FRAME = 0x04
    STACK_TRACE = 0x05
    ALLOC_SITES = 0x06
    HEAP_SUMMARY = 0x07
    START_THREAD = 0x0A
    END_THREAD = 0x0B
    HEAP_DUMP = 0x0C
    CPU_SAMPLES = 0x0D
    CONTROL_SETTINGS = 0x0E
    HEAP_DUMP_SEGMENT = 0x1C
    HEAP_DUMP_END = 0x2C


HEAP_DUMP_TAGS = frozenset({RecordTag.HEAP_DUMP, RecordTag.HEAP_DUMP_SEGMENT})


class SubrecordTag(IntEnum):
    """Heap dump body subrecord tags, including the Android extensions."""
    ROOT_UNKNOWN = 0xFF
    ROOT_JNI_GLOBAL = 0x01
    ROOT_JNI_LOCAL = 0x02
    ROOT_JAVA_FRAME = 0x03
    ROOT_NATIVE_STACK = 0x04
    ROOT_STICKY_CLASS = 0x05
    ROOT_THREAD_BLOCK = 0x06
    ROOT_MONITOR_USED = 0x07
    ROOT_THREAD_OBJECT = 0x08
    CLASS_DUMP = 0x20
    INSTANCE_DUMP = 0x21
    OBJECT_ARRAY_DUMP = 0x22
    PRIMITIVE_ARRAY_DUMP = 0x23
    # Android
    ROOT_INTERNED_STRING = 0x89
    ROOT_FINALIZING = 0x8A
    ROOT_DEBUGGER = 0x8B
    ROOT_REFERENCE_CLEANUP = 0x8C
    ROOT_VM_INTERNAL = 0x8D
    ROOT_JNI_MONITOR = 0x8E
    ROOT_UNREACHABLE = 0x90
    PRIMITIVE_ARRAY_NODATA = 0xC3
    HEAP_DUMP_INFO = 0xFE


class RootKind(IntEnum):
    """GC root kinds; values match their subrecord tags."""
    UNKNOWN = 0xFF
    JNI_GLOBAL = 0x01
    JNI_LOCAL = 0x02
    JAVA_FRAME = 0x03
    NATIVE_STACK = 0x04
    STICKY_CLASS = 0x05
    THREAD_BLOCK = 0x06
    MONITOR_USED = 0x07
    THREAD_OBJECT = 0x08
    INTERNED_STRING = 0x89
    FINALIZING = 0x8A
    DEBUGGER = 0x8B
    REFERENCE_CLEANUP = 0x8C
    VM_INTERNAL = 0x8D
    JNI_MONITOR = 0x8E
    UNREACHABLE = 0x90


class FieldType(IntEnum):
    """HPROF basic type tags."""
    OBJECT = 2
    BOOLEAN = 4
    CHAR = 5
    FLOAT = 6
    DOUBLE = 7
    BYTE = 8
    SHORT = 9
    INT = 10
    LONG = 11

    @property
    def is_primitive(self) -> bool:
        return self is not FieldType.OBJECT

    def width(self, identifier_width: int) -> int:
        """Storage size in bytes; object references use the identifier width."""
        if self is FieldType.OBJECT:
            return int(identifier_width)
        return PRIMITIVE_WIDTHS[self]


PRIMITIVE_WIDTHS = {
    FieldType.BOOLEAN: 1,
    FieldType.CHAR: 2,
    FieldType.FLOAT: 4,
    FieldType.DOUBLE: 8,
    FieldType.BYTE: 1,
    FieldType.SHORT: 2,
    FieldType.INT: 4,
    FieldType.LONG: 8,
}


# ============================================================================
# TOP-LEVEL RECORDS
# ============================================================================

@dataclass(frozen=True)
class StringRecord:
    """STRING: identifier and raw (not necessarily UTF-8) bytes."""
    tag: ClassVar[RecordTag] = RecordTag.STRING
    time_delta: int
    string_id: int
    data: Payload


@dataclass(frozen=True)
class LoadClassRecord:
    tag: ClassVar[RecordTag] = RecordTag.LOAD_CLASS
    time_delta: int
    class_serial: int
    class_id: int
    stack_trace_serial: int
    name_string_id: int


@dataclass(frozen=True)
class UnloadClassRecord:
    tag: ClassVar[RecordTag] = RecordTag.UNLOAD_CLASS
    time_delta: int
    class_serial: int


@dataclass(frozen=True)
class StackFrameRecord:
    tag: ClassVar[RecordTag] = RecordTag.STACK_FRAME
    time_delta: int
    frame_id: int
    method_name_id: int
    method_signature_id: int
    source_file_name_id: int
    class_serial: int
    line_number: int  # > 0 line, -1 unknown, -2 compiled, -3 native


@dataclass(frozen=True)
class StackTraceRecord:
    tag: ClassVar[RecordTag] = RecordTag.STACK_TRACE
    time_delta: int
    stack_trace_serial: int
    thread_serial: int
    frame_ids: Tuple[int, ...]


@dataclass(frozen=True)
class AllocSite:
    is_array: int
    class_serial: int
    stack_trace_serial: int
    bytes_alive: int
    instances_alive: int
    bytes_allocated: int
    instances_allocated: int


@dataclass(frozen=True)
class AllocSitesRecord:
    tag: ClassVar[RecordTag] = RecordTag.ALLOC_SITES
    time_delta: int
    flags: int
    cutoff_ratio: int
    total_live_bytes: int
    total_live_instances: int
    total_bytes_allocated: int
    total_instances_allocated: int
    sites: Tuple[AllocSite, ...]


@dataclass(frozen=True)
class HeapSummaryRecord:
    tag: ClassVar[RecordTag] = RecordTag.HEAP_SUMMARY
    time_delta: int
    total_live_bytes: int
    total_live_instances: int
    total_bytes_allocated: int
    total_instances_allocated: int


@dataclass(frozen=True)
class StartThreadRecord:
    tag: ClassVar[RecordTag] = RecordTag.START_THREAD
    time_delta: int
    thread_serial: int
    thread_object_id: int
    stack_trace_serial: int
    thread_name_id: int
    thread_group_name_id: int
    thread_group_parent_name_id: int


@dataclass(frozen=True)
class EndThreadRecord:
    tag: ClassVar[RecordTag] = RecordTag.END_THREAD
    time_delta: int
    thread_serial: int


@dataclass(frozen=True)
class CpuSample:
    num_samples: int
    stack_trace_serial: int


@dataclass(frozen=True)
class CpuSamplesRecord:
    tag: ClassVar[RecordTag] = RecordTag.CPU_SAMPLES
    time_delta: int
    total_samples: int
    samples: Tuple[CpuSample, ...]


@dataclass(frozen=True)
class ControlSettingsRecord:
    tag: ClassVar[RecordTag] = RecordTag.CONTROL_SETTINGS
    time_delta: int
    flags: int  # 0x1 alloc traces on, 0x2 cpu sampling on
    stack_trace_depth: int


@dataclass(frozen=True)
class HeapDumpSegment:
    """Start of a heap dump body (only emitted with segment markers on).

    ``declared_length`` is the length written by the producer; for very
    large segments it may have wrapped around 2**32.
    """
    tag: ClassVar[RecordTag] = RecordTag.HEAP_DUMP_SEGMENT
    time_delta: int
    declared_length: int
    legacy: bool = False


@dataclass(frozen=True)
class HeapDumpEnd:
    tag: ClassVar[RecordTag] = RecordTag.HEAP_DUMP_END
    time_delta: int


@dataclass(frozen=True)
class UnrecognizedRecord:
    """Record with a tag this decoder does not know; body kept verbatim."""
    time_delta: int
    tag: int
    data: Payload


# ============================================================================
# HEAP DUMP SUBRECORDS
# ============================================================================

@dataclass(frozen=True)
class GcRoot:
    kind: RootKind
    object_id: int
    thread_serial: Optional[int] = None
    frame_number: Optional[int] = None
    stack_trace_serial: Optional[int] = None
    jni_global_ref_id: Optional[int] = None


@dataclass(frozen=True)
class FieldDescriptor:
    """Instance field declaration; ``width`` already reflects the id width."""
    name_id: int
    field_type: FieldType
    width: int


@dataclass(frozen=True)
class ConstantPoolEntry:
    index: int
    field_type: FieldType
    value: Union[int, float, bool]


@dataclass(frozen=True)
class StaticField:
    name_id: int
    field_type: FieldType
    value: Union[int, float, bool]


@dataclass(frozen=True)
class ClassDump:
    class_id: int
    stack_trace_serial: int
    superclass_id: Optional[int]
    class_loader_id: int
    signers_id: int
    protection_domain_id: int
    reserved1: int
    reserved2: int
    instance_size: int  # as declared by the VM, object header included
    constant_pool: Tuple[ConstantPoolEntry, ...]
    static_fields: Tuple[StaticField, ...]
    instance_fields: Tuple[FieldDescriptor, ...]


@dataclass(frozen=True)
class InstanceDump:
    """Instance with its raw field bytes; see ``values.decode_instance_fields``."""
    object_id: int
    stack_trace_serial: int
    class_id: int
    data: Payload


@dataclass(frozen=True)
class ObjectArrayDump:
    array_id: int
    stack_trace_serial: int
    element_class_id: int
    length: int
    data: Optional[Payload]


@dataclass(frozen=True)
class PrimitiveArrayDump:
    array_id: int
    stack_trace_serial: int
    element_type: FieldType
    length: int
    data: Optional[Payload]


@dataclass(frozen=True)
class HeapDumpInfo:
    """Android: subsequent subrecords belong to this heap."""
    heap_type: int
    name_string_id: int


TopLevelRecord = Union[
    StringRecord, LoadClassRecord, UnloadClassRecord, StackFrameRecord,
    StackTraceRecord, AllocSitesRecord, HeapSummaryRecord, StartThreadRecord,
    EndThreadRecord, CpuSamplesRecord, ControlSettingsRecord, HeapDumpSegment,
    HeapDumpEnd, UnrecognizedRecord,
]

HeapSubrecord = Union[
    GcRoot, ClassDump, InstanceDump, ObjectArrayDump, PrimitiveArrayDump,
    HeapDumpInfo,
]
