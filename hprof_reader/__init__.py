"""HPROF heap dump reader.

This package decodes JVM heap dumps (HPROF format) into a lazy sequence of
records, including:
- Header decoding for 4 and 8 byte identifier widths
- Top-level records (strings, classes, stack traces, threads, samples)
- Heap dump subrecords (GC roots, class dumps, instances, arrays)
- Recovery from heap dump segments whose 32-bit length wrapped around
- Owned payloads for streams, zero-copy views for in-memory buffers
"""
import logging

from .errors import (
    HprofError,
    TruncatedInput,
    MalformedHeader,
    MalformedRecord,
    UnknownSubrecordTag,
    UnknownPrimitiveType,
    ArrayLengthOverflow,
    InconsistentStringTable,
    InconsistentClassDefinition,
    UnknownClass,
    InstanceSizeMismatch,
    UnrecognizedTopLevelTag,
)
from .header import HprofHeader, decode_header
from .reader import (
    HprofReader,
    ReaderOptions,
    MMAP_THRESHOLD,
    open_file,
    open_memory,
    open_stream,
)
from .registry import ClassEntry, ClassRegistry, StringTable
from .types import (
    IdentifierWidth,
    RecordTag,
    SubrecordTag,
    RootKind,
    FieldType,
    # Top-level records
    StringRecord,
    LoadClassRecord,
    UnloadClassRecord,
    StackFrameRecord,
    StackTraceRecord,
    AllocSite,
    AllocSitesRecord,
    HeapSummaryRecord,
    StartThreadRecord,
    EndThreadRecord,
    CpuSample,
    CpuSamplesRecord,
    ControlSettingsRecord,
    HeapDumpSegment,
    HeapDumpEnd,
    UnrecognizedRecord,
    # Heap dump subrecords
    GcRoot,
    FieldDescriptor,
    ConstantPoolEntry,
    StaticField,
    ClassDump,
    InstanceDump,
    ObjectArrayDump,
    PrimitiveArrayDump,
    HeapDumpInfo,
)
from .values import (
    FieldValue,
    decode_instance_fields,
    decode_object_array,
    decode_primitive_array,
    decode_value,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    # Errors
    "HprofError",
    "TruncatedInput",
    "MalformedHeader",
    "MalformedRecord",
    "UnknownSubrecordTag",
    "UnknownPrimitiveType",
    "ArrayLengthOverflow",
    "InconsistentStringTable",
    "InconsistentClassDefinition",
    "UnknownClass",
    "InstanceSizeMismatch",
    "UnrecognizedTopLevelTag",
    # Sessions
    "HprofHeader",
    "decode_header",
    "HprofReader",
    "ReaderOptions",
    "MMAP_THRESHOLD",
    "open_file",
    "open_memory",
    "open_stream",
    # Lookup tables
    "ClassEntry",
    "ClassRegistry",
    "StringTable",
    # Tags and basic types
    "IdentifierWidth",
    "RecordTag",
    "SubrecordTag",
    "RootKind",
    "FieldType",
    # Top-level records
    "StringRecord",
    "LoadClassRecord",
    "UnloadClassRecord",
    "StackFrameRecord",
    "StackTraceRecord",
    "AllocSite",
    "AllocSitesRecord",
    "HeapSummaryRecord",
    "StartThreadRecord",
    "EndThreadRecord",
    "CpuSample",
    "CpuSamplesRecord",
    "ControlSettingsRecord",
    "HeapDumpSegment",
    "HeapDumpEnd",
    "UnrecognizedRecord",
    # Heap dump subrecords
    "GcRoot",
    "FieldDescriptor",
    "ConstantPoolEntry",
    "StaticField",
    "ClassDump",
    "InstanceDump",
    "ObjectArrayDump",
    "PrimitiveArrayDump",
    "HeapDumpInfo",
    # Value decoding
    "FieldValue",
    "decode_instance_fields",
    "decode_object_array",
    "decode_primitive_array",
    "decode_value",
]

__version__ = "0.1.0"
