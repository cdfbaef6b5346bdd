"""Heap dump body decoding.

Subrecords are self-delimiting: a one byte subtag followed by a body whose
length follows from the subtag, the identifier width and (for arrays and
class dumps) counts stored in the body itself.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Tuple

from .errors import (
    ArrayLengthOverflow,
    InstanceSizeMismatch,
    TruncatedInput,
    UnknownClass,
    UnknownPrimitiveType,
    UnknownSubrecordTag,
)
from .primitives import parse_field_type, read_id, read_layout, read_u1, read_u2, read_value
from .registry import ClassRegistry
from .source import ByteSource
from .types import (
    ClassDump,
    ConstantPoolEntry,
    FieldDescriptor,
    FieldType,
    GcRoot,
    HeapDumpInfo,
    HeapSubrecord,
    IdentifierWidth,
    InstanceDump,
    ObjectArrayDump,
    Payload,
    PrimitiveArrayDump,
    RootKind,
    StaticField,
    SubrecordTag,
)

logger = logging.getLogger(__name__)


# GC root bodies: struct layout and the GcRoot attributes it fills, in order.
ROOT_LAYOUTS: Dict[SubrecordTag, Tuple[str, Tuple[str, ...]]] = {
    SubrecordTag.ROOT_UNKNOWN: ("{id}", ("object_id",)),
    SubrecordTag.ROOT_JNI_GLOBAL: ("{id}{id}", ("object_id", "jni_global_ref_id")),
    SubrecordTag.ROOT_JNI_LOCAL: ("{id}II", ("object_id", "thread_serial", "frame_number")),
    SubrecordTag.ROOT_JAVA_FRAME: ("{id}II", ("object_id", "thread_serial", "frame_number")),
    SubrecordTag.ROOT_NATIVE_STACK: ("{id}I", ("object_id", "thread_serial")),
    SubrecordTag.ROOT_STICKY_CLASS: ("{id}", ("object_id",)),
    SubrecordTag.ROOT_THREAD_BLOCK: ("{id}I", ("object_id", "thread_serial")),
    SubrecordTag.ROOT_MONITOR_USED: ("{id}", ("object_id",)),
    SubrecordTag.ROOT_THREAD_OBJECT: ("{id}II", ("object_id", "thread_serial", "stack_trace_serial")),
    SubrecordTag.ROOT_INTERNED_STRING: ("{id}", ("object_id",)),
    SubrecordTag.ROOT_FINALIZING: ("{id}", ("object_id",)),
    SubrecordTag.ROOT_DEBUGGER: ("{id}", ("object_id",)),
    SubrecordTag.ROOT_REFERENCE_CLEANUP: ("{id}", ("object_id",)),
    SubrecordTag.ROOT_VM_INTERNAL: ("{id}", ("object_id",)),
    SubrecordTag.ROOT_JNI_MONITOR: ("{id}II", ("object_id", "thread_serial", "frame_number")),
    SubrecordTag.ROOT_UNREACHABLE: ("{id}", ("object_id",)),
}

CLASS_DUMP_HEADER = "{id}I{id}{id}{id}{id}{id}{id}I"
INSTANCE_DUMP_HEADER = "{id}I{id}I"
OBJECT_ARRAY_HEADER = "{id}II{id}"
PRIMITIVE_ARRAY_HEADER = "{id}IIB"


class SubrecordDecoder:
    """Decodes one heap dump subrecord at a time from a byte source.

    CLASS_DUMP layouts are fed into ``classes`` as they are decoded, and
    every INSTANCE_DUMP is checked against them.
    """

    def __init__(self, identifier_width: IdentifierWidth, classes: ClassRegistry,
                 load_primitive_arrays: bool = True, load_object_arrays: bool = True):
        self.identifier_width = identifier_width
        self.classes = classes
        self.load_primitive_arrays = load_primitive_arrays
        self.load_object_arrays = load_object_arrays
        self._handlers: Dict[int, Callable[[ByteSource, int, int], HeapSubrecord]] = {
            SubrecordTag.CLASS_DUMP: self._class_dump,
            SubrecordTag.INSTANCE_DUMP: self._instance_dump,
            SubrecordTag.OBJECT_ARRAY_DUMP: self._object_array,
            SubrecordTag.PRIMITIVE_ARRAY_DUMP: self._primitive_array,
            SubrecordTag.PRIMITIVE_ARRAY_NODATA: self._primitive_array_nodata,
            SubrecordTag.HEAP_DUMP_INFO: self._heap_dump_info,
        }
        for tag in ROOT_LAYOUTS:
            self._handlers[tag] = self._gc_root

    def handles(self, tag: int) -> bool:
        return tag in self._handlers

    def decode(self, source: ByteSource) -> HeapSubrecord:
        """Decode the subrecord starting at the cursor.

        Raises:
            UnknownSubrecordTag: the subtag is not known.
            TruncatedInput: the input ends inside the subrecord.
            UnknownClass, InstanceSizeMismatch: instance could not be
                checked against its class layout. Its bytes are consumed.
        """
        start = source.position
        tag = read_u1(source)
        handler = self._handlers.get(tag)
        if handler is None:
            raise UnknownSubrecordTag(tag, start)
        return handler(source, tag, start)

    # ========================================================================
    # GC ROOTS / ANDROID MARKERS
    # ========================================================================

    def _gc_root(self, source: ByteSource, tag: int, start: int) -> GcRoot:
        fmt, names = ROOT_LAYOUTS[SubrecordTag(tag)]
        values = read_layout(source, self.identifier_width, fmt)
        return GcRoot(kind=RootKind(tag), **dict(zip(names, values)))

    def _heap_dump_info(self, source: ByteSource, tag: int, start: int) -> HeapDumpInfo:
        heap_type, name_string_id = read_layout(source, self.identifier_width, "I{id}")
        return HeapDumpInfo(heap_type, name_string_id)

    # ========================================================================
    # CLASSES AND INSTANCES
    # ========================================================================

    def _class_dump(self, source: ByteSource, tag: int, start: int) -> ClassDump:
        width = self.identifier_width
        (class_id, stack_trace_serial, superclass_id, class_loader_id, signers_id,
         protection_domain_id, reserved1, reserved2, vm_instance_size) = read_layout(
            source, width, CLASS_DUMP_HEADER
        )

        constant_pool = []
        for _ in range(read_u2(source)):
            index = read_u2(source)
            field_type = self._read_type(source)
            constant_pool.append(ConstantPoolEntry(index, field_type, read_value(source, field_type, width)))

        static_fields = []
        for _ in range(read_u2(source)):
            name_id = read_id(source, width)
            field_type = self._read_type(source)
            static_fields.append(StaticField(name_id, field_type, read_value(source, field_type, width)))

        instance_fields = []
        for _ in range(read_u2(source)):
            name_id = read_id(source, width)
            field_type = self._read_type(source)
            instance_fields.append(FieldDescriptor(name_id, field_type, field_type.width(width)))

        self.classes.record_class_dump(
            class_id, superclass_id, instance_fields, static_fields, vm_instance_size
        )
        return ClassDump(
            class_id=class_id,
            stack_trace_serial=stack_trace_serial,
            superclass_id=superclass_id or None,
            class_loader_id=class_loader_id,
            signers_id=signers_id,
            protection_domain_id=protection_domain_id,
            reserved1=reserved1,
            reserved2=reserved2,
            instance_size=vm_instance_size,
            constant_pool=tuple(constant_pool),
            static_fields=tuple(static_fields),
            instance_fields=tuple(instance_fields),
        )

    def _instance_dump(self, source: ByteSource, tag: int, start: int) -> InstanceDump:
        object_id, stack_trace_serial, class_id, length = read_layout(
            source, self.identifier_width, INSTANCE_DUMP_HEADER
        )
        data = source.read_payload(length)
        try:
            expected = self.classes.instance_size(class_id)
        except UnknownClass as exc:
            raise UnknownClass(exc.class_id, start) from None
        if length != expected:
            raise InstanceSizeMismatch(class_id, length, expected, start)
        return InstanceDump(object_id, stack_trace_serial, class_id, data)

    # ========================================================================
    # ARRAYS
    # ========================================================================

    def _object_array(self, source: ByteSource, tag: int, start: int) -> ObjectArrayDump:
        width = self.identifier_width
        array_id, stack_trace_serial, length, element_class_id = read_layout(
            source, width, OBJECT_ARRAY_HEADER
        )
        data = self._array_body(source, length, int(width), self.load_object_arrays, start)
        return ObjectArrayDump(array_id, stack_trace_serial, element_class_id, length, data)

    def _primitive_array(self, source: ByteSource, tag: int, start: int) -> PrimitiveArrayDump:
        array_id, stack_trace_serial, length, element_type = self._primitive_array_header(source)
        data = self._array_body(
            source, length, element_type.width(self.identifier_width),
            self.load_primitive_arrays, start,
        )
        return PrimitiveArrayDump(array_id, stack_trace_serial, element_type, length, data)

    def _primitive_array_nodata(self, source: ByteSource, tag: int, start: int) -> PrimitiveArrayDump:
        array_id, stack_trace_serial, length, element_type = self._primitive_array_header(source)
        return PrimitiveArrayDump(array_id, stack_trace_serial, element_type, length, None)

    def _primitive_array_header(self, source: ByteSource):
        array_id, stack_trace_serial, length, type_tag = read_layout(
            source, self.identifier_width, PRIMITIVE_ARRAY_HEADER
        )
        element_type = parse_field_type(type_tag, source.position - 1)
        if not element_type.is_primitive:
            raise UnknownPrimitiveType(type_tag, source.position - 1)
        return array_id, stack_trace_serial, length, element_type

    def _array_body(self, source: ByteSource, count: int, element_width: int,
                    load: bool, start: int) -> Optional[Payload]:
        size = count * element_width
        available = source.remaining()
        if available is not None and size > available:
            raise ArrayLengthOverflow(count, element_width, available, start)
        try:
            if load:
                return source.read_payload(size)
            source.skip(size)
        except TruncatedInput as exc:
            raise ArrayLengthOverflow(count, element_width, offset=start) from exc
        return None

    def _read_type(self, source: ByteSource) -> FieldType:
        offset = source.position
        return parse_field_type(read_u1(source), offset)
