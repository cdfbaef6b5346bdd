"""Second-stage decoding of instance fields and array bodies.

The framer hands out raw bytes; these helpers turn them into Python values
on request. They accept owned ``bytes`` and borrowed ``memoryview`` payloads
alike.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import List

from .errors import InstanceSizeMismatch
from .primitives import ID_CODES, VALUE_CODES, Value, unpack_value
from .registry import ClassRegistry
from .types import FieldDescriptor, FieldType, IdentifierWidth, InstanceDump, ObjectArrayDump, PrimitiveArrayDump


@dataclass(frozen=True)
class FieldValue:
    descriptor: FieldDescriptor
    value: Value

    @property
    def name_id(self) -> int:
        return self.descriptor.name_id

    @property
    def field_type(self) -> FieldType:
        return self.descriptor.field_type


def decode_value(data, offset: int, field_type: FieldType, width: int) -> Value:
    """Decode a single value; objects come back as raw ids, chars as ints."""
    return unpack_value(data, offset, field_type, width)


def decode_instance_fields(instance: InstanceDump, registry: ClassRegistry) -> List[FieldValue]:
    """Split an instance's field bytes along its class layout.

    Raises:
        UnknownClass: the class or one of its superclasses has no dump.
        InstanceSizeMismatch: the payload does not match the layout.
    """
    fields = registry.layout(instance.class_id)
    expected = registry.instance_size(instance.class_id)
    if len(instance.data) != expected:
        raise InstanceSizeMismatch(instance.class_id, len(instance.data), expected)

    width = registry.identifier_width
    values = []
    offset = 0
    for field in fields:
        values.append(FieldValue(field, unpack_value(instance.data, offset, field.field_type, width)))
        offset += field.width
    return values


def decode_primitive_array(array: PrimitiveArrayDump) -> list:
    if array.data is None:
        raise ValueError(f"Body of array 0x{array.array_id:X} was not loaded")
    return list(struct.unpack(f">{array.length}{VALUE_CODES[array.element_type]}", array.data))


def decode_object_array(array: ObjectArrayDump, width: IdentifierWidth) -> List[int]:
    if array.data is None:
        raise ValueError(f"Body of array 0x{array.array_id:X} was not loaded")
    return list(struct.unpack(f">{array.length}{ID_CODES[IdentifierWidth(width)]}", array.data))
