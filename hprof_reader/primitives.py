"""Big-endian primitive decoding helpers.

All HPROF numbers are big-endian. Identifier fields are 4 or 8 bytes wide
depending on the header; layouts mixing fixed fields and identifiers are
written with an ``{id}`` placeholder and compiled once per width.
"""
from __future__ import annotations

import struct
from functools import lru_cache
from typing import Tuple, Union

from .errors import UnknownPrimitiveType
from .types import FieldType, IdentifierWidth

U1 = struct.Struct(">B")
U2 = struct.Struct(">H")
U4 = struct.Struct(">I")
U8 = struct.Struct(">Q")

ID_CODES = {IdentifierWidth.FOUR: "I", IdentifierWidth.EIGHT: "Q"}

VALUE_CODES = {
    FieldType.BOOLEAN: "?",
    FieldType.CHAR: "H",
    FieldType.FLOAT: "f",
    FieldType.DOUBLE: "d",
    FieldType.BYTE: "b",
    FieldType.SHORT: "h",
    FieldType.INT: "i",
    FieldType.LONG: "q",
}

Value = Union[int, float, bool]


@lru_cache(maxsize=None)
def layout(width: int, fmt: str) -> struct.Struct:
    """Compile ``fmt`` (e.g. ``"I{id}I"``) for the given identifier width."""
    return struct.Struct(">" + fmt.format(id=ID_CODES[IdentifierWidth(width)]))


@lru_cache(maxsize=None)
def value_struct(field_type: FieldType, width: int) -> struct.Struct:
    if field_type is FieldType.OBJECT:
        return layout(width, "{id}")
    return struct.Struct(">" + VALUE_CODES[field_type])


def parse_field_type(type_tag: int, offset=None) -> FieldType:
    try:
        return FieldType(type_tag)
    except ValueError:
        raise UnknownPrimitiveType(type_tag, offset) from None


def read_u1(source) -> int:
    return source.read(1)[0]


def read_u2(source) -> int:
    return U2.unpack(source.read(2))[0]


def read_u4(source) -> int:
    return U4.unpack(source.read(4))[0]


def read_u8(source) -> int:
    return U8.unpack(source.read(8))[0]


def read_id(source, width: int) -> int:
    return layout(width, "{id}").unpack(source.read(width))[0]


def read_layout(source, width: int, fmt: str) -> Tuple:
    compiled = layout(width, fmt)
    return compiled.unpack(source.read(compiled.size))


def read_value(source, field_type: FieldType, width: int) -> Value:
    compiled = value_struct(field_type, width)
    return compiled.unpack(source.read(compiled.size))[0]


def unpack_value(data, offset: int, field_type: FieldType, width: int) -> Value:
    """Decode one value of ``field_type`` from ``data`` at ``offset``."""
    return value_struct(field_type, width).unpack_from(data, offset)[0]
