"""Exception hierarchy for the HPROF decoder.

Errors flagged ``fatal`` leave the read position undefined; the session
stops after raising one. The others are raised once the offending record
has been consumed, so the caller may keep pulling.
"""
from __future__ import annotations

from typing import Optional


class HprofError(Exception):
    """Base class for all decoder errors."""

    fatal = True

    def __init__(self, message: str = "", offset: Optional[int] = None):
        if offset is not None:
            message = f"{message} (offset 0x{offset:X})"
        super().__init__(message)
        self.offset = offset


class TruncatedInput(HprofError):
    """Input ended before a structurally required length was satisfied."""


class MalformedHeader(HprofError):
    """File preamble holds values outside the accepted domain."""


class MalformedRecord(HprofError):
    """A top-level record body is shorter than the fields its tag requires."""


class UnknownSubrecordTag(HprofError):
    """A heap dump body holds a subtag whose length cannot be known."""

    def __init__(self, tag: int, offset: Optional[int] = None):
        super().__init__(f"Unknown heap dump subrecord tag 0x{tag:02X}", offset)
        self.tag = tag


class UnknownPrimitiveType(HprofError):
    """A type tag is not one of the JVM basic types allowed at this point."""

    def __init__(self, type_tag: int, offset: Optional[int] = None):
        super().__init__(f"Unknown basic type tag {type_tag}", offset)
        self.type_tag = type_tag


class ArrayLengthOverflow(HprofError):
    """An array dump declares more element bytes than the input holds."""

    def __init__(self, count: int, element_width: int, available: Optional[int] = None,
                 offset: Optional[int] = None):
        message = f"Array of {count} x {element_width} bytes overruns the heap dump"
        if available is not None:
            message += f" ({available} bytes remain)"
        super().__init__(message, offset)
        self.count = count
        self.element_width = element_width
        self.available = available


class InconsistentStringTable(HprofError):
    """A string id was bound twice to different bytes."""

    fatal = False

    def __init__(self, string_id: int, offset: Optional[int] = None):
        super().__init__(f"String id 0x{string_id:X} redefined with different bytes", offset)
        self.string_id = string_id


class InconsistentClassDefinition(HprofError):
    """A class id was redefined with a different name or layout."""

    fatal = False

    def __init__(self, class_id: int, reason: str, offset: Optional[int] = None):
        super().__init__(f"Class 0x{class_id:X} redefined: {reason}", offset)
        self.class_id = class_id


class UnknownClass(HprofError):
    """An instance refers to a class whose layout is not (fully) known."""

    fatal = False

    def __init__(self, class_id: int, offset: Optional[int] = None):
        super().__init__(f"No class dump for class 0x{class_id:X}", offset)
        self.class_id = class_id


class InstanceSizeMismatch(HprofError):
    """An instance dump's declared length disagrees with its class layout."""

    fatal = False

    def __init__(self, class_id: int, declared: int, expected: int,
                 offset: Optional[int] = None):
        super().__init__(
            f"Instance of class 0x{class_id:X} declares {declared} bytes, "
            f"layout requires {expected}",
            offset,
        )
        self.class_id = class_id
        self.declared = declared
        self.expected = expected


class UnrecognizedTopLevelTag(HprofError):
    """Raised for unknown top-level tags only when strict tag checking is on."""

    fatal = False

    def __init__(self, tag: int, offset: Optional[int] = None):
        super().__init__(f"Unrecognized top-level record tag 0x{tag:02X}", offset)
        self.tag = tag
