"""Per-session lookup tables: class layouts and strings.

Both tables are append-only. Binding an identifier a second time to the
same data is accepted (dumps repeat themselves across segments); binding
it to different data is a format error.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

from .errors import InconsistentClassDefinition, InconsistentStringTable, UnknownClass
from .types import FieldDescriptor, FieldType, IdentifierWidth, Payload, StaticField

logger = logging.getLogger(__name__)

FieldLike = Union[FieldDescriptor, Tuple[int, FieldType]]


@dataclass
class ClassEntry:
    """What the session knows about one class.

    A LOAD_CLASS record creates a stub (name and serial only). The layout
    becomes known once the matching CLASS_DUMP is seen.
    """
    class_id: int
    name_string_id: Optional[int] = None
    class_serial: Optional[int] = None
    stack_trace_serial: Optional[int] = None
    superclass_id: Optional[int] = None
    instance_fields: Optional[Tuple[FieldDescriptor, ...]] = None
    static_fields: Tuple[StaticField, ...] = ()
    vm_instance_size: Optional[int] = None
    instance_size: Optional[int] = None  # filled in on first size lookup

    @property
    def complete(self) -> bool:
        return self.instance_fields is not None

    @property
    def own_fields_size(self) -> int:
        return sum(f.width for f in self.instance_fields or ())


class ClassRegistry:
    """Class id -> ClassEntry, fed by LOAD_CLASS and CLASS_DUMP records."""

    def __init__(self, identifier_width: IdentifierWidth):
        self.identifier_width = identifier_width
        self._classes: Dict[int, ClassEntry] = {}
        self._by_serial: Dict[int, int] = {}
        self._layouts: Dict[int, Tuple[FieldDescriptor, ...]] = {}

    def __len__(self) -> int:
        return len(self._classes)

    def __contains__(self, class_id: int) -> bool:
        return class_id in self._classes

    def __iter__(self) -> Iterator[ClassEntry]:
        return iter(self._classes.values())

    def get(self, class_id: int) -> Optional[ClassEntry]:
        return self._classes.get(class_id)

    def lookup(self, class_id: int) -> ClassEntry:
        entry = self._classes.get(class_id)
        if entry is None:
            raise UnknownClass(class_id)
        return entry

    def by_serial(self, class_serial: int) -> Optional[ClassEntry]:
        class_id = self._by_serial.get(class_serial)
        return None if class_id is None else self._classes[class_id]

    def record_load_class(self, class_id: int, name_string_id: int,
                          class_serial: Optional[int] = None,
                          stack_trace_serial: Optional[int] = None,
                          superclass_id: Optional[int] = None) -> ClassEntry:
        superclass_id = superclass_id or None
        entry = self._classes.get(class_id)
        if entry is None:
            entry = ClassEntry(class_id=class_id, superclass_id=superclass_id)
            self._classes[class_id] = entry
        else:
            if entry.name_string_id not in (None, name_string_id):
                raise InconsistentClassDefinition(
                    class_id, f"name string 0x{entry.name_string_id:X} -> 0x{name_string_id:X}"
                )
            if superclass_id is not None and entry.superclass_id not in (None, superclass_id):
                raise InconsistentClassDefinition(class_id, "superclass changed")
            if superclass_id is not None:
                entry.superclass_id = superclass_id

        if class_serial is not None:
            bound = self._by_serial.get(class_serial)
            if bound not in (None, class_id):
                raise InconsistentClassDefinition(
                    class_id, f"serial {class_serial} already names class 0x{bound:X}"
                )
            self._by_serial[class_serial] = class_id
            entry.class_serial = class_serial

        entry.name_string_id = name_string_id
        if stack_trace_serial is not None:
            entry.stack_trace_serial = stack_trace_serial
        return entry

    def record_class_dump(self, class_id: int, superclass_id: Optional[int],
                          instance_fields: Iterable[FieldLike],
                          static_fields: Iterable[StaticField] = (),
                          vm_instance_size: Optional[int] = None) -> ClassEntry:
        superclass_id = superclass_id or None
        fields = tuple(self._descriptor(field) for field in instance_fields)
        entry = self._classes.get(class_id)

        if entry is not None and entry.complete:
            if entry.superclass_id != superclass_id or entry.instance_fields != fields:
                raise InconsistentClassDefinition(class_id, "layout differs from earlier class dump")
            return entry
        if entry is None:
            entry = ClassEntry(class_id=class_id)
            self._classes[class_id] = entry
        elif entry.superclass_id not in (None, superclass_id):
            raise InconsistentClassDefinition(class_id, "superclass changed")

        entry.superclass_id = superclass_id
        entry.instance_fields = fields
        entry.static_fields = tuple(static_fields)
        entry.vm_instance_size = vm_instance_size
        logger.debug("Class 0x%X: %d instance fields, superclass %s",
                     class_id, len(fields),
                     "none" if superclass_id is None else f"0x{superclass_id:X}")
        return entry

    def layout(self, class_id: int) -> Tuple[FieldDescriptor, ...]:
        """Every instance field of the class in INSTANCE_DUMP order.

        The dump writer emits the class's own fields first and then walks
        up the superclass chain.
        """
        cached = self._layouts.get(class_id)
        if cached is None:
            cached = tuple(f for entry in self._chain(class_id) for f in entry.instance_fields)
            self._layouts[class_id] = cached
        return cached

    def instance_size(self, class_id: int) -> int:
        """Bytes an INSTANCE_DUMP of this class carries."""
        entry = self._classes.get(class_id)
        if entry is not None and entry.instance_size is not None:
            return entry.instance_size
        chain = self._chain(class_id)
        # Accumulate root-first so every ancestor gets its size cached too.
        size = 0
        for ancestor in reversed(chain):
            size += ancestor.own_fields_size
            ancestor.instance_size = size
        return size

    def _chain(self, class_id: int) -> List[ClassEntry]:
        chain: List[ClassEntry] = []
        seen = set()
        current: Optional[int] = class_id
        while current is not None:
            if current in seen:
                raise InconsistentClassDefinition(class_id, "superclass chain loops")
            seen.add(current)
            entry = self._classes.get(current)
            if entry is None or not entry.complete:
                raise UnknownClass(current)
            chain.append(entry)
            current = entry.superclass_id
        return chain

    def _descriptor(self, field: FieldLike) -> FieldDescriptor:
        if isinstance(field, FieldDescriptor):
            return field
        name_id, field_type = field
        field_type = FieldType(field_type)
        return FieldDescriptor(name_id, field_type, field_type.width(self.identifier_width))


class StringTable:
    """String id -> raw bytes. Values are never assumed to be text."""

    def __init__(self):
        self._strings: Dict[int, Payload] = {}

    def __len__(self) -> int:
        return len(self._strings)

    def __contains__(self, string_id: int) -> bool:
        return string_id in self._strings

    def insert(self, string_id: int, data: Payload) -> None:
        existing = self._strings.get(string_id)
        if existing is None:
            self._strings[string_id] = data
        elif existing is not data and existing != data:
            raise InconsistentStringTable(string_id)

    def get(self, string_id: int) -> Optional[Payload]:
        return self._strings.get(string_id)

    def text(self, string_id: int, encoding: str = "utf-8", errors: str = "replace") -> Optional[str]:
        """Decode a string on request; None when the id is unknown."""
        data = self._strings.get(string_id)
        if data is None:
            return None
        return bytes(data).decode(encoding, errors)
