import pytest

from hprof_reader import (
    ClassRegistry,
    FieldType,
    IdentifierWidth,
    InconsistentClassDefinition,
    InconsistentStringTable,
    StringTable,
    UnknownClass,
)


def make_registry(width=8):
    return ClassRegistry(IdentifierWidth(width))


# ---------------------------------------------------------------------------
# ClassRegistry
# ---------------------------------------------------------------------------

def test_instance_size_adds_superclass_chain():
    classes = make_registry()
    classes.record_class_dump(1, None, [(100, FieldType.OBJECT)])
    classes.record_class_dump(2, 1, [(101, FieldType.INT), (102, FieldType.BOOLEAN)])
    classes.record_class_dump(3, 2, [(103, FieldType.LONG)])
    assert classes.instance_size(1) == 8
    assert classes.instance_size(2) == 8 + 4 + 1
    assert classes.instance_size(3) == 8 + 4 + 1 + 8


def test_object_fields_follow_identifier_width():
    classes = make_registry(width=4)
    classes.record_class_dump(1, 0, [(100, FieldType.OBJECT), (101, FieldType.SHORT)])
    assert classes.instance_size(1) == 6


def test_layout_lists_own_fields_before_superclass_fields():
    classes = make_registry()
    classes.record_class_dump(1, None, [(100, FieldType.INT)])
    classes.record_class_dump(2, 1, [(200, FieldType.CHAR), (201, FieldType.DOUBLE)])
    layout = classes.layout(2)
    assert [f.name_id for f in layout] == [200, 201, 100]
    assert [f.width for f in layout] == [2, 8, 4]


def test_zero_superclass_means_root():
    classes = make_registry()
    entry = classes.record_class_dump(5, 0, [])
    assert entry.superclass_id is None
    assert classes.instance_size(5) == 0


def test_load_class_stub_has_no_layout():
    classes = make_registry()
    classes.record_load_class(7, name_string_id=70, class_serial=1)
    assert 7 in classes
    assert not classes.lookup(7).complete
    with pytest.raises(UnknownClass) as info:
        classes.instance_size(7)
    assert info.value.class_id == 7
    assert not info.value.fatal


def test_missing_superclass_is_unknown_class():
    classes = make_registry()
    classes.record_class_dump(2, 1, [(101, FieldType.INT)])
    with pytest.raises(UnknownClass) as info:
        classes.layout(2)
    assert info.value.class_id == 1


def test_lookup_unknown_class():
    classes = make_registry()
    assert classes.get(42) is None
    with pytest.raises(UnknownClass):
        classes.lookup(42)


def test_load_class_then_class_dump_completes_entry():
    classes = make_registry()
    classes.record_load_class(7, name_string_id=70, class_serial=3, stack_trace_serial=9)
    classes.record_class_dump(7, None, [(1, FieldType.INT)], vm_instance_size=16)
    entry = classes.lookup(7)
    assert entry.complete
    assert entry.name_string_id == 70
    assert entry.vm_instance_size == 16
    assert classes.by_serial(3) is entry
    assert classes.by_serial(4) is None
    assert len(classes) == 1
    assert list(classes) == [entry]


def test_identical_class_dump_is_accepted():
    classes = make_registry()
    first = classes.record_class_dump(1, None, [(100, FieldType.INT)])
    second = classes.record_class_dump(1, None, [(100, FieldType.INT)])
    assert first is second


def test_class_dump_with_different_fields_is_rejected():
    classes = make_registry()
    classes.record_class_dump(1, None, [(100, FieldType.INT)])
    with pytest.raises(InconsistentClassDefinition):
        classes.record_class_dump(1, None, [(100, FieldType.LONG)])
    # first definition stays in force
    assert classes.instance_size(1) == 4


def test_class_dump_with_different_superclass_is_rejected():
    classes = make_registry()
    classes.record_class_dump(1, None, [])
    classes.record_class_dump(2, 1, [])
    with pytest.raises(InconsistentClassDefinition):
        classes.record_class_dump(2, None, [])


def test_load_class_rename_is_rejected():
    classes = make_registry()
    classes.record_load_class(7, name_string_id=70)
    classes.record_load_class(7, name_string_id=70)
    with pytest.raises(InconsistentClassDefinition):
        classes.record_load_class(7, name_string_id=71)


def test_superclass_cycle_is_reported():
    classes = make_registry()
    classes.record_class_dump(1, 2, [])
    classes.record_class_dump(2, 1, [])
    with pytest.raises(InconsistentClassDefinition):
        classes.instance_size(1)


# ---------------------------------------------------------------------------
# StringTable
# ---------------------------------------------------------------------------

def test_string_table_insert_and_get():
    strings = StringTable()
    strings.insert(1, b"abc")
    assert strings.get(1) == b"abc"
    assert 1 in strings
    assert len(strings) == 1


def test_string_table_unknown_id():
    assert StringTable().get(99) is None
    assert StringTable().text(99) is None


def test_string_table_duplicate_identical_bytes():
    strings = StringTable()
    strings.insert(1, b"abc")
    strings.insert(1, memoryview(b"abc"))
    assert strings.get(1) == b"abc"


def test_string_table_duplicate_different_bytes():
    strings = StringTable()
    strings.insert(1, b"abc")
    with pytest.raises(InconsistentStringTable) as info:
        strings.insert(1, b"abd")
    assert info.value.string_id == 1
    assert strings.get(1) == b"abc"


def test_string_table_text_tolerates_invalid_utf8():
    strings = StringTable()
    strings.insert(7, b"\xff\xfeA")
    assert strings.get(7) == b"\xff\xfeA"
    assert strings.text(7).endswith("A")
    assert strings.text(7, encoding="latin-1") == "\xff\xfeA"
