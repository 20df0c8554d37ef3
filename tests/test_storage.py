import math

from storage import (
    MAX_ARRAY_SIZE,
    TYPE_UNDEF,
    UNDEFINED,
    ArrayStore,
    Program,
    VariableStore,
    format_number,
    number,
    render_value,
    string,
    to_index,
    to_int,
    to_number,
    to_string,
    var_index,
    var_name,
)


def test_string_to_number_uses_leading_prefix():
    assert to_number(string("  12.5abc")) == 12.5
    assert to_number(string("-3e2x")) == -300.0
    assert to_number(string("abc")) == 0.0
    assert to_number(UNDEFINED) == 0.0


def test_number_formatting_matches_fifteen_significant_digits():
    assert format_number(3.0) == "3"
    assert format_number(0.1) == "0.1"
    assert format_number(1e20) == "1e+20"
    assert format_number(1 / 3) == "0.333333333333333"
    assert to_string(number(-2.5)) == "-2.5"
    assert to_string(UNDEFINED) == "0"


def test_index_conversion_truncates_and_clamps():
    assert to_int(2.9) == 2
    assert to_int(-2.9) == -2
    assert to_int(math.nan) == 0
    assert to_index(number(-3)) == 0
    assert to_index(number(math.nan)) == 0
    assert to_index(number(7.8)) == 7


def test_variable_names_map_to_27_slots():
    assert var_index("A") == 0
    assert var_index("Z") == 25
    assert var_index("_") == 26
    assert var_name(26) == "_"
    assert var_name(2) == "C"


def test_variable_store_lists_defined_slots_in_order():
    store = VariableStore()
    store.set(var_index("_"), string("u"))
    store.set(var_index("B"), number(2))
    assert [name for name, _ in store.defined()] == ["B", "_"]
    assert store.snapshot() == {"B": "2", "_": '"u"'}
    store.undefine(var_index("B"))
    assert store.get(var_index("B")).type == TYPE_UNDEF
    assert not store.is_defined(var_index("B"))


def test_render_value():
    assert render_value(number(5)) == "5"
    assert render_value(string("hi")) == '"hi"'
    assert render_value(UNDEFINED) == "undefined"


def test_array_grows_on_write_only():
    array = ArrayStore()
    assert len(array) == 0
    array.set(5, 1.5)
    assert len(array) == 6
    assert array.get(5) == 1.5
    assert array.get(2) == 0.0
    assert array.get(100) == 0.0
    assert len(array) == 6


def test_array_keeps_values_across_growth():
    array = ArrayStore()
    for i in range(40):
        array.set(i, float(i * i))
    assert len(array) == 40
    assert array.get(39) == 39.0 * 39.0
    assert array.head(3) == [0.0, 1.0, 4.0]


def test_array_negative_index_targets_first_element():
    array = ArrayStore()
    array.set(-4, 2.0)
    assert array.get(0) == 2.0
    assert array.get(-1) == 2.0


def test_array_bound():
    array = ArrayStore()
    assert array.in_range(MAX_ARRAY_SIZE - 1)
    assert not array.in_range(MAX_ARRAY_SIZE)
    array.clear()
    assert len(array) == 0


def test_program_numbering_is_one_based():
    program = Program()
    assert program.append(["A=1", "B=2"]) == 1
    assert program.append(["C=3"]) == 3
    assert len(program) == 3
    assert program.line(3) == "C=3"
    assert list(program) == ["A=1", "B=2", "C=3"]
    program.clear()
    assert len(program) == 0
