from segmenter import physical_lines, segment_source, split_statements


def test_splits_on_top_level_separators():
    assert split_statements("A=1;B=2") == ["A=1", "B=2"]


def test_separator_inside_parentheses_does_not_split():
    assert split_statements("A=1;B=(C=2;D=3)") == ["A=1", "B=(C=2;D=3)"]


def test_separator_inside_string_does_not_split():
    assert split_statements('?"a;b";C=1') == ['?"a;b"', "C=1"]


def test_escaped_quote_keeps_string_open():
    assert split_statements('?"a\\";b";X') == ['?"a\\";b"', "X"]


def test_parentheses_inside_string_are_ignored():
    assert split_statements('?"(";A=1') == ['?"("', "A=1"]


def test_unmatched_close_paren_does_not_go_negative():
    assert split_statements("A=1);B=2") == ["A=1)", "B=2"]


def test_trailing_separator_emits_empty_remainder():
    assert split_statements("A=1;") == ["A=1", ""]
    assert split_statements("") == [""]


def test_physical_lines_strip_carriage_returns():
    assert physical_lines("A=1\r\nB=2\n") == ["A=1", "B=2"]
    assert physical_lines("") == []
    assert physical_lines("\n") == [""]


def test_open_parenthesis_does_not_span_physical_lines():
    assert segment_source("A=(1;\n2);B") == ["A=(1;", "2)", "B"]


def test_segment_source_numbers_lines_in_order():
    assert segment_source("A=1;B=2\nC=3\n") == ["A=1", "B=2", "C=3"]
