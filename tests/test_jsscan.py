"""Tests for the JavaScript scanning helpers."""

from vidresolve.core.jsscan import cut_after_js, iter_identifiers, read_expression


def test_cut_after_js_balances_nested_brackets() -> None:
    text = '{"a":[1,{"b":2}],"c":"x"};var rest=1;'
    assert cut_after_js(text) == '{"a":[1,{"b":2}],"c":"x"}'


def test_cut_after_js_ignores_brackets_in_strings_and_comments() -> None:
    text = '{"a":"}{","b":\'}\',c:`}`/* } */,d:1// }\n};tail'
    assert cut_after_js(text) == text[:text.index(";tail")]


def test_cut_after_js_skips_regex_literals() -> None:
    text = "{a:/[}]+\\//g,b:1}x"
    assert cut_after_js(text) == "{a:/[}]+\\//g,b:1}"


def test_cut_after_js_treats_slash_after_value_as_division() -> None:
    text = "(a/2)+(b/3)"
    assert cut_after_js(text) == "(a/2)"


def test_cut_after_js_rejects_unterminated_or_non_bracket_input() -> None:
    assert cut_after_js('{"a":1') is None
    assert cut_after_js("abc") is None
    assert cut_after_js("") is None


def test_read_expression_stops_at_top_level_separator() -> None:
    script = 'var XY="a;b,c".split(" "),other=2;'
    start = script.index("=") + 1
    assert read_expression(script, start) == '"a;b,c".split(" ")'


def test_iter_identifiers_marks_properties_and_keys() -> None:
    source = 'var H={Xu:function(a){a.reverse()}};H.Xu(b,"q w")'
    found = list(iter_identifiers(source))
    assert ("Xu", True) in found
    assert ("reverse", True) in found
    assert ("H", False) in found
    assert ("b", False) in found
    assert not any(name in ("q", "w") for name, _ in found)
