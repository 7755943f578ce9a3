from __future__ import annotations

import pytest

from efinance_signals.services.script_ast import (
    BinaryNode,
    CallNode,
    ComparisonNode,
    IdentNode,
    IndexNode,
    LogicalNode,
    NotNode,
    NumberNode,
    StringNode,
    UnaryNode,
    dumps_ast,
    loads_ast,
)
from efinance_signals.services.script_dsl import parse_expression, parse_script
from efinance_signals.services.script_errors import ScriptError, ScriptParseError


def test_arithmetic_precedence() -> None:
    node = parse_expression("1 + 2 * 3")
    assert node == BinaryNode(
        "+", NumberNode(1), BinaryNode("*", NumberNode(2), NumberNode(3))
    )


def test_logical_precedence_and_aliases() -> None:
    node = parse_expression("close > 1 and close < 5 or change > 0")
    assert isinstance(node, LogicalNode)
    assert node.op == "OR"
    assert isinstance(node.children[0], LogicalNode)
    assert node.children[0].op == "AND"

    aliased = parse_expression("close > 1 && !(close > 2)")
    assert isinstance(aliased, LogicalNode)
    assert aliased.op == "AND"
    assert isinstance(aliased.children[1], NotNode)


def test_not_binds_looser_than_comparison() -> None:
    node = parse_expression("not close > 10")
    assert node == NotNode(ComparisonNode(">", IdentNode("close"), NumberNode(10)))


def test_calls_index_and_unary_minus() -> None:
    node = parse_expression("sma(5)[1] <= -sma(20)")
    assert isinstance(node, ComparisonNode)
    assert node.left == IndexNode(CallNode("sma", [NumberNode(5)]), 1)
    assert node.right == UnaryNode("-", CallNode("sma", [NumberNode(20)]))


def test_names_and_keywords_are_case_insensitive() -> None:
    node = parse_expression("RSI(14) < 30 AND Close > 1")
    assert isinstance(node, LogicalNode)
    assert node.children[0] == ComparisonNode(
        "<", CallNode("rsi", [NumberNode(14)]), NumberNode(30)
    )
    assert node.children[1] == ComparisonNode(">", IdentNode("close"), NumberNode(1))


def test_strings_and_comments() -> None:
    node = parse_expression('// only one symbol\nsymbol == "600519"')
    assert node == ComparisonNode("==", IdentNode("symbol"), StringNode("600519"))


def test_multiline_call_arguments() -> None:
    node = parse_expression("macd(\n  12,\n  26,\n  9\n) > 0")
    assert isinstance(node, ComparisonNode)
    assert node.left == CallNode(
        "macd", [NumberNode(12), NumberNode(26), NumberNode(9)]
    )


def test_assignments_are_inlined() -> None:
    program = parse_script("a = sma(3)\nb = a * 2; b > 1")
    expected_a = CallNode("sma", [NumberNode(3)])
    assert program.bindings["a"] == expected_a
    assert program.result == ComparisonNode(
        ">", BinaryNode("*", expected_a, NumberNode(2)), NumberNode(1)
    )


def test_parse_error_at_end_reports_text_length() -> None:
    with pytest.raises(ScriptParseError) as exc_info:
        parse_script("rsi(14) < ")
    assert exc_info.value.position == 10
    assert "position 10" in str(exc_info.value)


def test_unknown_character_reports_position() -> None:
    with pytest.raises(ScriptParseError) as exc_info:
        parse_script("close > $5")
    assert exc_info.value.position == 8
    assert exc_info.value.token == "$"


def test_single_equals_in_expression_is_rejected() -> None:
    with pytest.raises(ScriptParseError) as exc_info:
        parse_script("rsi(14) = 30")
    assert exc_info.value.position == 8
    assert "==" in str(exc_info.value)


def test_unbalanced_and_trailing_tokens() -> None:
    with pytest.raises(ScriptParseError):
        parse_script("(close > 1")
    with pytest.raises(ScriptParseError) as exc_info:
        parse_script("close > 1 2")
    assert exc_info.value.position == 10


def test_fractional_history_offset_is_rejected() -> None:
    with pytest.raises(ScriptParseError):
        parse_script("sma(5)[1.5] > 0")


def test_empty_script_is_rejected() -> None:
    with pytest.raises(ScriptParseError):
        parse_script("   \n// nothing here\n")


def test_ast_json_round_trip() -> None:
    node = parse_expression("sma(5)[1] > 2 and not symbol == 'X'")
    assert loads_ast(dumps_ast(node)) == node


def test_loads_ast_rejects_bad_payloads() -> None:
    with pytest.raises(ScriptError):
        loads_ast("not json")
    with pytest.raises(ScriptError):
        loads_ast('{"type": "NOPE"}')


def test_moderate_nesting_still_parses() -> None:
    node = parse_expression("(" * 30 + "close" + ")" * 30 + " > 1")
    assert node == ComparisonNode(">", IdentNode("close"), NumberNode(1))


def test_deeply_nested_parentheses_are_rejected() -> None:
    text = "(" * 2000 + "close" + ")" * 2000 + " > 1"
    with pytest.raises(ScriptParseError) as exc_info:
        parse_script(text)
    assert "nested too deeply" in str(exc_info.value)
    assert exc_info.value.position == 64


@pytest.mark.parametrize("text", ["-" * 3000 + "1 > 0", "not " * 500 + "close > 1"])
def test_long_prefix_operator_chains_are_rejected(text: str) -> None:
    with pytest.raises(ScriptParseError) as exc_info:
        parse_script(text)
    assert "nested too deeply" in str(exc_info.value)
    assert exc_info.value.position is not None


def test_long_operator_chain_is_rejected() -> None:
    with pytest.raises(ScriptParseError) as exc_info:
        parse_script("close" + " + 1" * 150 + " > 0")
    assert "nested too deeply" in str(exc_info.value)
    assert exc_info.value.position == 0


def test_assignments_that_expand_too_far_are_rejected() -> None:
    lines = ["a0 = close"] + [f"a{i} = a{i - 1} + a{i - 1}" for i in range(1, 21)]
    with pytest.raises(ScriptParseError) as exc_info:
        parse_script("\n".join(lines + ["a20 > 0"]))
    assert "too large" in str(exc_info.value)


def test_loads_ast_rejects_deep_payloads() -> None:
    deep = '{"type": "NOT", "child": ' * 5000 + '{"type": "NUMBER", "value": 1}' + "}" * 5000
    with pytest.raises(ScriptError):
        loads_ast(deep)
    nested = '{"type": "NOT", "child": ' * 200 + '{"type": "NUMBER", "value": 1}' + "}" * 200
    with pytest.raises(ScriptError) as exc_info:
        loads_ast(nested)
    assert "nested too deeply" in str(exc_info.value)
