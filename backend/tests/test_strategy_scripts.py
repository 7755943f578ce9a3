from __future__ import annotations

import time

import pytest

from efinance_signals.services.script_ast import NumberNode, UnaryNode

from efinance_signals.services.script_errors import ScriptError, ScriptParseError
from efinance_signals.services.script_expression import EvaluationContext
from efinance_signals.services.strategy_presets import (
    LEGACY_COMBINED_TEMPLATES,
    PRESET_TEMPLATES,
    customize_preset,
    get_preset,
    list_presets,
)
from efinance_signals.services.strategy_scripts import (
    CompiledScript,
    StrategyScriptPair,
    compile,
    evaluate,
    evaluate_combined_script,
    evaluate_strategy_scripts,
    run_strategy,
)


def _rsi_25_context() -> EvaluationContext:
    # Seven +1 and seven -3 moves give RSI(14) == 25.
    prices = [100.0]
    for _ in range(7):
        prices.append(prices[-1] + 1)
        prices.append(prices[-1] - 3)
    return EvaluationContext.create("RSI", price=prices[-1], change=-0.03, closes=prices)


def _golden_cross_context() -> EvaluationContext:
    closes = [10.0] * 24 + [20.0]
    return EvaluationContext.create("CROSS", price=20.0, change=1.0, closes=closes)


def test_rsi_buy_script_fires() -> None:
    result = evaluate("rsi(14) < 30", _rsi_25_context())
    assert result.error is None
    assert result.buy_signal is True
    assert result.sell_signal is False


def test_single_numeric_script_surfaces_value() -> None:
    result = evaluate("rsi(14)", _rsi_25_context())
    assert result.value == pytest.approx(25.0)

    boolean = evaluate("rsi(14) < 30", _rsi_25_context())
    assert boolean.value is None


def test_sell_side_evaluation() -> None:
    result = evaluate("rsi(14) < 30", _rsi_25_context(), side="sell")
    assert result.buy_signal is False
    assert result.sell_signal is True


def test_unknown_function_reports_error() -> None:
    result = evaluate("foo(5) > 1", _rsi_25_context())
    assert result.error is not None
    assert "foo" in result.error
    assert result.buy_signal is False
    assert result.sell_signal is False


def test_parse_error_is_captured() -> None:
    result = evaluate("rsi(14) <", _rsi_25_context())
    assert result.error is not None
    assert "position" in result.error
    assert result.buy_signal is False


def test_divide_by_zero_is_not_an_error() -> None:
    result = evaluate("1/0 > 0", _rsi_25_context())
    assert result.error is None
    assert result.buy_signal is False


def test_buy_error_takes_priority() -> None:
    result = evaluate_strategy_scripts(
        'abs("x") > 0', "sma(1, 2) > 0", _rsi_25_context()
    )
    assert result.error is not None
    assert "abs" in result.error
    assert result.buy_signal is False
    assert result.sell_signal is False


def test_pair_with_both_scripts_has_no_value() -> None:
    pair = StrategyScriptPair.compile("rsi(14)", "rsi(14) > 70")
    result = run_strategy(pair, _rsi_25_context())
    assert result.value is None
    assert result.buy_signal is True
    assert result.sell_signal is False


def test_absent_scripts_are_skipped() -> None:
    pair = StrategyScriptPair.compile(None, "  ")
    assert pair.buy_expression is None
    assert pair.sell_expression is None
    result = run_strategy(pair, _rsi_25_context())
    assert result.buy_signal is False
    assert result.sell_signal is False
    assert result.error is None


def test_compile_rejects_unknown_names_up_front() -> None:
    with pytest.raises(ScriptError):
        compile("false and foo(1)")
    with pytest.raises(ScriptParseError):
        compile("")


def test_compiled_script_keeps_ast() -> None:
    compiled = compile("a = sma(3)\na > 1")
    assert compiled.to_dict()["type"] == "CMP"
    assert compiled.to_dict()["left"] == {
        "type": "CALL",
        "name": "sma",
        "args": [{"type": "NUMBER", "value": 3.0}],
    }


def test_every_preset_compiles() -> None:
    assert len(PRESET_TEMPLATES) == 8
    for preset in list_presets():
        StrategyScriptPair.compile(preset.buy_script, preset.sell_script)


def test_preset_default_scripts() -> None:
    dual = get_preset("double_ma_cross")
    assert dual is not None
    assert dual.buy_script == "sma(5) > sma(20) and sma(5)[1] <= sma(20)[1]"

    bands = get_preset("bollinger_bands")
    assert bands is not None
    assert bands.buy_script == "close <= bb_lower(20, 2)"
    assert get_preset("missing") is None


def test_double_ma_preset_detects_golden_cross() -> None:
    preset = get_preset("double_ma_cross")
    assert preset is not None
    result = evaluate_strategy_scripts(
        preset.buy_script, preset.sell_script, _golden_cross_context()
    )
    assert result.error is None
    assert result.buy_signal is True
    assert result.sell_signal is False


def test_customize_preset_renders_parameters() -> None:
    custom = customize_preset("rsi_oversold_overbought", period=7, oversold=25)
    assert custom.buy_script == "rsi(7) < 25"
    assert custom.sell_script == "rsi(7) > 70"

    bands = customize_preset("bollinger_bands", mult=2.5)
    assert bands.buy_script == "close <= bb_lower(20, 2.5)"
    compile(bands.buy_script)


@pytest.mark.parametrize(
    "key, params",
    [
        ("missing", {}),
        ("rsi_oversold_overbought", {"nope": 3}),
        ("rsi_oversold_overbought", {"period": 0}),
        ("rsi_oversold_overbought", {"period": 7.5}),
        ("double_ma_cross", {"short": -5}),
    ],
)
def test_customize_preset_validation(key: str, params: dict) -> None:
    with pytest.raises(ScriptError):
        customize_preset(key, **params)


def test_legacy_combined_templates_compile() -> None:
    for text in LEGACY_COMBINED_TEMPLATES.values():
        pair = StrategyScriptPair.from_combined_script(text)
        assert pair.buy_expression is not None
        assert pair.sell_expression is not None


def test_legacy_dual_ma_detects_cross() -> None:
    pair = StrategyScriptPair.from_combined_script(LEGACY_COMBINED_TEMPLATES["dual_ma"])
    result = run_strategy(pair, _golden_cross_context())
    assert result.error is None
    assert result.buy_signal is True
    assert result.sell_signal is False


def test_combined_script_requires_buy_or_sell() -> None:
    with pytest.raises(ScriptParseError):
        StrategyScriptPair.from_combined_script("x = close\nx > 1")


def test_combined_script_evaluation() -> None:
    result = evaluate_combined_script(
        LEGACY_COMBINED_TEMPLATES["dual_ma"], _golden_cross_context()
    )
    assert result.error is None
    assert result.buy_signal is True

    broken = evaluate_combined_script("x = close\nx > 1", _golden_cross_context())
    assert broken.buy_signal is False
    assert broken.error is not None and "buy" in broken.error


def test_deeply_nested_script_reports_error() -> None:
    ctx = _rsi_25_context()
    result = evaluate("(" * 2000 + "close" + ")" * 2000 + " > 1", ctx)
    assert result.buy_signal is False
    assert result.error is not None and "nested too deeply" in result.error

    pair = evaluate_strategy_scripts("close > 1", "-" * 3000 + "1 > 0", ctx)
    assert pair.buy_signal is False
    assert pair.error is not None and "nested too deeply" in pair.error


def test_hand_built_tree_too_deep_to_walk_reports_error() -> None:
    node = NumberNode(1)
    for _ in range(5000):
        node = UnaryNode("-", node)
    pair = StrategyScriptPair(buy_expression=CompiledScript(source="deep", expression=node))

    result = run_strategy(pair, _rsi_25_context())
    assert result.buy_signal is False
    assert result.error is not None


def test_doubling_assignments_stay_fast() -> None:
    lines = ["a0 = close"] + [f"a{i} = a{i - 1} + a{i - 1}" for i in range(1, 21)]
    ctx = _golden_cross_context()

    started = time.perf_counter()
    small = evaluate("\n".join(lines[:13] + ["a12 > 0"]), ctx)
    large = evaluate("\n".join(lines + ["a20 > 0"]), ctx)
    elapsed = time.perf_counter() - started

    assert small.error is None
    assert small.buy_signal is True
    assert large.error is not None and "too large" in large.error
    assert elapsed < 0.5


def test_customize_preset_renders_small_values_without_exponent() -> None:
    custom = customize_preset("mean_reversion", threshold=0.00001)
    assert custom.buy_script == "(close - sma(20)) / sma(20) < -0.00001"
    assert custom.sell_script == "(close - sma(20)) / sma(20) > 0.00001"
    assert compile(custom.buy_script).expression is not None

    ratio = customize_preset("price_volume_breakout", volume_ratio=1.25)
    assert ratio.buy_script.endswith("* 1.25")
