from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Tuple

from efinance_signals.services.script_errors import ScriptError
from efinance_signals.services.strategy_scripts import compile as compile_script


@dataclass(frozen=True)
class PresetTemplate:
    """A canned buy/sell script pair.

    `buy_template` / `sell_template` use `str.format` placeholders named after
    the keys of `parameters`; rendering them with the defaults reproduces
    `buy_script` / `sell_script` exactly.
    """

    key: str
    name: str
    description: str
    buy_script: str
    sell_script: str
    parameters: Mapping[str, float] = field(default_factory=dict)
    buy_template: str = ""
    sell_template: str = ""


def _format_number(value: float) -> str:
    number = float(value)
    if number.is_integer():
        return str(int(number))
    # Scripts have no exponent syntax, so 1e-05 must render as 0.00001.
    return format(Decimal(repr(number)), "f")


def _preset(
    key: str,
    name: str,
    description: str,
    buy_template: str,
    sell_template: str,
    **parameters: float,
) -> PresetTemplate:
    rendered = {k: _format_number(v) for k, v in parameters.items()}
    return PresetTemplate(
        key=key,
        name=name,
        description=description,
        buy_script=buy_template.format(**rendered),
        sell_script=sell_template.format(**rendered),
        parameters=dict(parameters),
        buy_template=buy_template,
        sell_template=sell_template,
    )


PRESET_TEMPLATES: Tuple[PresetTemplate, ...] = (
    _preset(
        "rsi_oversold_overbought",
        "RSI oversold/overbought",
        "Buy when RSI drops below the oversold level, sell above the overbought level.",
        "rsi({period}) < {oversold}",
        "rsi({period}) > {overbought}",
        period=14,
        oversold=30.0,
        overbought=70.0,
    ),
    _preset(
        "macd_golden_cross",
        "MACD golden/death cross",
        "Buy when the MACD line crosses above its signal line, sell on the cross below.",
        "macd({fast}, {slow}, {signal}) > macd_signal({fast}, {slow}, {signal}) "
        "and macd({fast}, {slow}, {signal})[1] <= macd_signal({fast}, {slow}, {signal})[1]",
        "macd({fast}, {slow}, {signal}) < macd_signal({fast}, {slow}, {signal}) "
        "and macd({fast}, {slow}, {signal})[1] >= macd_signal({fast}, {slow}, {signal})[1]",
        fast=12,
        slow=26,
        signal=9,
    ),
    _preset(
        "double_ma_cross",
        "Dual moving average cross",
        "Buy when the short SMA crosses above the long SMA, sell on the cross below.",
        "sma({short}) > sma({long}) and sma({short})[1] <= sma({long})[1]",
        "sma({short}) < sma({long}) and sma({short})[1] >= sma({long})[1]",
        short=5,
        long=20,
    ),
    _preset(
        "bollinger_bands",
        "Bollinger band touch",
        "Buy when price touches the lower band, sell when it touches the upper band.",
        "close <= bb_lower({period}, {mult})",
        "close >= bb_upper({period}, {mult})",
        period=20,
        mult=2.0,
    ),
    _preset(
        "kdj_oversold_overbought",
        "KDJ oversold/overbought",
        "Buy when K and D are both oversold, sell when both are overbought.",
        "kdj_k({period}, {k_smooth}, {d_smooth}) < {oversold} "
        "and kdj_d({period}, {k_smooth}, {d_smooth}) < {oversold}",
        "kdj_k({period}, {k_smooth}, {d_smooth}) > {overbought} "
        "and kdj_d({period}, {k_smooth}, {d_smooth}) > {overbought}",
        period=9,
        k_smooth=3,
        d_smooth=3,
        oversold=20.0,
        overbought=80.0,
    ),
    _preset(
        "price_volume_breakout",
        "Price/volume breakout",
        "Buy when price breaks the prior high on expanding volume, sell below the prior low.",
        "close > highest(high, {lookback})[1] "
        "and volume > sma(volume, {volume_period}) * {volume_ratio}",
        "close < lowest(low, {lookback})[1]",
        lookback=20,
        volume_period=10,
        volume_ratio=1.5,
    ),
    _preset(
        "mean_reversion",
        "Mean reversion",
        "Trade against large deviations of price from its moving average.",
        "(close - sma({period})) / sma({period}) < -{threshold}",
        "(close - sma({period})) / sma({period}) > {threshold}",
        period=20,
        threshold=0.05,
    ),
    _preset(
        "momentum_strategy",
        "Momentum",
        "Follow the trend when rate of change and RSI agree.",
        "roc({roc_period}) > {roc_threshold} and rsi({rsi_period}) > 50",
        "roc({roc_period}) < -{roc_threshold} and rsi({rsi_period}) < 50",
        roc_period=10,
        roc_threshold=5.0,
        rsi_period=14,
    ),
)

_PRESETS_BY_KEY: Dict[str, PresetTemplate] = {p.key: p for p in PRESET_TEMPLATES}

# Older single-script form: shared locals plus `buy = ...` / `sell = ...`.
LEGACY_COMBINED_TEMPLATES: Dict[str, str] = {
    "rsi_oversold_overbought": (
        "// RSI oversold/overbought\n"
        "rsi_value = rsi(prices, 14)\n"
        "buy = rsi_value < 30\n"
        "sell = rsi_value > 70\n"
    ),
    "macd_crossover": (
        "// MACD golden/death cross\n"
        "macd_line = macd(prices, 12, 26, 9)\n"
        "signal_line = macd_signal(prices, 12, 26, 9)\n"
        "buy = crossover(macd_line, signal_line)\n"
        "sell = crossunder(macd_line, signal_line)\n"
    ),
    "dual_ma": (
        "// Dual moving average\n"
        "ma5 = sma(prices, 5)\n"
        "ma20 = sma(prices, 20)\n"
        "buy = crossover(ma5, ma20)\n"
        "sell = crossunder(ma5, ma20)\n"
    ),
    "bollinger_bands": (
        "// Bollinger bands\n"
        "bb_up = bb_upper(prices, 20, 2)\n"
        "bb_low = bb_lower(prices, 20, 2)\n"
        "buy = price < bb_low\n"
        "sell = price > bb_up\n"
    ),
    "kdj_strategy": (
        "// KDJ\n"
        "k_value = kdj_k(highs, lows, prices, 9)\n"
        "d_value = kdj_d(highs, lows, prices, 9)\n"
        "buy = k_value < 20 && d_value < 20 && k_value > d_value\n"
        "sell = k_value > 80 && d_value > 80 && k_value < d_value\n"
    ),
}


def list_presets() -> List[PresetTemplate]:
    return list(PRESET_TEMPLATES)


def get_preset(key: str) -> Optional[PresetTemplate]:
    return _PRESETS_BY_KEY.get(key)


def customize_preset(key: str, **params: float) -> PresetTemplate:
    """Render a preset with some parameters overridden.

    Unknown keys, unknown parameter names and non-positive values raise
    `ScriptError`. Integer-valued defaults only accept whole numbers. The
    rendered scripts are compiled, so a preset that comes back always runs.
    """

    preset = get_preset(key)
    if preset is None:
        raise ScriptError(f"Unknown preset '{key}'")

    values: Dict[str, float] = dict(preset.parameters)
    for name, raw in params.items():
        if name not in preset.parameters:
            raise ScriptError(f"Preset '{key}' has no parameter '{name}'")
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise ScriptError(f"Parameter '{name}' must be a number")
        if raw <= 0:
            raise ScriptError(f"Parameter '{name}' must be positive")
        if isinstance(preset.parameters[name], int) and not float(raw).is_integer():
            raise ScriptError(f"Parameter '{name}' must be a whole number")
        values[name] = raw

    rendered = {name: _format_number(v) for name, v in values.items()}
    buy_script = preset.buy_template.format(**rendered)
    sell_script = preset.sell_template.format(**rendered)
    compile_script(buy_script)
    compile_script(sell_script)
    return PresetTemplate(
        key=preset.key,
        name=preset.name,
        description=preset.description,
        buy_script=buy_script,
        sell_script=sell_script,
        parameters=values,
        buy_template=preset.buy_template,
        sell_template=preset.sell_template,
    )


__all__ = [
    "LEGACY_COMBINED_TEMPLATES",
    "PRESET_TEMPLATES",
    "PresetTemplate",
    "customize_preset",
    "get_preset",
    "list_presets",
]
