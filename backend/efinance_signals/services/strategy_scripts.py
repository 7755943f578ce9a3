from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from efinance_signals.services.script_ast import ExprNode, node_to_dict
from efinance_signals.services.script_dsl import ScriptProgram, parse_script_cached
from efinance_signals.services.script_errors import ScriptError, ScriptParseError
from efinance_signals.services.script_expression import (
    EvaluationContext,
    check_names,
    evaluate_expression,
    is_truthy,
)

logger = logging.getLogger(__name__)

# Arithmetic failures that can escape the tree walk (e.g. float overflow in
# `ema(...) * 1e308`) are reported like script errors, as is a hand-built
# tree too deep to walk.
_EVAL_ERRORS: Tuple[type[BaseException], ...] = (
    ScriptError,
    OverflowError,
    ValueError,
    RecursionError,
)


@dataclass(frozen=True)
class CompiledScript:
    """A script's final expression with local assignments already inlined."""

    source: str
    expression: ExprNode

    def to_dict(self) -> dict:
        return node_to_dict(self.expression)


@dataclass(frozen=True)
class EvaluationResult:
    buy_signal: bool = False
    sell_signal: bool = False
    value: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str) -> "EvaluationResult":
        return cls(buy_signal=False, sell_signal=False, value=None, error=error)


def _compiled_from_node(source: str, node: ExprNode) -> CompiledScript:
    check_names(node)
    return CompiledScript(source=source, expression=node)


def compile(script_text: str) -> CompiledScript:  # noqa: A001
    """Parse `script_text` and validate every name it references.

    Raises `ScriptParseError` on malformed syntax and `UnknownSymbolError`
    for names that are not builtins. Parsing is memoized by script text.
    """

    text = (script_text or "").strip()
    if not text:
        raise ScriptParseError("Empty script", position=0, script=script_text)
    program: ScriptProgram = parse_script_cached(text)
    return _compiled_from_node(text, program.result)


@dataclass(frozen=True)
class StrategyScriptPair:
    buy_expression: Optional[CompiledScript] = None
    sell_expression: Optional[CompiledScript] = None

    @classmethod
    def compile(
        cls, buy_script: Optional[str], sell_script: Optional[str]
    ) -> "StrategyScriptPair":
        """Compile a buy/sell pair; blank scripts stay absent."""

        buy = compile(buy_script) if (buy_script or "").strip() else None
        sell = compile(sell_script) if (sell_script or "").strip() else None
        return cls(buy_expression=buy, sell_expression=sell)

    @classmethod
    def from_combined_script(cls, text: str) -> "StrategyScriptPair":
        """Compile the one-script form whose `buy = ...` / `sell = ...` lines
        name the two conditions. Other assignments act as shared locals.
        """

        source = (text or "").strip()
        if not source:
            raise ScriptParseError("Empty script", position=0, script=text)
        program = parse_script_cached(source)
        buy_node = program.bindings.get("buy")
        sell_node = program.bindings.get("sell")
        if buy_node is None and sell_node is None:
            raise ScriptParseError(
                "Combined script must assign 'buy' or 'sell'", script=source
            )
        return cls(
            buy_expression=_compiled_from_node(source, buy_node) if buy_node else None,
            sell_expression=_compiled_from_node(source, sell_node) if sell_node else None,
        )


def _run_one(
    compiled: CompiledScript, context: EvaluationContext
) -> Tuple[bool, object, Optional[str]]:
    try:
        value = evaluate_expression(compiled.expression, context)
    except _EVAL_ERRORS as exc:
        logger.debug(
            "Script evaluation failed",
            extra={
                "extra": {
                    "symbol": context.symbol,
                    "script": compiled.source,
                    "error": str(exc),
                }
            },
        )
        return False, None, str(exc)
    return is_truthy(value), value, None


def run_strategy(pair: StrategyScriptPair, context: EvaluationContext) -> EvaluationResult:
    """Run both sides of `pair` against one context.

    Absent scripts yield a false signal. If both sides fail the buy error is
    reported. A numeric result is surfaced in `value` only when exactly one
    script ran.
    """

    ran = 0
    signals = {"buy": False, "sell": False}
    last_value: object = None
    first_error: Optional[str] = None

    for side, compiled in (("buy", pair.buy_expression), ("sell", pair.sell_expression)):
        if compiled is None:
            continue
        ran += 1
        signal, value, error = _run_one(compiled, context)
        if error is not None:
            first_error = first_error or error
            continue
        signals[side] = signal
        last_value = value

    if first_error is not None:
        return EvaluationResult.failed(first_error)

    value: Optional[float] = None
    if ran == 1 and isinstance(last_value, (int, float)) and not isinstance(last_value, bool):
        value = float(last_value)
    return EvaluationResult(
        buy_signal=signals["buy"], sell_signal=signals["sell"], value=value
    )


def evaluate(
    script_text: str, context: EvaluationContext, *, side: str = "buy"
) -> EvaluationResult:
    """Compile and run a single script as the buy (default) or sell side."""

    if side not in {"buy", "sell"}:
        raise ValueError("side must be 'buy' or 'sell'")
    try:
        compiled = compile(script_text)
    except ScriptError as exc:
        return EvaluationResult.failed(str(exc))
    pair = (
        StrategyScriptPair(buy_expression=compiled)
        if side == "buy"
        else StrategyScriptPair(sell_expression=compiled)
    )
    return run_strategy(pair, context)


def evaluate_strategy_scripts(
    buy_script: Optional[str],
    sell_script: Optional[str],
    context: EvaluationContext,
) -> EvaluationResult:
    try:
        pair = StrategyScriptPair.compile(buy_script, sell_script)
    except ScriptError as exc:
        return EvaluationResult.failed(str(exc))
    return run_strategy(pair, context)


def evaluate_combined_script(script_text: str, context: EvaluationContext) -> EvaluationResult:
    """Compile and run a one-script strategy that assigns `buy` and `sell`."""

    try:
        pair = StrategyScriptPair.from_combined_script(script_text)
    except ScriptError as exc:
        return EvaluationResult.failed(str(exc))
    return run_strategy(pair, context)


__all__ = [
    "CompiledScript",
    "EvaluationResult",
    "StrategyScriptPair",
    "compile",
    "evaluate",
    "evaluate_combined_script",
    "evaluate_strategy_scripts",
    "run_strategy",
]
