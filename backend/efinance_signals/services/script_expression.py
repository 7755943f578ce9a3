from __future__ import annotations

from dataclasses import dataclass, field
from math import ceil, floor
from typing import Any, Callable, Dict, Hashable, List, Optional, Sequence, Tuple, Union

from efinance_signals.core.config import get_settings
from efinance_signals.services import indicators
from efinance_signals.services.script_ast import (
    BinaryNode,
    CallNode,
    ComparisonNode,
    ExprNode,
    IdentNode,
    IndexNode,
    LogicalNode,
    NotNode,
    NumberNode,
    StringNode,
    UnaryNode,
)
from efinance_signals.services.script_errors import (
    ArityError,
    ScriptError,
    UnknownSymbolError,
)

# -----------------------------------------------------------------------------
# Market snapshot
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Quote:
    price: float
    # Fractional change versus the previous close (0.05 == +5%).
    change: float


def _as_floats(values: Optional[Sequence[float]]) -> Optional[Tuple[float, ...]]:
    if values is None:
        return None
    return tuple(float(v) for v in values)


@dataclass(frozen=True)
class PriceSeries:
    """Chronological (oldest first) price history for one symbol.

    Companion series are optional but, when present, must be aligned with
    `closes` bar for bar. The last point is the current bar.
    """

    closes: Tuple[float, ...]
    highs: Optional[Tuple[float, ...]] = None
    lows: Optional[Tuple[float, ...]] = None
    volumes: Optional[Tuple[float, ...]] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "closes", _as_floats(self.closes) or ())
        for name in ("highs", "lows", "volumes"):
            values = _as_floats(getattr(self, name))
            object.__setattr__(self, name, values)
            if values is not None and len(values) != len(self.closes):
                raise ValueError(
                    f"{name} has {len(values)} points but closes has {len(self.closes)}"
                )

    def __len__(self) -> int:
        return len(self.closes)

    def shifted(self, bars: int) -> "PriceSeries":
        """Return the history as it looked `bars` bars ago."""

        if bars <= 0:
            return self
        end = max(len(self.closes) - bars, 0)

        def _cut(values: Optional[Tuple[float, ...]]) -> Optional[Tuple[float, ...]]:
            return values[:end] if values is not None else None

        return PriceSeries(
            closes=self.closes[:end],
            highs=_cut(self.highs),
            lows=_cut(self.lows),
            volumes=_cut(self.volumes),
        )


CacheKey = Tuple[str, Tuple[Hashable, ...], int]


@dataclass
class EvaluationContext:
    """Everything one script evaluation may read.

    `cache` memoizes builtin calls for this context only; build a fresh
    context for every symbol and cycle.
    """

    symbol: str
    quote: Quote
    series: PriceSeries
    cache: Dict[CacheKey, Any] = field(default_factory=dict)
    # Tolerance for numeric `==` and `!=`.
    epsilon: float = field(default_factory=lambda: get_settings().equality_epsilon)
    _shifted: Dict[int, PriceSeries] = field(default_factory=dict, repr=False)
    # Results of the evaluation in progress, keyed by (node id, bar offset).
    _values: Dict[Tuple[int, int], Any] = field(default_factory=dict, repr=False)

    @classmethod
    def create(
        cls,
        symbol: str,
        *,
        price: float,
        change: float,
        closes: Sequence[float] = (),
        highs: Optional[Sequence[float]] = None,
        lows: Optional[Sequence[float]] = None,
        volumes: Optional[Sequence[float]] = None,
    ) -> "EvaluationContext":
        return cls(
            symbol=symbol,
            quote=Quote(price=float(price), change=float(change)),
            series=PriceSeries(
                closes=tuple(closes),
                highs=_as_floats(highs),
                lows=_as_floats(lows),
                volumes=_as_floats(volumes),
            ),
        )

    def series_at(self, offset: int) -> PriceSeries:
        if offset <= 0:
            return self.series
        if offset not in self._shifted:
            self._shifted[offset] = self.series.shifted(offset)
        return self._shifted[offset]


# -----------------------------------------------------------------------------
# Runtime values
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class SeriesRef:
    """A named context series passed by reference into builtin calls."""

    name: str
    values: Tuple[float, ...]

    def key(self) -> Tuple[str, str, int]:
        return ("series", self.name, len(self.values))

    @property
    def latest(self) -> Optional[float]:
        return self.values[-1] if self.values else None


# None stands for "undefined": an indicator without enough history.
Value = Union[float, bool, str, SeriesRef, None]


def _close_at(ctx: EvaluationContext, offset: int) -> Optional[float]:
    if offset == 0:
        return ctx.quote.price
    closes = ctx.series.closes
    idx = len(closes) - 1 - offset
    return closes[idx] if idx >= 0 else None


def _change_at(ctx: EvaluationContext, offset: int) -> Optional[float]:
    if offset == 0:
        return ctx.quote.change
    now = _close_at(ctx, offset)
    prev = _close_at(ctx, offset + 1)
    if now is None or prev is None:
        return None
    return 0.0 if prev == 0 else (now - prev) / prev


def _change_percent_at(ctx: EvaluationContext, offset: int) -> Optional[float]:
    change = _change_at(ctx, offset)
    return None if change is None else change * 100.0


def _series_var(name: str, values: Optional[Tuple[float, ...]]) -> SeriesRef:
    return SeriesRef(name, values or ())


_BUILTIN_VARIABLES: Dict[str, Callable[[EvaluationContext, int], Value]] = {
    "close": _close_at,
    "price": _close_at,
    "change": _change_at,
    "change_percent": _change_percent_at,
    "prices": lambda ctx, off: _series_var("prices", ctx.series_at(off).closes),
    "highs": lambda ctx, off: _series_var("highs", ctx.series_at(off).highs),
    "lows": lambda ctx, off: _series_var("lows", ctx.series_at(off).lows),
    "volumes": lambda ctx, off: _series_var("volumes", ctx.series_at(off).volumes),
    # Pine-style singular aliases; in numeric positions they read the latest bar.
    "high": lambda ctx, off: _series_var("highs", ctx.series_at(off).highs),
    "low": lambda ctx, off: _series_var("lows", ctx.series_at(off).lows),
    "volume": lambda ctx, off: _series_var("volumes", ctx.series_at(off).volumes),
    "symbol": lambda ctx, off: ctx.symbol,
    "true": lambda ctx, off: True,
    "false": lambda ctx, off: False,
}


# -----------------------------------------------------------------------------
# Builtin functions
# -----------------------------------------------------------------------------


def _number(value: Value, what: str) -> Optional[float]:
    if isinstance(value, SeriesRef):
        return value.latest
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ArityError(f"{what} expects a number, got {_type_name(value)}")
    return float(value)


def _type_name(value: Value) -> str:
    if isinstance(value, SeriesRef):
        return "series"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, str):
        return "string"
    if value is None:
        return "undefined"
    return "number"


def _whole(value: Value, fn: str) -> Optional[int]:
    num = _number(value, fn)
    if num is None:
        return None
    if num != int(num):
        raise ArityError(f"{fn} expects whole-number periods, got {num}")
    return int(num)


@dataclass(frozen=True)
class _Builtin:
    # "close": optional leading series defaults to closes.
    # "hlc": optional leading highs, lows, closes default to the context's.
    # "none": plain numeric arguments.
    source: str
    min_args: int
    max_args: Optional[int]
    defaults: Tuple[float, ...]
    compute: Callable[..., Optional[float]]


def _latest_of(values: Sequence[Any], attr: Optional[str] = None) -> Optional[float]:
    point = indicators.latest(values)
    if point is None:
        return None
    return float(getattr(point, attr)) if attr else float(point)


def _round_half_up(x: float) -> float:
    return float(floor(x + 0.5))


_BUILTINS: Dict[str, _Builtin] = {
    "sma": _Builtin("close", 1, 1, (), lambda s, n: _latest_of(indicators.sma(s, n))),
    "ema": _Builtin("close", 1, 1, (), lambda s, n: _latest_of(indicators.ema(s, n))),
    "rsi": _Builtin("close", 0, 1, (14,), lambda s, n: _latest_of(indicators.rsi(s, n))),
    "roc": _Builtin("close", 1, 1, (), lambda s, n: _latest_of(indicators.roc(s, n))),
    "highest": _Builtin(
        "close", 1, 1, (), lambda s, n: _latest_of(indicators.highest(s, n))
    ),
    "lowest": _Builtin(
        "close", 1, 1, (), lambda s, n: _latest_of(indicators.lowest(s, n))
    ),
    "macd": _Builtin(
        "close",
        0,
        3,
        (12, 26, 9),
        lambda s, f, sl, sg: _latest_of(indicators.macd(s, f, sl, sg), "macd"),
    ),
    "macd_signal": _Builtin(
        "close",
        0,
        3,
        (12, 26, 9),
        lambda s, f, sl, sg: _latest_of(indicators.macd(s, f, sl, sg), "signal"),
    ),
    "macd_histogram": _Builtin(
        "close",
        0,
        3,
        (12, 26, 9),
        lambda s, f, sl, sg: _latest_of(indicators.macd(s, f, sl, sg), "histogram"),
    ),
    "bb_upper": _Builtin(
        "close",
        0,
        2,
        (20, 2.0),
        lambda s, n, m: _latest_of(indicators.bollinger_bands(s, n, m), "upper"),
    ),
    "bb_middle": _Builtin(
        "close",
        0,
        2,
        (20, 2.0),
        lambda s, n, m: _latest_of(indicators.bollinger_bands(s, n, m), "middle"),
    ),
    "bb_lower": _Builtin(
        "close",
        0,
        2,
        (20, 2.0),
        lambda s, n, m: _latest_of(indicators.bollinger_bands(s, n, m), "lower"),
    ),
    "kdj_k": _Builtin(
        "hlc",
        0,
        3,
        (9, 3, 3),
        lambda h, lo, c, n, ks, ds: _latest_of(indicators.kdj(h, lo, c, n, ks, ds), "k"),
    ),
    "kdj_d": _Builtin(
        "hlc",
        0,
        3,
        (9, 3, 3),
        lambda h, lo, c, n, ks, ds: _latest_of(indicators.kdj(h, lo, c, n, ks, ds), "d"),
    ),
    "kdj_j": _Builtin(
        "hlc",
        0,
        3,
        (9, 3, 3),
        lambda h, lo, c, n, ks, ds: _latest_of(indicators.kdj(h, lo, c, n, ks, ds), "j"),
    ),
    "wr": _Builtin(
        "hlc",
        0,
        1,
        (14,),
        lambda h, lo, c, n: _latest_of(indicators.williams_r(h, lo, c, n)),
    ),
    "abs": _Builtin("none", 1, 1, (), abs),
    "round": _Builtin("none", 1, 1, (), _round_half_up),
    "floor": _Builtin("none", 1, 1, (), lambda x: float(floor(x))),
    "ceil": _Builtin("none", 1, 1, (), lambda x: float(ceil(x))),
    "max": _Builtin("none", 1, None, (), lambda *xs: max(xs)),
    "min": _Builtin("none", 1, None, (), lambda *xs: min(xs)),
}

# Periods and smoothing lengths must be whole numbers; the Bollinger
# multiplier is the only fractional indicator parameter.
_FRACTIONAL_PARAMS = {("bb_upper", 1), ("bb_middle", 1), ("bb_lower", 1)}

_CROSS_FUNCTIONS = {"crossover", "crossunder"}

BUILTIN_FUNCTIONS = frozenset(_BUILTINS) | frozenset(_CROSS_FUNCTIONS)
BUILTIN_VARIABLES = frozenset(_BUILTIN_VARIABLES)


def _arity_message(name: str, spec: _Builtin) -> str:
    if spec.max_args is None:
        return f"{name} expects at least {spec.min_args} argument(s)"
    if spec.min_args == spec.max_args:
        return f"{name} expects {spec.min_args} argument(s)"
    return f"{name} expects {spec.min_args} to {spec.max_args} argument(s)"


def _split_sources(
    name: str, spec: _Builtin, args: List[Value], series: PriceSeries
) -> Tuple[Optional[List[Tuple[float, ...]]], List[Value]]:
    """Separate explicit series arguments from numeric parameters.

    Returns `None` sources when required history (highs/lows) is missing.
    """

    if spec.source == "close":
        if args and isinstance(args[0], SeriesRef):
            return [args[0].values], args[1:]
        return [series.closes], args

    # hlc: either all three series are passed explicitly or none is.
    explicit = [a for a in args[:3] if isinstance(a, SeriesRef)]
    if explicit:
        if len(explicit) != 3 or len(args) < 3:
            raise ArityError(f"{name} expects (highs, lows, closes, ...) series")
        sources = [a.values for a in args[:3]]  # type: ignore[union-attr]
        return sources, args[3:]
    if series.highs is None or series.lows is None:
        return None, args
    return [series.highs, series.lows, series.closes], args


def _call_builtin(
    name: str, spec: _Builtin, args: List[Value], series: PriceSeries
) -> Optional[float]:
    if spec.source == "none":
        if len(args) < spec.min_args or (
            spec.max_args is not None and len(args) > spec.max_args
        ):
            raise ArityError(_arity_message(name, spec))
        nums = [_number(a, name) for a in args]
        if any(n is None for n in nums):
            return None
        return float(spec.compute(*nums))

    sources, params = _split_sources(name, spec, args, series)
    if len(params) < spec.min_args or (
        spec.max_args is not None and len(params) > spec.max_args
    ):
        raise ArityError(_arity_message(name, spec))

    resolved: List[float] = []
    for idx in range(max(len(spec.defaults), len(params))):
        if idx < len(params):
            if (name, idx) in _FRACTIONAL_PARAMS:
                value = _number(params[idx], name)
            else:
                value = _whole(params[idx], name)
            if value is None:
                return None
            resolved.append(value)
        else:
            resolved.append(spec.defaults[idx])

    if sources is None:
        return None
    return spec.compute(*sources, *resolved)


def _arg_key(value: Value) -> Hashable:
    if isinstance(value, SeriesRef):
        return value.key()
    return (_type_name(value), value)


# -----------------------------------------------------------------------------
# Evaluation
# -----------------------------------------------------------------------------


def _truthy(value: Value) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, SeriesRef):
        latest = value.latest
        return bool(latest)
    if isinstance(value, str):
        return bool(value)
    return value != 0


def _two_points(
    name: str, node: ExprNode, ctx: EvaluationContext, offset: int
) -> List[float]:
    """Current and previous value of a crossover operand."""

    now = _eval(node, ctx=ctx, offset=offset)
    if isinstance(now, SeriesRef):
        return list(now.values[-2:])
    now_num = _number(now, name)
    prev_num = _number(_eval(node, ctx=ctx, offset=offset + 1), name)
    return [v for v in (prev_num, now_num) if v is not None] if now_num is not None else []


def _eval_call(node: CallNode, *, ctx: EvaluationContext, offset: int) -> Value:
    name = node.name

    if name in _CROSS_FUNCTIONS:
        if len(node.args) != 2:
            raise ArityError(f"{name} expects (a, b)")
        a = _two_points(name, node.args[0], ctx, offset)
        b = _two_points(name, node.args[1], ctx, offset)
        cross = indicators.crossover(a, b)
        return cross.bullish_cross if name == "crossover" else cross.bearish_cross

    spec = _BUILTINS.get(name)
    if spec is None:
        raise UnknownSymbolError("function", name)

    # Arguments are always evaluated left to right, before the cache lookup.
    args = [_eval(a, ctx=ctx, offset=offset) for a in node.args]
    key: CacheKey = (name, tuple(_arg_key(a) for a in args), offset)
    if key in ctx.cache:
        return ctx.cache[key]
    result = _call_builtin(name, spec, args, ctx.series_at(offset))
    ctx.cache[key] = result
    return result


def _eval_binary(node: BinaryNode, *, ctx: EvaluationContext, offset: int) -> Value:
    left = _eval(node.left, ctx=ctx, offset=offset)
    right = _eval(node.right, ctx=ctx, offset=offset)
    a = _number(left, f"Operator '{node.op}'")
    b = _number(right, f"Operator '{node.op}'")
    if a is None or b is None:
        return None
    if node.op == "+":
        return a + b
    if node.op == "-":
        return a - b
    if node.op == "*":
        return a * b
    if node.op == "/":
        # Division by zero inside a script yields 0 rather than an error.
        return 0.0 if b == 0 else a / b
    raise ScriptError(f"Unsupported binary operator '{node.op}'")


def _eval_comparison(node: ComparisonNode, *, ctx: EvaluationContext, offset: int) -> bool:
    left = _eval(node.left, ctx=ctx, offset=offset)
    right = _eval(node.right, ctx=ctx, offset=offset)
    op = node.op

    if isinstance(left, (str, bool)) or isinstance(right, (str, bool)):
        if type(left) is not type(right):
            if left is None or right is None:
                return False
            raise ScriptError(
                f"Cannot compare {_type_name(left)} with {_type_name(right)}"
            )
        if op == "==":
            return left == right
        if op == "!=":
            return left != right
        raise ScriptError(f"Operator '{op}' is not defined for {_type_name(left)} values")

    a = _number(left, f"Operator '{op}'")
    b = _number(right, f"Operator '{op}'")
    if a is None or b is None:
        return False
    if op == ">":
        return a > b
    if op == ">=":
        return a >= b
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == "==":
        return abs(a - b) < ctx.epsilon
    if op == "!=":
        return abs(a - b) >= ctx.epsilon
    raise ScriptError(f"Unknown comparison op '{op}'")


def _eval(node: ExprNode, *, ctx: EvaluationContext, offset: int) -> Value:
    # Inlined local assignments share subtrees; each is walked once per offset.
    key = (id(node), offset)
    if key in ctx._values:
        return ctx._values[key]
    value = _eval_node(node, ctx=ctx, offset=offset)
    ctx._values[key] = value
    return value


def _eval_node(node: ExprNode, *, ctx: EvaluationContext, offset: int) -> Value:
    if isinstance(node, NumberNode):
        return node.value

    if isinstance(node, StringNode):
        return node.value

    if isinstance(node, IdentNode):
        resolver = _BUILTIN_VARIABLES.get(node.name)
        if resolver is None:
            raise UnknownSymbolError("identifier", node.name)
        return resolver(ctx, offset)

    if isinstance(node, CallNode):
        return _eval_call(node, ctx=ctx, offset=offset)

    if isinstance(node, IndexNode):
        return _eval(node.child, ctx=ctx, offset=offset + node.offset)

    if isinstance(node, UnaryNode):
        v = _number(_eval(node.child, ctx=ctx, offset=offset), f"Unary '{node.op}'")
        if v is None:
            return None
        if node.op == "+":
            return v
        if node.op == "-":
            return -v
        raise ScriptError(f"Unsupported unary operator '{node.op}'")

    if isinstance(node, BinaryNode):
        return _eval_binary(node, ctx=ctx, offset=offset)

    if isinstance(node, ComparisonNode):
        return _eval_comparison(node, ctx=ctx, offset=offset)

    if isinstance(node, LogicalNode):
        op = node.op.upper()
        if op == "AND":
            return all(_truthy(_eval(c, ctx=ctx, offset=offset)) for c in node.children)
        if op == "OR":
            return any(_truthy(_eval(c, ctx=ctx, offset=offset)) for c in node.children)
        raise ScriptError(f"Unknown logical op '{node.op}'")

    if isinstance(node, NotNode):
        v = _eval(node.child, ctx=ctx, offset=offset)
        # Undefined stays undefined so missing history never turns into a signal.
        if v is None:
            return None
        return not _truthy(v)

    raise ScriptError("Unsupported expression node")


def check_names(node: ExprNode) -> None:
    """Reject unknown identifiers and function names before evaluation."""

    if isinstance(node, IdentNode):
        if node.name not in _BUILTIN_VARIABLES:
            raise UnknownSymbolError("identifier", node.name)
        return
    if isinstance(node, CallNode):
        if node.name not in BUILTIN_FUNCTIONS:
            raise UnknownSymbolError("function", node.name)
        for arg in node.args:
            check_names(arg)
        return
    if isinstance(node, (IndexNode, UnaryNode, NotNode)):
        check_names(node.child)
        return
    if isinstance(node, (BinaryNode, ComparisonNode)):
        check_names(node.left)
        check_names(node.right)
        return
    if isinstance(node, LogicalNode):
        for child in node.children:
            check_names(child)


def evaluate_expression(
    node: ExprNode, context: EvaluationContext
) -> Union[float, bool, str, None]:
    """Evaluate a compiled expression against `context`.

    Returns a number, boolean, string or None (undefined: an indicator did not
    have enough history). Series results collapse to their latest point.
    Raises `ScriptError` subclasses for unknown names and bad arguments.
    """

    context._values.clear()
    try:
        value = _eval(node, ctx=context, offset=0)
    finally:
        context._values.clear()
    if isinstance(value, SeriesRef):
        return value.latest
    return value


def is_truthy(value: Union[float, bool, str, None]) -> bool:
    return _truthy(value)


__all__ = [
    "BUILTIN_FUNCTIONS",
    "BUILTIN_VARIABLES",
    "EvaluationContext",
    "PriceSeries",
    "Quote",
    "SeriesRef",
    "check_names",
    "evaluate_expression",
    "is_truthy",
]
