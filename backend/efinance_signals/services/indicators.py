from __future__ import annotations

from dataclasses import dataclass
from math import sqrt
from typing import List, Optional, Sequence, TypeVar

T = TypeVar("T")

# Every function here returns a list aligned to the tail of its input: the
# warmup points are omitted rather than padded, so `result[-1]` is always the
# value at the latest bar and an empty list means "not enough history".


@dataclass(frozen=True)
class MacdPoint:
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class BollingerPoint:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class KdjPoint:
    k: float
    d: float
    j: float


@dataclass(frozen=True)
class CrossoverResult:
    bullish_cross: bool
    bearish_cross: bool


def latest(values: Sequence[T]) -> Optional[T]:
    return values[-1] if values else None


def sma(prices: Sequence[float], period: int) -> List[float]:
    if period <= 0 or len(prices) < period:
        return []
    out: List[float] = []
    for i in range(period - 1, len(prices)):
        window = prices[i - period + 1 : i + 1]
        out.append(sum(window) / period)
    return out


def ema(prices: Sequence[float], period: int) -> List[float]:
    """Exponential moving average seeded with the SMA of the first window."""

    if period <= 0 or len(prices) < period:
        return []
    k = 2.0 / (period + 1.0)
    value = sum(prices[:period]) / period
    out = [value]
    for price in prices[period:]:
        value = value + (price - value) * k
        out.append(value)
    return out


def rsi(prices: Sequence[float], period: int = 14) -> List[float]:
    """Relative Strength Index using simple averages over `period` diffs.

    A window whose average loss is exactly zero yields 100.
    """

    if period <= 0 or len(prices) < period + 1:
        return []

    gains: List[float] = []
    losses: List[float] = []
    for i in range(1, len(prices)):
        delta = prices[i] - prices[i - 1]
        gains.append(delta if delta > 0 else 0.0)
        losses.append(-delta if delta < 0 else 0.0)

    out: List[float] = []
    for i in range(period - 1, len(gains)):
        avg_gain = sum(gains[i - period + 1 : i + 1]) / period
        avg_loss = sum(losses[i - period + 1 : i + 1]) / period
        if avg_loss == 0:
            out.append(100.0)
            continue
        rs = avg_gain / avg_loss
        out.append(100.0 - 100.0 / (1.0 + rs))
    return out


def macd(
    prices: Sequence[float],
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> List[MacdPoint]:
    ema_fast = ema(prices, fast)
    ema_slow = ema(prices, slow)
    if not ema_fast or not ema_slow:
        return []

    # Align both EMAs on their common tail so each difference refers to the
    # same bar.
    n = min(len(ema_fast), len(ema_slow))
    fast_tail = ema_fast[-n:]
    slow_tail = ema_slow[-n:]
    macd_line = [a - b for a, b in zip(fast_tail, slow_tail)]

    signal_line = ema(macd_line, signal)
    offset = len(macd_line) - len(signal_line)
    out: List[MacdPoint] = []
    for i, sig in enumerate(signal_line):
        m = macd_line[i + offset]
        out.append(MacdPoint(macd=m, signal=sig, histogram=m - sig))
    return out


def bollinger_bands(
    prices: Sequence[float],
    period: int = 20,
    std_dev_multiplier: float = 2.0,
) -> List[BollingerPoint]:
    if period <= 0 or len(prices) < period:
        return []
    out: List[BollingerPoint] = []
    for i in range(period - 1, len(prices)):
        window = prices[i - period + 1 : i + 1]
        middle = sum(window) / period
        # Population standard deviation (divide by N).
        variance = sum((p - middle) ** 2 for p in window) / period
        width = sqrt(variance) * std_dev_multiplier
        out.append(BollingerPoint(upper=middle + width, middle=middle, lower=middle - width))
    return out


def _window_range(
    highs: Sequence[float], lows: Sequence[float], end: int, period: int
) -> tuple[float, float]:
    start = end - period + 1
    return max(highs[start : end + 1]), min(lows[start : end + 1])


def kdj(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = 9,
    k_smooth: int = 3,
    d_smooth: int = 3,
) -> List[KdjPoint]:
    """Stochastic KDJ.

    RSV is 50 on a flat high/low range. K and D are recursive averages seeded
    at 50 for the first computed bar; J = 3K - 2D.
    """

    if period <= 0 or k_smooth <= 0 or d_smooth <= 0:
        return []
    if len(highs) < period or len(lows) < period or len(closes) < period:
        return []

    rsv_values: List[float] = []
    for i in range(period - 1, len(closes)):
        highest_high, lowest_low = _window_range(highs, lows, i, period)
        if highest_high == lowest_low:
            rsv_values.append(50.0)
        else:
            rsv_values.append((closes[i] - lowest_low) / (highest_high - lowest_low) * 100.0)

    out: List[KdjPoint] = []
    prev_k = 50.0
    prev_d = 50.0
    for rsv in rsv_values:
        k = (rsv + (k_smooth - 1) * prev_k) / k_smooth
        d = (k + (d_smooth - 1) * prev_d) / d_smooth
        out.append(KdjPoint(k=k, d=d, j=3.0 * k - 2.0 * d))
        prev_k = k
        prev_d = d
    return out


def williams_r(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = 14,
) -> List[float]:
    if period <= 0:
        return []
    if len(highs) < period or len(lows) < period or len(closes) < period:
        return []
    out: List[float] = []
    for i in range(period - 1, len(closes)):
        highest_high, lowest_low = _window_range(highs, lows, i, period)
        if highest_high == lowest_low:
            out.append(-50.0)
        else:
            out.append((highest_high - closes[i]) / (highest_high - lowest_low) * -100.0)
    return out


def highest(values: Sequence[float], period: int) -> List[float]:
    if period <= 0 or len(values) < period:
        return []
    return [max(values[i - period + 1 : i + 1]) for i in range(period - 1, len(values))]


def lowest(values: Sequence[float], period: int) -> List[float]:
    if period <= 0 or len(values) < period:
        return []
    return [min(values[i - period + 1 : i + 1]) for i in range(period - 1, len(values))]


def roc(prices: Sequence[float], period: int) -> List[float]:
    """Percent rate of change over `period` bars (0 when the base is 0)."""

    if period <= 0 or len(prices) <= period:
        return []
    out: List[float] = []
    for i in range(period, len(prices)):
        base = prices[i - period]
        out.append(0.0 if base == 0 else (prices[i] - base) / base * 100.0)
    return out


def crossover(series_a: Sequence[float], series_b: Sequence[float]) -> CrossoverResult:
    if len(series_a) < 2 or len(series_b) < 2:
        return CrossoverResult(bullish_cross=False, bearish_cross=False)
    prev_a, curr_a = series_a[-2], series_a[-1]
    prev_b, curr_b = series_b[-2], series_b[-1]
    return CrossoverResult(
        bullish_cross=prev_a <= prev_b and curr_a > curr_b,
        bearish_cross=prev_a >= prev_b and curr_a < curr_b,
    )


__all__ = [
    "BollingerPoint",
    "CrossoverResult",
    "KdjPoint",
    "MacdPoint",
    "bollinger_bands",
    "crossover",
    "ema",
    "highest",
    "kdj",
    "latest",
    "lowest",
    "macd",
    "roc",
    "rsi",
    "sma",
    "williams_r",
]
