from __future__ import annotations

from math import sqrt

import pytest

from efinance_signals.services import indicators


def test_moving_averages_are_empty_without_enough_history() -> None:
    for period in (3, 5, 20):
        short = [1.0] * (period - 1)
        assert indicators.sma(short, period) == []
        assert indicators.ema(short, period) == []


def test_sma_is_tail_aligned() -> None:
    assert indicators.sma([1, 2, 3, 4, 5], 3) == [2.0, 3.0, 4.0]


def test_ema_is_seeded_with_first_window_average() -> None:
    out = indicators.ema([1, 2, 3, 4], 2)
    assert out == pytest.approx([1.5, 2.5, 3.5])


def test_rsi_requires_period_plus_one_prices() -> None:
    assert indicators.rsi([10.0] * 14, 14) == []
    assert len(indicators.rsi([10.0] * 15, 14)) == 1


def test_rsi_on_flat_series_is_exactly_100() -> None:
    out = indicators.rsi([50.0] * 20, 14)
    assert len(out) == 6
    assert all(v == 100.0 for v in out)


def test_rsi_trends_to_extremes() -> None:
    rising = [float(i) for i in range(1, 40)]
    falling = list(reversed(rising))
    assert indicators.rsi(rising, 14)[-1] == pytest.approx(100.0)
    assert indicators.rsi(falling, 14)[-1] == pytest.approx(0.0)


def test_rsi_mixed_moves() -> None:
    # Seven +1 moves and seven -3 moves: avg gain 0.5, avg loss 1.5.
    prices = [100.0]
    for _ in range(7):
        prices.append(prices[-1] + 1)
        prices.append(prices[-1] - 3)
    assert indicators.rsi(prices, 14) == pytest.approx([25.0])


def test_macd_aligns_fast_and_slow_on_tail() -> None:
    prices = [float(i) for i in range(1, 41)]
    out = indicators.macd(prices, 12, 26, 9)
    # slow EMA has 15 points, so the signal line has 15 - 8 = 7.
    assert len(out) == 7
    last = out[-1]
    assert last.histogram == pytest.approx(last.macd - last.signal)

    fast = indicators.ema(prices, 12)
    slow = indicators.ema(prices, 26)
    assert last.macd == pytest.approx(fast[-1] - slow[-1])


def test_macd_empty_when_slow_ema_missing() -> None:
    assert indicators.macd([1.0] * 20) == []


def test_bollinger_uses_population_std() -> None:
    out = indicators.bollinger_bands([1, 2, 3, 4, 5], 5, 2)
    assert len(out) == 1
    band = out[0]
    assert band.middle == pytest.approx(3.0)
    assert band.upper == pytest.approx(3.0 + 2 * sqrt(2.0))
    assert band.lower == pytest.approx(3.0 - 2 * sqrt(2.0))


def test_kdj_flat_window_is_50() -> None:
    flat = [10.0] * 9
    out = indicators.kdj(flat, flat, flat, 9, 3, 3)
    assert len(out) == 1
    assert out[0].k == 50.0
    assert out[0].d == 50.0
    assert out[0].j == 50.0


def test_kdj_rises_when_close_at_top_of_range() -> None:
    highs = [11.0, 12.0, 13.0]
    lows = [9.0, 10.0, 11.0]
    closes = [10.0, 11.0, 13.0]
    out = indicators.kdj(highs, lows, closes, 3, 3, 3)
    # RSV = (13 - 9) / (13 - 9) * 100 = 100
    assert out[0].k == pytest.approx((100.0 + 2 * 50.0) / 3)


def test_williams_r_flat_and_range() -> None:
    flat = [5.0] * 14
    assert indicators.williams_r(flat, flat, flat, 14) == [-50.0]

    out = indicators.williams_r([10, 12], [8, 9], [9, 10], 2)
    # highest high 12, lowest low 8, close 10 -> -50
    assert out == pytest.approx([-50.0])


def test_highest_lowest_and_roc() -> None:
    values = [1.0, 5.0, 3.0, 2.0]
    assert indicators.highest(values, 2) == [5.0, 5.0, 3.0]
    assert indicators.lowest(values, 2) == [1.0, 3.0, 2.0]
    assert indicators.roc([100.0, 110.0], 1) == pytest.approx([10.0])
    assert indicators.roc([0.0, 5.0], 1) == [0.0]
    assert indicators.roc([1.0], 1) == []


def test_crossover_directions() -> None:
    up = indicators.crossover([1, 2], [2, 1])
    assert up.bullish_cross is True
    assert up.bearish_cross is False

    down = indicators.crossover([2, 1], [1, 2])
    assert down.bearish_cross is True
    assert down.bullish_cross is False


def test_crossover_needs_two_points() -> None:
    res = indicators.crossover([1], [0, 2])
    assert res.bullish_cross is False
    assert res.bearish_cross is False
