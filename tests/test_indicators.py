import pytest

from sweep_signal_bot.indicators import atr, pip_size, round_to_pip, sma, true_range
from sweep_signal_bot.models import Candle


def _c(idx: int, o: float, h: float, l: float, c: float) -> Candle:
    return Candle(open_time_ms=idx * 3_600_000, open=o, high=h, low=l, close=c)


def test_atr_needs_length_plus_one_candles():
    candles = [_c(i, 10, 11, 9, 10) for i in range(14)]
    assert atr(candles, 14) is None
    candles.append(_c(14, 10, 11, 9, 10))
    assert atr(candles, 14) == pytest.approx(2.0)


def test_atr_uses_gap_from_previous_close():
    candles = [_c(0, 10, 10, 10, 10), _c(1, 14, 15, 13, 14)]
    # high - prev close dominates the bar range
    assert atr(candles, 1) == pytest.approx(5.0)
    assert true_range(15, 13, 10) == 5


def test_atr_never_negative():
    candles = [_c(i, 1.1, 1.1, 1.1, 1.1) for i in range(20)]
    assert atr(candles, 14) == 0.0


def test_sma_short_input():
    assert sma([1.0, 2.0], 3) is None
    assert sma([1.0, 2.0, 3.0, 4.0], 2) == pytest.approx(3.5)


def test_pip_size_by_instrument():
    assert pip_size("EUR_USD") == 0.0001
    assert pip_size("USD_JPY") == 0.01
    assert pip_size("XAU_USD") == 0.1
    assert pip_size("NAS100_USD") == 1.0
    assert pip_size("XAG_USD", {"XAG_USD": 0.001}) == 0.001


def test_round_to_pip():
    assert round_to_pip(1.10104, 0.0001) == 1.101
    assert round_to_pip(1.0990000000000002, 0.0001) == 1.099
    assert round_to_pip(150.1234, 0.01) == 150.12
    assert round_to_pip(2345.67, 0.1) == 2345.7
    assert round_to_pip(15000.4, 1.0) == 15000.0
