from __future__ import annotations
from typing import Sequence

from .indicators import sma
from .models import BEARISH, BULLISH, NEUTRAL, Candle

BIAS_LOOKBACK = 20


def classify_bias(htf_candles: Sequence[Candle]) -> str:
    """Coarse higher-timeframe lean: SMA20 position (+2) and 3-bar structure (+1 each).

    Bullish and bearish points accumulate separately; either side needs 3.
    """
    if not htf_candles or len(htf_candles) < BIAS_LOOKBACK:
        return NEUTRAL

    recent = list(htf_candles[-BIAS_LOOKBACK:])
    sma20 = sma([c.close for c in recent], BIAS_LOOKBACK)
    price = recent[-1].close

    third, prev, last = recent[-3], recent[-2], recent[-1]
    higher_highs = last.high > prev.high > third.high
    higher_lows = last.low > prev.low > third.low
    lower_highs = last.high < prev.high < third.high
    lower_lows = last.low < prev.low < third.low

    bull = 0
    bear = 0
    if price > sma20:
        bull += 2
    if price < sma20:
        bear += 2
    if higher_highs:
        bull += 1
    if higher_lows:
        bull += 1
    if lower_highs:
        bear += 1
    if lower_lows:
        bear += 1

    if bull >= 3:
        return BULLISH
    if bear >= 3:
        return BEARISH
    return NEUTRAL
