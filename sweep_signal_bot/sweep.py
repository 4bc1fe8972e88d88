from __future__ import annotations
from typing import Optional, Sequence, Tuple

from .models import (
    DISPLACEMENT_NONE,
    DISPLACEMENT_NORMAL,
    DISPLACEMENT_STRONG,
    DISPLACEMENT_WEAK,
    HIGH,
    LONG,
    LOW,
    SHORT,
    Candle,
    FairValueGap,
    SweepEvent,
)

SWEEP_LOOKBACK = 5


def classify_displacement(body: float, atr: Optional[float]) -> Tuple[str, float]:
    if atr is None or atr <= 0:
        return DISPLACEMENT_NONE, 0.0
    ratio = body / atr
    if ratio > 2.0:
        return DISPLACEMENT_STRONG, ratio
    if ratio > 1.5:
        return DISPLACEMENT_NORMAL, ratio
    if ratio > 1.0:
        return DISPLACEMENT_WEAK, ratio
    return DISPLACEMENT_NONE, ratio


def detect_fvg(candles: Sequence[Candle], index: int) -> Optional[FairValueGap]:
    """Three-candle imbalance between candles[index-2] and candles[index]."""
    if index < 2 or index >= len(candles):
        return None
    c1 = candles[index - 2]
    c3 = candles[index]
    if c3.low > c1.high:
        return FairValueGap("BULLISH", top=c3.low, bottom=c1.high, size=c3.low - c1.high)
    if c3.high < c1.low:
        return FairValueGap("BEARISH", top=c1.low, bottom=c3.high, size=c1.low - c3.high)
    return None


def detect_sweep(
    candles: Sequence[Candle],
    level: float,
    side: str,
    atr: Optional[float],
) -> Optional[SweepEvent]:
    """Earliest breach-then-reject of `level` among the last SWEEP_LOOKBACK candles.

    LOW side: either candle of a consecutive pair trades below the level and the
    later one closes bullish above it. HIGH side mirrors with a bearish close.
    """
    if side not in (HIGH, LOW):
        raise ValueError(f"Unknown level side: {side}")

    recent = list(candles[-SWEEP_LOOKBACK:])
    for i in range(1, len(recent)):
        prev = recent[i - 1]
        cur = recent[i]

        if side == LOW:
            swept = prev.low < level or cur.low < level
            if not (swept and cur.close > level and cur.close > cur.open):
                continue
            direction = LONG
            extreme = min(prev.low, cur.low)
        else:
            swept = prev.high > level or cur.high > level
            if not (swept and cur.close < level and cur.close < cur.open):
                continue
            direction = SHORT
            extreme = max(prev.high, cur.high)

        strength, ratio = classify_displacement(cur.body, atr)
        return SweepEvent(
            direction=direction,
            breached_level=level,
            swept_extreme=extreme,
            entry_price=cur.close,
            displacement_strength=strength,
            displacement_ratio=ratio,
            # gap is read off the newest candles of the whole window, not the matched pair
            gap=detect_fvg(candles, len(candles) - 1),
            confirm_time_ms=cur.open_time_ms,
        )
    return None
