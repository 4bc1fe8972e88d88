from __future__ import annotations
from typing import List, Optional, Sequence

from .models import Candle


def sma(values: List[float], length: int) -> Optional[float]:
    if length <= 0 or len(values) < length:
        return None
    return sum(values[-length:]) / float(length)


def true_range(high: float, low: float, prev_close: float) -> float:
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def atr(candles: Sequence[Candle], length: int = 14) -> Optional[float]:
    """Simple-average ATR over the trailing `length` candles.

    Returns None when fewer than length+1 candles are available; callers treat
    that as volatility unknown.
    """
    if length <= 0 or len(candles) < length + 1:
        return None
    trs = []
    for i in range(len(candles) - length, len(candles)):
        c = candles[i]
        trs.append(true_range(c.high, c.low, candles[i - 1].close))
    return sum(trs) / length


def pip_size(instrument: str, overrides: Optional[dict] = None) -> float:
    if overrides and instrument in overrides:
        return float(overrides[instrument])
    if "JPY" in instrument:
        return 0.01
    if instrument == "XAU_USD":
        return 0.1
    if instrument == "NAS100_USD":
        return 1.0
    return 0.0001


def round_to_pip(price: float, pip: float) -> float:
    decimals = 0
    if pip < 1:
        decimals = len(f"{pip:.10f}".rstrip("0").split(".")[1])
    # outer round() strips float noise from the multiplication
    return round(round(price / pip) * pip, decimals)
