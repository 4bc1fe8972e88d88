from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from .models import Candle, EqualCluster, Level
from .sessions import SessionWindow

# equal-level clustering only looks at this many recent swings per side
RECENT_SWINGS = 10
SWING_WINDOW = 2
# clusters beyond this many per side are counted but not traded
EQUAL_LEVELS_TRADED = 2


@dataclass(frozen=True)
class PrevDay:
    high: float
    low: float
    open_time_ms: int


@dataclass(frozen=True)
class SessionRange:
    name: str
    label: str
    high: float
    low: float


def previous_day_levels(daily: Sequence[Candle]) -> Optional[PrevDay]:
    """High/low of the last completed daily candle (the final one may still be forming)."""
    if len(daily) < 2:
        return None
    prev = daily[-2]
    return PrevDay(high=prev.high, low=prev.low, open_time_ms=prev.open_time_ms)


def session_levels(candles: Iterable[Candle], session: SessionWindow) -> Optional[SessionRange]:
    hi: Optional[float] = None
    lo: Optional[float] = None
    for c in candles:
        if not session.contains(c.utc_hour):
            continue
        hi = c.high if hi is None else max(hi, c.high)
        lo = c.low if lo is None else min(lo, c.low)
    if hi is None or lo is None:
        return None
    return SessionRange(name=session.name, label=session.label, high=hi, low=lo)


def find_swing_points(candles: Sequence[Candle]) -> Tuple[List[float], List[float]]:
    highs: List[float] = []
    lows: List[float] = []
    w = SWING_WINDOW
    for i in range(w, len(candles) - w):
        neighbours = [candles[j] for j in range(i - w, i + w + 1) if j != i]
        cur = candles[i]
        if all(cur.high > n.high for n in neighbours):
            highs.append(cur.high)
        if all(cur.low < n.low for n in neighbours):
            lows.append(cur.low)
    return highs, lows


def _cluster(prices: List[float], tolerance: float, max_levels: int) -> List[EqualCluster]:
    recent = prices[-RECENT_SWINGS:]
    out: List[EqualCluster] = []
    for i in range(len(recent)):
        if len(out) >= max_levels:
            break
        for j in range(i + 1, len(recent)):
            if len(out) >= max_levels:
                break
            a, b = recent[i], recent[j]
            mean = (a + b) / 2.0
            if mean <= 0 or abs(a - b) / mean >= tolerance:
                continue
            if any(abs(c.price - mean) / mean < tolerance for c in out):
                continue
            out.append(EqualCluster(price=mean, touches=(a, b)))
    return out


def find_equal_levels(
    candles: Sequence[Candle],
    tolerance: float,
    max_levels: int = 3,
) -> Tuple[List[EqualCluster], List[EqualCluster]]:
    """Equal highs / equal lows from pairs of recent swing points.

    Pairwise over at most RECENT_SWINGS points per side, so quadratic cost is
    bounded regardless of window length.
    """
    highs, lows = find_swing_points(candles)
    return _cluster(highs, tolerance, max_levels), _cluster(lows, tolerance, max_levels)


def extract_levels(
    prev_day: Optional[PrevDay],
    sessions: Sequence[SessionRange],
    equal_highs: Sequence[EqualCluster],
    equal_lows: Sequence[EqualCluster],
) -> List[Level]:
    levels: List[Level] = []
    if prev_day is not None:
        levels.append(Level("PDH", prev_day.high, "Previous Day High", 1))
        levels.append(Level("PDL", prev_day.low, "Previous Day Low", 1))
    for s in sessions:
        levels.append(Level("SESSION_HIGH", s.high, f"{s.label} Session High", 2))
        levels.append(Level("SESSION_LOW", s.low, f"{s.label} Session Low", 2))
    for idx, eq in enumerate(equal_highs[:EQUAL_LEVELS_TRADED], start=1):
        levels.append(Level("EQUAL_HIGH", eq.price, f"Equal Highs {idx}", 3))
    for idx, eq in enumerate(equal_lows[:EQUAL_LEVELS_TRADED], start=1):
        levels.append(Level("EQUAL_LOW", eq.price, f"Equal Lows {idx}", 3))
    levels.sort(key=lambda lv: lv.priority)
    return levels
