from __future__ import annotations
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple


LONG = "LONG"
SHORT = "SHORT"

HIGH = "HIGH"
LOW = "LOW"

BULLISH = "BULLISH"
BEARISH = "BEARISH"
NEUTRAL = "NEUTRAL"

ALIGNED = "ALIGNED"
AGAINST = "AGAINST"

DISPLACEMENT_NONE = "NONE"
DISPLACEMENT_WEAK = "WEAK"
DISPLACEMENT_NORMAL = "NORMAL"
DISPLACEMENT_STRONG = "STRONG"

GRADES = ("A+", "A", "B", "C", "D")

# per-instrument terminal states
STATE_ERROR = "ERROR"
STATE_DROPPED = "DROPPED"
STATE_ACCEPTED = "ACCEPTED"


def iso_ms(ts_ms: Optional[int]) -> Optional[str]:
    if ts_ms is None:
        return None
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class Candle:
    open_time_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    complete: bool = True

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def utc_hour(self) -> int:
        return datetime.fromtimestamp(self.open_time_ms / 1000.0, tz=timezone.utc).hour


@dataclass(frozen=True)
class Level:
    kind: str  # PDH | PDL | SESSION_HIGH | SESSION_LOW | EQUAL_HIGH | EQUAL_LOW
    price: float
    label: str
    priority: int  # 1=daily, 2=session, 3=equal cluster

    @property
    def side(self) -> str:
        return HIGH if self.kind in ("PDH", "SESSION_HIGH", "EQUAL_HIGH") else LOW

    @property
    def is_daily(self) -> bool:
        return self.kind in ("PDH", "PDL")

    def to_dict(self) -> dict:
        d = asdict(self)
        d["side"] = self.side
        return d


@dataclass(frozen=True)
class EqualCluster:
    price: float
    touches: Tuple[float, float]


@dataclass(frozen=True)
class FairValueGap:
    kind: str  # BULLISH | BEARISH
    top: float
    bottom: float
    size: float


@dataclass(frozen=True)
class SweepEvent:
    direction: str
    breached_level: float
    swept_extreme: float
    entry_price: float
    displacement_strength: str
    displacement_ratio: float
    gap: Optional[FairValueGap]
    confirm_time_ms: int

    def has_displacement(self, multiple: float) -> bool:
        return self.displacement_ratio >= multiple


@dataclass(frozen=True)
class CriterionScore:
    points: int
    max_points: int
    reason: str
    min_points: int = 0


@dataclass(frozen=True)
class ScoreBreakdown:
    level_quality: CriterionScore
    displacement: CriterionScore
    gap: CriterionScore
    htf_confluence: CriterionScore
    reward_risk: CriterionScore
    news_bias: CriterionScore

    @property
    def total(self) -> int:
        return sum(c.points for c in self.criteria())

    def criteria(self) -> Tuple[CriterionScore, ...]:
        return (
            self.level_quality,
            self.displacement,
            self.gap,
            self.htf_confluence,
            self.reward_risk,
            self.news_bias,
        )

    def summary(self) -> str:
        names = ("Level", "Displacement", "FVG", "HTF", "R:R", "News")
        return " | ".join(f"{n} {c.points}/{c.max_points}" for n, c in zip(names, self.criteria()))


@dataclass(frozen=True)
class Signal:
    instrument: str
    timeframe: str
    direction: str
    setup_label: str
    level_kind: str
    level_price: float
    level_priority: int
    entry_price: float
    stop_loss: float
    tp1: float
    tp2: float
    runner: float
    reward_risk: float
    displacement_strength: str
    displacement_ratio: float
    gap: Optional[FairValueGap]
    htf_bias: str
    htf_confluence: str
    htf_timeframe: str
    timestamp_ms: int
    score: int = 0
    grade: Optional[str] = None
    score_breakdown: Optional[ScoreBreakdown] = None

    @property
    def has_gap(self) -> bool:
        return self.gap is not None

    @property
    def signal_key(self) -> str:
        return f"{self.instrument}:{self.direction}:{self.setup_label}"

    def to_dict(self) -> dict:
        d = asdict(self)
        d["has_gap"] = self.has_gap
        d["signal_key"] = self.signal_key
        d["timestamp"] = iso_ms(self.timestamp_ms)
        return d


@dataclass(frozen=True)
class InstrumentResult:
    instrument: str
    timeframe: str
    state: str
    timestamp_ms: int
    error: Optional[str] = None
    current_price: Optional[float] = None
    atr: Optional[float] = None
    pip_size: Optional[float] = None
    htf_bias: str = NEUTRAL
    levels: Tuple[Level, ...] = ()
    pdh: Optional[float] = None
    pdl: Optional[float] = None
    session_levels: Dict[str, Dict[str, float]] = field(default_factory=dict)
    equal_highs: int = 0
    equal_lows: int = 0
    signals: Tuple[Signal, ...] = ()

    def to_dict(self) -> dict:
        if self.error is not None:
            return {
                "instrument": self.instrument,
                "timeframe": self.timeframe,
                "state": self.state,
                "error": self.error,
            }
        return {
            "instrument": self.instrument,
            "timeframe": self.timeframe,
            "state": self.state,
            "current_price": self.current_price,
            "atr": self.atr,
            "pip_size": self.pip_size,
            "htf_bias": self.htf_bias,
            "key_levels": len(self.levels),
            "levels": [lv.to_dict() for lv in self.levels],
            "pdh": self.pdh,
            "pdl": self.pdl,
            "sessions": dict(self.session_levels),
            "equal_highs": self.equal_highs,
            "equal_lows": self.equal_lows,
            "signals": [s.to_dict() for s in self.signals],
            "last_update": iso_ms(self.timestamp_ms),
        }


@dataclass(frozen=True)
class ScanResult:
    timestamp_ms: int
    timeframe: str
    signals: Tuple[Signal, ...]
    instruments: Tuple[InstrumentResult, ...]
    settings: Dict[str, object]
    grade_counts: Dict[str, int]
    cache_key: str = ""

    @property
    def signals_found(self) -> int:
        return len(self.signals)

    @property
    def instruments_scanned(self) -> int:
        return len(self.instruments)

    def to_dict(self) -> dict:
        return {
            "timestamp": iso_ms(self.timestamp_ms),
            "timestamp_ms": self.timestamp_ms,
            "timeframe": self.timeframe,
            "instruments_scanned": self.instruments_scanned,
            "signals_found": self.signals_found,
            "grade_counts": dict(self.grade_counts),
            "signals": [s.to_dict() for s in self.signals],
            "instruments": [r.to_dict() for r in self.instruments],
            "applied_settings": dict(self.settings),
        }


@dataclass(frozen=True)
class Recipient:
    chat_id: str
    display_name: str = ""


def empty_grade_counts() -> Dict[str, int]:
    return {g: 0 for g in GRADES}


def count_grades(signals: List[Signal]) -> Dict[str, int]:
    counts = empty_grade_counts()
    for s in signals:
        if s.grade in counts:
            counts[s.grade] += 1
    return counts
