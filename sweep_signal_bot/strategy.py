from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .bias import classify_bias
from .config import ScanSettings, ScannerConfig
from .indicators import atr as compute_atr
from .indicators import pip_size as instrument_pip_size
from .indicators import round_to_pip
from .levels import (
    PrevDay,
    extract_levels,
    find_equal_levels,
    previous_day_levels,
    session_levels,
)
from .models import (
    AGAINST,
    ALIGNED,
    BEARISH,
    BULLISH,
    LONG,
    NEUTRAL,
    SHORT,
    STATE_ACCEPTED,
    STATE_DROPPED,
    STATE_ERROR,
    InstrumentResult,
    Level,
    Signal,
    SweepEvent,
)
from .scoring import apply_score, min_score_for_grade
from .sessions import level_sessions
from .sweep import detect_sweep

log = logging.getLogger("strategy")

TP_FRACTIONS = {"tp1": 0.5, "tp2": 0.75, "runner": 1.0}
STOP_ATR_BUFFER = 0.5
FALLBACK_TARGET_R = 3.0
RR_EPSILON = 1e-9


@dataclass(frozen=True)
class TradePlan:
    stop_loss: float
    target: float
    reward_risk: float


def htf_confluence(direction: str, bias: str) -> str:
    if bias == NEUTRAL:
        return NEUTRAL
    if (direction == LONG and bias == BULLISH) or (direction == SHORT and bias == BEARISH):
        return ALIGNED
    return AGAINST


def plan_trade(
    sweep: SweepEvent,
    atr: Optional[float],
    prev_day: Optional[PrevDay],
    current_price: float,
) -> Optional[TradePlan]:
    """Stop half an ATR past the swept extreme, target at the opposite PD level.

    Returns None when the stop does not sit on the risk side of entry.
    """
    buffer = atr * STOP_ATR_BUFFER if atr is not None else 0.0
    entry = sweep.entry_price
    if sweep.direction == LONG:
        stop = sweep.swept_extreme - buffer
        target = prev_day.high if prev_day is not None else current_price + (current_price - stop) * FALLBACK_TARGET_R
        risk = entry - stop
        reward = target - entry
    else:
        stop = sweep.swept_extreme + buffer
        target = prev_day.low if prev_day is not None else current_price - (stop - current_price) * FALLBACK_TARGET_R
        risk = stop - entry
        reward = entry - target
    if risk <= 0:
        return None
    return TradePlan(stop_loss=stop, target=target, reward_risk=reward / risk)


def passes_min_rr(rr: float, min_rr: float) -> bool:
    return rr + RR_EPSILON >= min_rr


def build_signal(
    *,
    instrument: str,
    timeframe: str,
    htf_timeframe: str,
    sweep: SweepEvent,
    level: Level,
    atr: Optional[float],
    htf_bias: str,
    prev_day: Optional[PrevDay],
    current_price: float,
    min_rr: float,
    pip: float,
    now_ms: Optional[int] = None,
) -> Optional[Signal]:
    """Unscored trade candidate, or None when it fails the reward:risk floor."""
    plan = plan_trade(sweep, atr, prev_day, current_price)
    if plan is None or not passes_min_rr(plan.reward_risk, min_rr):
        return None

    entry = sweep.entry_price
    span = abs(plan.target - entry)
    sign = 1.0 if sweep.direction == LONG else -1.0
    targets = {k: round_to_pip(entry + sign * span * frac, pip) for k, frac in TP_FRACTIONS.items()}

    return Signal(
        instrument=instrument,
        timeframe=timeframe,
        direction=sweep.direction,
        setup_label=level.label,
        level_kind=level.kind,
        level_price=level.price,
        level_priority=level.priority,
        entry_price=entry,
        stop_loss=round_to_pip(plan.stop_loss, pip),
        tp1=targets["tp1"],
        tp2=targets["tp2"],
        runner=targets["runner"],
        reward_risk=round(plan.reward_risk, 2),
        displacement_strength=sweep.displacement_strength,
        displacement_ratio=sweep.displacement_ratio,
        gap=sweep.gap,
        htf_bias=htf_bias,
        htf_confluence=htf_confluence(sweep.direction, htf_bias),
        htf_timeframe=htf_timeframe,
        timestamp_ms=now_ms if now_ms is not None else int(time.time() * 1000),
    )


def sort_signals(signals: Sequence[Signal]) -> List[Signal]:
    return sorted(signals, key=lambda s: (-s.score, s.level_priority))


def find_signals(
    *,
    instrument: str,
    timeframe: str,
    htf_timeframe: str,
    candles,
    levels: Sequence[Level],
    atr: Optional[float],
    htf_bias: str,
    prev_day: Optional[PrevDay],
    settings: ScanSettings,
    pip: float,
    now_ms: Optional[int] = None,
) -> List[Signal]:
    """Walk levels in priority order and keep graded signals that clear every gate."""
    current_price = candles[-1].close
    min_score = min_score_for_grade(settings.min_grade)
    accepted: List[Signal] = []
    seen: set = set()

    for level in levels:
        if len(accepted) >= settings.max_signals_per_instrument:
            break

        sweep = detect_sweep(candles, level.price, level.side, atr)
        if sweep is None:
            continue
        if settings.direction_filter != "BOTH" and sweep.direction != settings.direction_filter:
            continue
        if settings.require_htf_confluence and htf_confluence(sweep.direction, htf_bias) == AGAINST:
            continue

        # one signal per direction per bucket (daily vs everything else)
        bucket = (sweep.direction, "PD" if level.is_daily else "OTHER")
        if bucket in seen:
            continue

        candidate = build_signal(
            instrument=instrument,
            timeframe=timeframe,
            htf_timeframe=htf_timeframe,
            sweep=sweep,
            level=level,
            atr=atr,
            htf_bias=htf_bias,
            prev_day=prev_day,
            current_price=current_price,
            min_rr=settings.min_rr,
            pip=pip,
            now_ms=now_ms,
        )
        if candidate is None:
            continue
        if settings.require_displacement and not sweep.has_displacement(settings.displacement_multiple):
            continue
        if settings.require_fvg and sweep.gap is None:
            continue

        scored = apply_score(candidate, settings.news_bias)
        if scored.score < min_score:
            log.debug(
                "signal_dropped instrument=%s level=%s score=%d min_grade=%s",
                instrument,
                level.label,
                scored.score,
                settings.min_grade,
            )
            continue
        seen.add(bucket)
        accepted.append(scored)

    return sort_signals(accepted)


async def analyze_instrument(
    provider,
    instrument: str,
    timeframe: str,
    settings: ScanSettings,
    scanner: ScannerConfig,
) -> InstrumentResult:
    """Fetch the three candle windows for one instrument and run the full pipeline.

    Fetch failures are returned as an ERROR result rather than raised.
    """
    now_ms = int(time.time() * 1000)
    htf_timeframe = scanner.htf_for(timeframe)
    try:
        daily, candles, htf = await asyncio.gather(
            provider.fetch_candles(instrument, scanner.daily_timeframe, scanner.daily_count),
            provider.fetch_candles(instrument, timeframe, scanner.candle_count(timeframe)),
            provider.fetch_candles(instrument, htf_timeframe, scanner.htf_count),
        )
    except Exception as e:
        log.warning("fetch_failed instrument=%s tf=%s err=%s", instrument, timeframe, e)
        return InstrumentResult(instrument, timeframe, STATE_ERROR, now_ms, error=str(e) or repr(e))

    if not candles:
        return InstrumentResult(instrument, timeframe, STATE_ERROR, now_ms, error="Failed to fetch candles")

    pip = instrument_pip_size(instrument, scanner.pip_sizes)
    atr = compute_atr(candles, settings.atr_period)
    htf_bias = classify_bias(htf)

    prev_day = previous_day_levels(daily or [])
    ranges = []
    for win in level_sessions(scanner.sessions, scanner.level_sessions):
        rng = session_levels(candles, win)
        if rng is not None:
            ranges.append(rng)
    eq_highs, eq_lows = find_equal_levels(candles, settings.equal_tolerance, settings.max_equal_levels)
    levels = extract_levels(prev_day, ranges, eq_highs, eq_lows)

    signals = find_signals(
        instrument=instrument,
        timeframe=timeframe,
        htf_timeframe=htf_timeframe,
        candles=candles,
        levels=levels,
        atr=atr,
        htf_bias=htf_bias,
        prev_day=prev_day,
        settings=settings,
        pip=pip,
        now_ms=now_ms,
    )

    sessions_out: Dict[str, Dict[str, float]] = {r.name: {"high": r.high, "low": r.low} for r in ranges}
    return InstrumentResult(
        instrument=instrument,
        timeframe=timeframe,
        state=STATE_ACCEPTED if signals else STATE_DROPPED,
        timestamp_ms=now_ms,
        current_price=candles[-1].close,
        atr=atr,
        pip_size=pip,
        htf_bias=htf_bias,
        levels=tuple(levels),
        pdh=prev_day.high if prev_day else None,
        pdl=prev_day.low if prev_day else None,
        session_levels=sessions_out,
        equal_highs=len(eq_highs),
        equal_lows=len(eq_lows),
        signals=tuple(signals),
    )
