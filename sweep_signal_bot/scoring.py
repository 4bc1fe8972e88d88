from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict

from .models import (
    AGAINST,
    ALIGNED,
    BEARISH,
    BULLISH,
    DISPLACEMENT_NONE,
    DISPLACEMENT_NORMAL,
    DISPLACEMENT_STRONG,
    DISPLACEMENT_WEAK,
    LONG,
    SHORT,
    CriterionScore,
    ScoreBreakdown,
    Signal,
)

MAX_SCORE = 110

LEVEL_POINTS = {"DAILY": 25, "SESSION": 18, "EQUAL": 12}
DISPLACEMENT_POINTS = {
    DISPLACEMENT_STRONG: 25,
    DISPLACEMENT_NORMAL: 18,
    DISPLACEMENT_WEAK: 8,
    DISPLACEMENT_NONE: 0,
}
GAP_POINTS = {"PRESENT": 20, "ABSENT": 0}
HTF_POINTS = {ALIGNED: 15, "NEUTRAL": 8, AGAINST: 0}
# (min R:R, points), checked top-down
RR_POINTS = ((4.0, 15), (3.0, 12), (2.5, 8), (2.0, 4))
NEWS_POINTS = {ALIGNED: 10, "NEUTRAL": 0, AGAINST: -10}
GRADE_THRESHOLDS = (("A+", 90), ("A", 80), ("B", 70), ("C", 60), ("D", 0))


@dataclass(frozen=True)
class ScoreResult:
    score: int
    grade: str
    breakdown: ScoreBreakdown
    max_score: int = MAX_SCORE

    @property
    def is_perfect(self) -> bool:
        return self.grade == "A+"


def grade_for(score: int) -> str:
    for grade, threshold in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return "D"


def min_score_for_grade(grade: str) -> int:
    for g, threshold in GRADE_THRESHOLDS:
        if g == grade:
            return threshold
    raise ValueError(f"Unknown grade: {grade}")


def _level_quality(label: str) -> CriterionScore:
    if "Previous Day" in label or "PDH" in label or "PDL" in label:
        pts = LEVEL_POINTS["DAILY"]
    elif any(s in label for s in ("Session", "Asian", "London", "NY")):
        pts = LEVEL_POINTS["SESSION"]
    else:
        pts = LEVEL_POINTS["EQUAL"]
    return CriterionScore(pts, 25, label)


def _displacement(sig: Signal) -> CriterionScore:
    strength = sig.displacement_strength
    pts = DISPLACEMENT_POINTS.get(strength, 0)
    if strength == DISPLACEMENT_NONE:
        return CriterionScore(pts, 25, "None")
    return CriterionScore(pts, 25, f"{strength.title()} ({sig.displacement_ratio:.1f}x ATR)")


def _gap(sig: Signal) -> CriterionScore:
    if sig.has_gap:
        return CriterionScore(GAP_POINTS["PRESENT"], 20, "Present")
    return CriterionScore(GAP_POINTS["ABSENT"], 20, "Absent")


def _htf(sig: Signal) -> CriterionScore:
    if sig.htf_confluence == ALIGNED:
        return CriterionScore(HTF_POINTS[ALIGNED], 15, f"Aligned ({sig.htf_bias})")
    if sig.htf_confluence == AGAINST:
        return CriterionScore(HTF_POINTS[AGAINST], 15, f"Against ({sig.htf_bias})")
    return CriterionScore(HTF_POINTS["NEUTRAL"], 15, "Neutral")


def _reward_risk(rr: float) -> CriterionScore:
    pts = 0
    for floor, points in RR_POINTS:
        if rr >= floor:
            pts = points
            break
    return CriterionScore(pts, 15, f"{rr:.1f}:1")


def _news(direction: str, news_bias: str) -> CriterionScore:
    if news_bias == "NONE":
        return CriterionScore(NEWS_POINTS["NEUTRAL"], 10, "No news bias set", min_points=-10)
    aligned = (news_bias == BULLISH and direction == LONG) or (news_bias == BEARISH and direction == SHORT)
    if aligned:
        return CriterionScore(NEWS_POINTS[ALIGNED], 10, f"Aligned with {news_bias} bias", min_points=-10)
    return CriterionScore(NEWS_POINTS[AGAINST], 10, f"Against {news_bias} bias", min_points=-10)


def score_signal(sig: Signal, news_bias: str = "NONE") -> ScoreResult:
    """Grade a signal snapshot. Reads only the snapshot and the manual news bias."""
    breakdown = ScoreBreakdown(
        level_quality=_level_quality(sig.setup_label or ""),
        displacement=_displacement(sig),
        gap=_gap(sig),
        htf_confluence=_htf(sig),
        reward_risk=_reward_risk(sig.reward_risk or 0.0),
        news_bias=_news(sig.direction, news_bias),
    )
    total = breakdown.total
    return ScoreResult(score=total, grade=grade_for(total), breakdown=breakdown)


def apply_score(sig: Signal, news_bias: str = "NONE") -> Signal:
    res = score_signal(sig, news_bias)
    return replace(sig, score=res.score, grade=res.grade, score_breakdown=res.breakdown)


def scoring_table() -> Dict[str, object]:
    return {
        "level_points": dict(LEVEL_POINTS),
        "displacement": dict(DISPLACEMENT_POINTS),
        "fvg": dict(GAP_POINTS),
        "htf": dict(HTF_POINTS),
        "rr": [{"min": floor, "points": pts} for floor, pts in RR_POINTS],
        "news": dict(NEWS_POINTS),
        "grades": {g: t for g, t in GRADE_THRESHOLDS},
        "max_score": MAX_SCORE,
    }
