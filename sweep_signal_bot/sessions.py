from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional


@dataclass(frozen=True)
class SessionWindow:
    name: str
    label: str
    start_hour: int
    end_hour: int

    def contains(self, hour: int) -> bool:
        # [start, end) in UTC hours; windows crossing midnight are not supported
        return self.start_hour <= hour < self.end_hour


DEFAULT_SESSIONS: Dict[str, SessionWindow] = {
    "ASIAN": SessionWindow("ASIAN", "Asian", 0, 8),
    "LONDON": SessionWindow("LONDON", "London", 7, 16),
    "NY": SessionWindow("NY", "NY", 13, 22),
}

_REPORTED_NAMES = {"ASIAN": "ASIAN", "LONDON": "LONDON", "NY": "NEW_YORK"}


def parse_sessions(raw: Optional[dict]) -> Dict[str, SessionWindow]:
    if not raw:
        return dict(DEFAULT_SESSIONS)
    out: Dict[str, SessionWindow] = {}
    for name, win in raw.items():
        key = str(name).upper()
        start = int(win["start"])
        end = int(win["end"])
        if not (0 <= start < end <= 24):
            raise ValueError(f"Unsupported session window {key}: start={start} end={end} (0 <= start < end <= 24)")
        default_label = DEFAULT_SESSIONS[key].label if key in DEFAULT_SESSIONS else key.title()
        out[key] = SessionWindow(key, str(win.get("label") or default_label), start, end)
    return out


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def current_session(sessions: Dict[str, SessionWindow], now: Optional[datetime] = None) -> str:
    hour = (now or _utc_now()).astimezone(timezone.utc).hour
    for name in ("ASIAN", "LONDON", "NY"):
        win = sessions.get(name)
        if win is not None and win.contains(hour):
            return _REPORTED_NAMES[name]
    return "OFF_HOURS"


def session_warning(
    now: Optional[datetime] = None,
    *,
    equity_open_utc: float = 14.5,
    warning_minutes: int = 30,
) -> dict:
    dt = (now or _utc_now()).astimezone(timezone.utc)
    current = dt.hour + dt.minute / 60.0
    start = equity_open_utc - warning_minutes / 60.0
    end = equity_open_utc + 0.25
    if not (start <= current <= end):
        return {"active": False}

    minutes_to_open = int(round((equity_open_utc - current) * 60))
    if minutes_to_open > 0:
        return {
            "active": True,
            "type": "PRE_MARKET",
            "message": f"Equity open in {minutes_to_open} min - use caution",
            "minutes_to_open": minutes_to_open,
        }
    return {
        "active": True,
        "type": "MARKET_OPEN",
        "message": "Equity market just opened - high volatility",
        "minutes_to_open": 0,
    }


def level_sessions(sessions: Dict[str, SessionWindow], names: List[str]) -> List[SessionWindow]:
    out = []
    for n in names:
        key = str(n).upper()
        if key not in sessions:
            raise ValueError(f"Unknown level session: {key} (known: {sorted(sessions)})")
        out.append(sessions[key])
    return out
