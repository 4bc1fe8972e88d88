from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import Optional

from .models import DISPLACEMENT_STRONG, LONG, Signal
from .scoring import MAX_SCORE


def _fmt_ms(ts_ms: int) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M UTC")


def _escape_markdown_v2(text: str) -> str:
    specials = r"\_*[]()~`>#+-=|{}.!"
    escaped = []
    for ch in str(text):
        if ch in specials:
            escaped.append("\\" + ch)
        else:
            escaped.append(ch)
    return "".join(escaped)


def _escape_text(text: str, parse_mode: str) -> str:
    if parse_mode == "MARKDOWNV2":
        return _escape_markdown_v2(text)
    return html.escape(str(text), quote=False)


def _bold(text: str, parse_mode: str) -> str:
    escaped = _escape_text(text, parse_mode)
    if parse_mode == "MARKDOWNV2":
        return f"*{escaped}*"
    return f"<b>{escaped}</b>"


def _code(text: str, parse_mode: str) -> str:
    escaped = _escape_text(text, parse_mode)
    if parse_mode == "MARKDOWNV2":
        return f"`{escaped}`"
    return f"<code>{escaped}</code>"


def _fmt_price(val: Optional[float]) -> str:
    if val is None:
        return "-"
    return f"{val:g}"


def format_signal(signal: Signal, cfg=None) -> str:
    """Telegram alert text for one graded signal."""
    parse_mode = (getattr(cfg, "parse_mode", "HTML") or "HTML").upper()
    esc = lambda s: _escape_text(s, parse_mode)  # noqa: E731

    direction_mark = "🟢" if signal.direction == LONG else "🔴"
    grade_mark = "⭐" if signal.grade == "A+" else "✨"

    lines = [
        f"{grade_mark} {_bold('SWEEPSIGNAL ALERT', parse_mode)} {grade_mark}",
        "",
        f"{_bold(signal.instrument, parse_mode)} {direction_mark} {_bold(signal.direction, parse_mode)} {esc('|')} {esc(signal.timeframe)}",
        f"{esc('Grade:')} {_bold(signal.grade or '-', parse_mode)} {esc(f'(Score: {signal.score}/{MAX_SCORE})')}",
        "",
        esc(f"Setup: {signal.setup_label}"),
        esc(f"HTF Bias: {signal.htf_bias or 'N/A'} ({signal.htf_timeframe}, {signal.htf_confluence})"),
        "",
        _bold("TRADE LEVELS", parse_mode),
        f"{esc('Entry:')} {_code(_fmt_price(signal.entry_price), parse_mode)}",
        f"{esc('Stop Loss:')} {_code(_fmt_price(signal.stop_loss), parse_mode)}",
        f"{esc('TP1 (50%):')} {_code(_fmt_price(signal.tp1), parse_mode)}",
        f"{esc('TP2 (75%):')} {_code(_fmt_price(signal.tp2), parse_mode)}",
        f"{esc('Runner:')} {_code(_fmt_price(signal.runner), parse_mode)}",
        f"{esc('R:R Ratio:')} {_bold(f'{signal.reward_risk}:1', parse_mode)}",
        "",
    ]

    tags = ["STRONG" if signal.displacement_strength == DISPLACEMENT_STRONG else "MODERATE"]
    if signal.has_gap:
        tags.append("FVG")
    lines.append(esc(" | ".join(tags)))

    if getattr(cfg, "include_score_breakdown", False) and signal.score_breakdown is not None:
        lines.append(esc(signal.score_breakdown.summary()))

    lines.append(esc(f"Signal time: {_fmt_ms(signal.timestamp_ms)}"))

    footer = (getattr(cfg, "footer", "") or "").strip()
    if footer:
        lines.append("")
        if parse_mode == "MARKDOWNV2":
            lines.append(f"_{esc(footer)}_")
        else:
            lines.append(f"<i>{esc(footer)}</i>")

    return "\n".join(lines)


def format_admin_summary(signal: Signal, sent: int) -> str:
    return f"Alert sent to {sent} users:\n{signal.instrument} {signal.direction} ({signal.grade})"
