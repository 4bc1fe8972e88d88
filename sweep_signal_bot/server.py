from __future__ import annotations

import logging
import time
from typing import Any, Mapping, Optional

from aiohttp import web

from .commands import CommandHandler
from .config import ScanSettings
from .models import iso_ms
from .runner import ScanRunner
from .scoring import scoring_table
from .sessions import current_session, session_warning
from .strategy import TP_FRACTIONS

log = logging.getLogger("server")

VERSION = "1.0"

RUNNER_KEY = web.AppKey("runner", ScanRunner)
COMMANDS_KEY = web.AppKey("commands", CommandHandler)

# query parameter -> (settings field, parser)
_QUERY_FIELDS = {
    "minRR": ("min_rr", float),
    "maxSignals": ("max_signals_per_instrument", int),
    "equalTolerance": ("equal_tolerance", float),
    "displacementMultiple": ("displacement_multiple", float),
    "requireDisplacement": ("require_displacement", "bool"),
    "requireFVG": ("require_fvg", "bool"),
    "maxEqualLevels": ("max_equal_levels", int),
    "directionFilter": ("direction_filter", "upper"),
    "requireHTFConfluence": ("require_htf_confluence", "bool"),
    "minGrade": ("min_grade", "upper"),
    "newsBias": ("news_bias", "upper"),
}


def _parse_bool(name: str, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    val = str(raw).strip().lower()
    if val in ("1", "true", "yes", "on"):
        return True
    if val in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be true or false")


def parse_scan_settings(params: Mapping[str, Any], base: ScanSettings) -> ScanSettings:
    """Overlay request parameters on the configured defaults; raises ValueError on bad input."""
    overrides = {}
    for qname, (fname, kind) in _QUERY_FIELDS.items():
        raw = params.get(qname)
        if raw is None or raw == "":
            continue
        if kind == "bool":
            overrides[fname] = _parse_bool(qname, raw)
        elif kind == "upper":
            overrides[fname] = str(raw).strip().upper()
        else:
            try:
                overrides[fname] = kind(raw)
            except (TypeError, ValueError):
                raise ValueError(f"{qname} must be a number") from None
    return base.merged(**overrides)


def _json_error(status: int, message: str, **extra: Any) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status)


def _runner(request: web.Request) -> ScanRunner:
    return request.app[RUNNER_KEY]


def _market_context(runner: ScanRunner) -> dict:
    sc = runner.cfg.scanner
    return {
        "current_session": current_session(sc.sessions),
        "session_warning": session_warning(
            equity_open_utc=sc.equity_open_utc,
            warning_minutes=sc.equity_open_warning_minutes,
        ),
    }


def _validated_timeframe(runner: ScanRunner, raw: Optional[str]) -> Optional[web.Response]:
    try:
        runner.resolve_timeframe(raw)
    except ValueError:
        return _json_error(400, "Invalid timeframe", available=runner.cfg.scanner.available_timeframes)
    return None


async def health(request: web.Request) -> web.Response:
    runner = _runner(request)
    return web.json_response(
        {
            "status": "ok",
            "name": runner.cfg.app.name,
            "version": VERSION,
            "environment": runner.cfg.provider.environment,
            "uptime_s": round(time.time() - runner.started_at, 1),
            "metrics": runner.metrics,
            "features": {
                "liquidity_scanner": True,
                "htf_bias": True,
                "session_warnings": True,
                "multiple_tp": True,
                "signal_scoring": True,
                "news_bias": "manual-toggle",
            },
        }
    )


async def scan(request: web.Request) -> web.Response:
    runner = _runner(request)
    q = request.query
    bad_tf = _validated_timeframe(runner, q.get("timeframe"))
    if bad_tf is not None:
        return bad_tf
    try:
        settings = parse_scan_settings(q, runner.cfg.strategy)
    except ValueError as e:
        return _json_error(400, str(e))

    force = q.get("refresh", "").lower() == "true"
    try:
        result, cached = await runner.scan(q.get("timeframe"), settings, force=force)
    except ValueError as e:
        return _json_error(400, str(e))
    except Exception as e:
        log.exception("scan_request_failed err=%s", e)
        return _json_error(500, str(e) or repr(e))

    return web.json_response({"cached": cached, **result.to_dict(), **_market_context(runner)})


async def signals(request: web.Request) -> web.Response:
    runner = _runner(request)
    try:
        result = runner.latest()
        if result is None:
            result, _ = await runner.scan()
    except Exception as e:
        log.exception("signals_request_failed err=%s", e)
        return _json_error(500, str(e) or repr(e))

    return web.json_response(
        {
            "timestamp": iso_ms(result.timestamp_ms),
            "timeframe": result.timeframe,
            "is_stale": runner.is_stale(),
            "signal_count": result.signals_found,
            "signals": [s.to_dict() for s in result.signals],
            **_market_context(runner),
        }
    )


async def levels(request: web.Request) -> web.Response:
    runner = _runner(request)
    instrument = request.match_info["instrument"].upper()
    if instrument not in runner.cfg.scanner.instruments:
        return _json_error(400, "Invalid instrument", available=runner.cfg.scanner.instruments)
    bad_tf = _validated_timeframe(runner, request.query.get("timeframe"))
    if bad_tf is not None:
        return bad_tf
    try:
        settings = parse_scan_settings(request.query, runner.cfg.strategy)
        result = await runner.analyze(instrument, request.query.get("timeframe"), settings)
    except ValueError as e:
        return _json_error(400, str(e))
    except Exception as e:
        log.exception("levels_request_failed instrument=%s err=%s", instrument, e)
        return _json_error(500, str(e) or repr(e))

    if result.error is not None:
        return _json_error(500, result.error, instrument=instrument)
    return web.json_response(result.to_dict())


async def config(request: web.Request) -> web.Response:
    runner = _runner(request)
    sc = runner.cfg.scanner
    return web.json_response(
        {
            "instruments": sc.instruments,
            "available_timeframes": sc.available_timeframes,
            "default_timeframe": sc.default_timeframe,
            "htf_map": sc.htf_map,
            "settings": runner.cfg.strategy.signature(),
            "scoring": scoring_table(),
            "tp_levels": dict(TP_FRACTIONS),
            "sessions": {n: {"start": w.start_hour, "end": w.end_hour} for n, w in sc.sessions.items()},
            "level_sessions": sc.level_sessions,
            "alerts": {
                "timeframe": runner.cfg.alerts.timeframe,
                "grades": runner.cfg.alerts.grades,
                "cooldown_s": runner.cfg.alerts.cooldown_s,
            },
            **_market_context(runner),
        }
    )


async def refresh(request: web.Request) -> web.Response:
    runner = _runner(request)
    body: dict = {}
    if request.can_read_body:
        try:
            body = await request.json()
        except ValueError:
            return _json_error(400, "Body must be JSON")
        if not isinstance(body, dict):
            return _json_error(400, "Body must be a JSON object")
    timeframe = request.query.get("timeframe") or body.get("timeframe")
    bad_tf = _validated_timeframe(runner, timeframe)
    if bad_tf is not None:
        return bad_tf
    try:
        settings = parse_scan_settings(body, runner.cfg.strategy)
        result, _ = await runner.scan(timeframe, settings, force=True)
    except ValueError as e:
        return _json_error(400, str(e))
    except Exception as e:
        log.exception("refresh_request_failed err=%s", e)
        return _json_error(500, str(e) or repr(e))
    return web.json_response({"message": "Scan refreshed", **result.to_dict(), **_market_context(runner)})


async def stats(request: web.Request) -> web.Response:
    runner = _runner(request)
    recipients = await runner.recipients.active_recipients()
    return web.json_response(
        {
            "connected_pro_users": len(recipients),
            "timestamp": iso_ms(int(time.time() * 1000)),
        }
    )


async def trigger_scan(request: web.Request) -> web.Response:
    """Run one alert pass now, same as a scheduled tick. Dedup cooldown still applies."""
    runner = _runner(request)
    try:
        dispatched = await runner.run_once()
    except Exception as e:
        log.exception("trigger_scan_failed err=%s", e)
        return _json_error(500, str(e) or repr(e))
    return web.json_response({"status": "Scan triggered", "alerts_sent": dispatched})


async def oanda_proxy(request: web.Request) -> web.Response:
    runner = _runner(request)
    body = await request.read() if request.can_read_body else None
    try:
        status, payload, content_type = await runner.provider.forward(
            request.method, request.match_info["tail"], request.query, body
        )
    except Exception as e:
        log.warning("proxy_failed path=%s err=%s", request.path, e)
        return _json_error(500, str(e) or repr(e))
    return web.Response(status=status, body=payload, content_type=content_type)


async def telegram_webhook(request: web.Request) -> web.Response:
    handler = request.app.get(COMMANDS_KEY)
    if handler is None:
        return web.Response(status=200)
    try:
        update = await request.json()
        await handler.handle_update(update)
    except Exception as e:
        # Telegram retries non-200 deliveries; acknowledge and log instead
        log.exception("webhook_update_failed err=%s", e)
    return web.Response(status=200)


def create_app(runner: ScanRunner, commands: Optional[CommandHandler] = None) -> web.Application:
    app = web.Application()
    app[RUNNER_KEY] = runner
    if commands is not None:
        app[COMMANDS_KEY] = commands
    app.router.add_get("/health", health)
    app.router.add_get("/scan", scan)
    app.router.add_get("/signals", signals)
    app.router.add_get("/levels/{instrument}", levels)
    app.router.add_get("/config", config)
    app.router.add_post("/refresh", refresh)
    app.router.add_get("/stats", stats)
    app.router.add_get("/trigger-scan", trigger_scan)
    app.router.add_post("/webhook", telegram_webhook)
    app.router.add_route("*", "/api/{tail:.*}", oanda_proxy)
    return app
