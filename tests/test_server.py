import asyncio

from aiohttp import test_utils

from sweep_signal_bot.commands import CommandHandler
from sweep_signal_bot.config import Config, ScannerConfig, ScanSettings
from sweep_signal_bot.models import Candle
from sweep_signal_bot.recipients import StaticRecipientStore
from sweep_signal_bot.runner import ScanRunner
from sweep_signal_bot.server import create_app, parse_scan_settings


def _c(idx: int, o: float, h: float, l: float, c: float) -> Candle:
    return Candle(open_time_ms=idx * 3_600_000, open=o, high=h, low=l, close=c)


class WindowProvider:
    def __init__(self, windows=None, fail=False):
        self.windows = windows or {}
        self.fail = fail

    async def fetch_candles(self, instrument, granularity, count):
        if self.fail:
            raise RuntimeError("OANDA candles failed: 503")
        return list(self.windows.get(granularity, []))


class FakeNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, chat_id, text):
        self.sent.append((chat_id, text))
        return True

    async def broadcast(self, text, chat_ids, *, delay_s=0.0):
        return len(chat_ids)


def _windows():
    daily = [
        _c(0, 1.0950, 1.0980, 1.0940, 1.0970),
        _c(24, 1.1020, 1.1050, 1.1000, 1.1030),
        _c(48, 1.1030, 1.1040, 1.0990, 1.1010),
    ]
    h1 = [
        _c(0, 1.1020, 1.1025, 1.1010, 1.1015),
        _c(1, 1.1015, 1.1018, 1.1005, 1.1008),
        _c(2, 1.1008, 1.1010, 1.1002, 1.1004),
        _c(3, 1.1004, 1.1006, 1.0995, 1.0998),
        _c(4, 1.0998, 1.1012, 1.0997, 1.1010),
    ]
    return {"D": daily, "H1": h1}


def _app(provider, commands=False):
    cfg = Config(scanner=ScannerConfig(instruments=["EUR_USD", "GBP_USD"], batch_delay_s=0))
    notifier = FakeNotifier()
    recipients = StaticRecipientStore(["111"])
    runner = ScanRunner(cfg, provider=provider, notifier=notifier, recipients=recipients)
    handler = CommandHandler(notifier, recipients) if commands else None
    return create_app(runner, handler), notifier


def _call(provider, method, path, commands=False, **kw):
    async def _run():
        app, notifier = _app(provider, commands)
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.request(method, path, **kw)
            return resp.status, await resp.json(content_type=None), notifier

    return asyncio.run(_run())


def test_health():
    status, body, _ = _call(WindowProvider(), "GET", "/health")
    assert status == 200
    assert body["status"] == "ok"
    assert body["name"] == "SweepSignal"
    assert "scans_total" in body["metrics"]


def test_scan_returns_graded_signals():
    status, body, _ = _call(WindowProvider(_windows()), "GET", "/scan?timeframe=H1&minRR=2")
    assert status == 200
    assert body["cached"] is False
    assert body["instruments_scanned"] == 2
    assert body["signals_found"] == 2
    assert body["grade_counts"]["D"] == 2
    sig = body["signals"][0]
    assert sig["direction"] == "LONG"
    assert sig["setup_label"] == "Previous Day Low"
    assert sig["signal_key"].endswith(":LONG:Previous Day Low")
    assert body["applied_settings"]["min_rr"] == 2.0
    assert "current_session" in body and "session_warning" in body


def test_scan_with_failing_upstream_is_empty():
    status, body, _ = _call(WindowProvider(fail=True), "GET", "/scan")
    assert status == 200
    assert body["signals_found"] == 0
    assert set(body["grade_counts"].values()) == {0}
    assert body["instruments"][0]["state"] == "ERROR"


def test_scan_rejects_bad_timeframe():
    status, body, _ = _call(WindowProvider(), "GET", "/scan?timeframe=M5")
    assert status == 400
    assert body["error"] == "Invalid timeframe"
    assert body["available"] == ["M30", "H1", "H4", "D"]


def test_scan_rejects_bad_settings():
    status, body, _ = _call(WindowProvider(), "GET", "/scan?minRR=abc")
    assert status == 400
    assert "minRR" in body["error"]

    status, body, _ = _call(WindowProvider(), "GET", "/scan?directionFilter=UP")
    assert status == 400

    status, body, _ = _call(WindowProvider(), "GET", "/scan?minRR=nan")
    assert status == 400
    assert "min_rr" in body["error"]


def test_levels_rejects_unknown_instrument():
    status, body, _ = _call(WindowProvider(), "GET", "/levels/BTC_USD")
    assert status == 400
    assert body["error"] == "Invalid instrument"


def test_levels_upstream_failure_is_500():
    status, body, _ = _call(WindowProvider(fail=True), "GET", "/levels/EUR_USD")
    assert status == 500
    assert "503" in body["error"]


def test_levels_returns_instrument_snapshot():
    status, body, _ = _call(WindowProvider(_windows()), "GET", "/levels/eur_usd?timeframe=H1")
    assert status == 200
    assert body["instrument"] == "EUR_USD"
    assert body["pdh"] == 1.1050
    assert body["key_levels"] == len(body["levels"])


def test_signals_runs_first_scan_on_demand():
    status, body, _ = _call(WindowProvider(_windows()), "GET", "/signals")
    assert status == 200
    assert body["signal_count"] == 2
    assert body["is_stale"] is False


def test_config_endpoint():
    status, body, _ = _call(WindowProvider(), "GET", "/config")
    assert status == 200
    assert body["instruments"] == ["EUR_USD", "GBP_USD"]
    assert body["scoring"]["max_score"] == 110
    assert body["tp_levels"] == {"tp1": 0.5, "tp2": 0.75, "runner": 1.0}


def test_refresh_forces_scan():
    status, body, _ = _call(WindowProvider(_windows()), "POST", "/refresh", json={"timeframe": "H1", "minGrade": "C"})
    assert status == 200
    assert body["message"] == "Scan refreshed"
    assert body["signals_found"] == 0
    assert body["applied_settings"]["min_grade"] == "C"


def test_webhook_dispatches_commands():
    update = {"message": {"chat": {"id": 111}, "text": "/status", "from": {"username": "trader"}}}
    status, body, notifier = _call(WindowProvider(), "POST", "/webhook", commands=True, json=update)
    assert status == 200
    assert notifier.sent[0][0] == "111"
    assert "Connected" in notifier.sent[0][1]


def test_webhook_acks_garbage():
    status, _, _ = _call(WindowProvider(), "POST", "/webhook", commands=True, data=b"not json")
    assert status == 200


def test_parse_scan_settings():
    s = parse_scan_settings({"requireFVG": "true", "directionFilter": "long", "maxSignals": "1"}, ScanSettings())
    assert s.require_fvg is True
    assert s.direction_filter == "LONG"
    assert s.max_signals_per_instrument == 1
    assert s.min_rr == 2.0


class ProxyProvider(WindowProvider):
    def __init__(self, fail=False):
        super().__init__()
        self.forwarded = []
        self.proxy_fail = fail

    async def forward(self, method, path, query=None, body=None):
        if self.proxy_fail:
            raise RuntimeError("OANDA api token not configured")
        self.forwarded.append((method, path, dict(query or {}), body))
        return 200, b'{"accounts": [{"id": "101-001"}]}', "application/json"


def test_stats_counts_active_recipients():
    status, body, _ = _call(WindowProvider(), "GET", "/stats")
    assert status == 200
    assert body["connected_pro_users"] == 1
    assert body["timestamp"].endswith("+00:00")


def test_trigger_scan_runs_alert_pass():
    status, body, notifier = _call(WindowProvider(_windows()), "GET", "/trigger-scan")
    assert status == 200
    assert body == {"status": "Scan triggered", "alerts_sent": 0}
    assert notifier.sent == []


def test_api_requests_are_forwarded_to_oanda():
    provider = ProxyProvider()
    status, body, _ = _call(provider, "GET", "/api/v3/accounts?instruments=EUR_USD")
    assert status == 200
    assert body == {"accounts": [{"id": "101-001"}]}
    assert provider.forwarded == [("GET", "v3/accounts", {"instruments": "EUR_USD"}, None)]


def test_api_forward_failure_is_500():
    status, body, _ = _call(ProxyProvider(fail=True), "POST", "/api/v3/accounts/1/orders", json={"order": {}})
    assert status == 500
    assert "token" in body["error"]
