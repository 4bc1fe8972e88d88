import asyncio

from sweep_signal_bot.config import AlertsConfig, Config, ScannerConfig, ScanSettings, TelegramConfig
from sweep_signal_bot.models import (
    ALIGNED,
    BULLISH,
    DISPLACEMENT_STRONG,
    GRADES,
    LONG,
    STATE_ERROR,
    Recipient,
    ScanResult,
    Signal,
)
from sweep_signal_bot.runner import ScanRunner


class FakeClock:
    def __init__(self, t: float = 1_700_000_000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


class FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, s):
        self.calls.append(s)


class FailingProvider:
    def __init__(self):
        self.calls = 0

    async def fetch_candles(self, instrument, granularity, count):
        self.calls += 1
        raise RuntimeError("upstream down")


class FakeNotifier:
    def __init__(self):
        self.broadcasts = []
        self.sent = []

    async def send(self, chat_id, text):
        self.sent.append((chat_id, text))
        return True

    async def broadcast(self, text, chat_ids, *, delay_s=0.0):
        self.broadcasts.append((text, list(chat_ids)))
        return len(chat_ids)


class FakeRecipients:
    def __init__(self, chat_ids):
        self.chat_ids = chat_ids

    async def active_recipients(self):
        return [Recipient(chat_id=c) for c in self.chat_ids]


def _cfg(**alerts) -> Config:
    return Config(
        scanner=ScannerConfig(instruments=["EUR_USD", "GBP_USD", "USD_JPY"], batch_size=2, batch_delay_s=0.5),
        alerts=AlertsConfig(**alerts),
        telegram=TelegramConfig(admin_chat_id=""),
    )


def _runner(cfg=None, chat_ids=("111", "222"), clock=None):
    return ScanRunner(
        cfg or _cfg(),
        provider=FailingProvider(),
        notifier=FakeNotifier(),
        recipients=FakeRecipients(list(chat_ids)),
        clock=clock or FakeClock(),
        sleep=FakeSleep(),
    )


def _sig(grade="A+", instrument="EUR_USD", label="Previous Day Low") -> Signal:
    return Signal(
        instrument=instrument,
        timeframe="H1",
        direction=LONG,
        setup_label=label,
        level_kind="PDL",
        level_price=1.1000,
        level_priority=1,
        entry_price=1.1010,
        stop_loss=1.0990,
        tp1=1.1030,
        tp2=1.1040,
        runner=1.1050,
        reward_risk=2.0,
        displacement_strength=DISPLACEMENT_STRONG,
        displacement_ratio=2.2,
        gap=None,
        htf_bias=BULLISH,
        htf_confluence=ALIGNED,
        htf_timeframe="H4",
        timestamp_ms=1,
        score=95 if grade == "A+" else 72,
        grade=grade,
    )


def _result(*signals) -> ScanResult:
    return ScanResult(
        timestamp_ms=0,
        timeframe="H1",
        signals=tuple(signals),
        instruments=(),
        settings={},
        grade_counts={},
    )


def test_scan_with_no_usable_candles_is_empty_not_error():
    async def _run():
        runner = _runner()
        result, cached = await runner.scan()
        return runner, result, cached

    runner, result, cached = asyncio.run(_run())
    assert cached is False
    assert result.signals_found == 0
    assert result.instruments_scanned == 3
    assert result.grade_counts == {g: 0 for g in GRADES}
    assert all(r.state == STATE_ERROR for r in result.instruments)
    # three instruments in batches of two: one pause between batches
    assert runner._sleep.calls == [0.5]
    assert runner.metrics["scans_total"] == 1


def test_scan_cache_hit_and_expiry():
    clock = FakeClock()

    async def _run():
        runner = _runner(clock=clock)
        first, c1 = await runner.scan("H1")
        calls = runner.provider.calls

        clock.t += 30
        again, c2 = await runner.scan("H1")
        assert c2 is True and again is first
        assert runner.provider.calls == calls

        # different settings are a different cache entry
        _, c3 = await runner.scan("H1", ScanSettings(min_rr=3.0))
        assert c3 is False

        clock.t += 61
        _, c4 = await runner.scan("H1", ScanSettings(min_rr=3.0))
        assert c4 is False

        _, c5 = await runner.scan("H1", ScanSettings(min_rr=3.0), force=True)
        assert c5 is False
        return runner

    runner = asyncio.run(_run())
    assert runner.metrics["scans_total"] == 4


def test_staleness():
    clock = FakeClock()

    async def _run():
        runner = _runner(clock=clock)
        assert runner.is_stale()
        await runner.scan()
        assert not runner.is_stale()
        clock.t += 301
        return runner.is_stale()

    assert asyncio.run(_run()) is True


def test_invalid_timeframe_and_instrument():
    async def _run():
        runner = _runner()
        for bad in (lambda: runner.scan("M5"), lambda: runner.analyze("EUR_USD", "W"), lambda: runner.analyze("BTC_USD")):
            try:
                await bad()
            except ValueError:
                continue
            raise AssertionError("expected ValueError")

    asyncio.run(_run())


def test_dedup_cooldown():
    clock = FakeClock()

    async def _run():
        runner = _runner(clock=clock)
        sig = _sig()
        assert await runner.dispatch_alerts(_result(sig)) == 1
        clock.t += 600
        assert await runner.dispatch_alerts(_result(sig)) == 0
        clock.t += 3001
        assert await runner.dispatch_alerts(_result(sig)) == 1
        return runner

    runner = asyncio.run(_run())
    assert len(runner.notifier.broadcasts) == 2
    assert runner.notifier.broadcasts[0][1] == ["111", "222"]
    assert runner.metrics["alerts_suppressed_total"] == 1
    assert runner.metrics["alerts_sent_total"] == 2


def test_dedup_is_per_instrument_direction_label():
    async def _run():
        runner = _runner()
        n = await runner.dispatch_alerts(_result(_sig(), _sig(instrument="GBP_USD"), _sig(label="Asian Session Low")))
        return n

    assert asyncio.run(_run()) == 3


def test_only_alert_grades_are_dispatched():
    async def _run():
        runner = _runner()
        return await runner.dispatch_alerts(_result(_sig(grade="B"))), runner

    n, runner = asyncio.run(_run())
    assert n == 0
    assert runner.notifier.broadcasts == []


def test_no_recipients_sends_nothing():
    async def _run():
        runner = _runner(chat_ids=())
        return await runner.dispatch_alerts(_result(_sig())), runner

    n, runner = asyncio.run(_run())
    assert n == 0
    assert runner._sent == {}


def test_sent_map_is_purged_after_retention():
    clock = FakeClock()

    async def _run():
        runner = _runner(clock=clock)
        await runner.dispatch_alerts(_result(_sig()))
        assert "EUR_USD:LONG:Previous Day Low" in runner._sent
        clock.t += 86_401
        await runner.dispatch_alerts(_result())
        return runner

    assert asyncio.run(_run())._sent == {}


def test_admin_summary_after_alert():
    cfg = _cfg()
    cfg.telegram.admin_chat_id = "999"

    async def _run():
        runner = _runner(cfg=cfg)
        await runner.dispatch_alerts(_result(_sig()))
        return runner

    runner = asyncio.run(_run())
    assert runner.notifier.sent[0][0] == "999"
    assert "Alert sent to 2 users" in runner.notifier.sent[0][1]


def test_tick_skipped_while_previous_in_flight():
    async def _run():
        runner = _runner()
        runner._tick_running = True
        assert await runner.tick() is None
        return runner

    runner = asyncio.run(_run())
    assert runner.metrics["ticks_skipped_total"] == 1
    assert runner.metrics["scans_total"] == 0


def test_tick_waits_for_http_scan_holding_lock():
    async def _run():
        runner = _runner()
        await runner._lock.acquire()
        task = asyncio.create_task(runner.tick())
        await asyncio.sleep(0)
        assert not task.done()
        runner._lock.release()
        return runner, await task

    runner, sent = asyncio.run(_run())
    assert sent == 0
    assert runner.metrics["ticks_skipped_total"] == 0
    assert runner.metrics["scans_total"] == 1


def test_tick_runs_alert_scan():
    async def _run():
        runner = _runner(cfg=_cfg(timeframe="H4"))
        assert await runner.tick() == 0
        return runner

    runner = asyncio.run(_run())
    assert runner.latest().timeframe == "H4"
    assert runner.latest().settings["min_grade"] == "B"
    assert runner._tick_running is False
