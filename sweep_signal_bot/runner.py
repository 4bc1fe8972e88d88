from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from .config import Config, ScanSettings
from .formatters import format_admin_summary, format_signal
from .models import (
    STATE_ERROR,
    InstrumentResult,
    ScanResult,
    count_grades,
)
from .notifier.telegram import TelegramNotifier
from .providers.oanda import OandaProvider
from .recipients import build_recipient_store
from .strategy import analyze_instrument, sort_signals

log = logging.getLogger("runner")


def _stable_signature(timeframe: str, settings: ScanSettings) -> str:
    sig = {"timeframe": timeframe, **settings.signature()}
    payload = json.dumps(sig, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ScanRunner:
    """Owns the scan cache and the alert dedup map; the only writer of either."""

    def __init__(
        self,
        cfg: Config,
        *,
        provider=None,
        notifier=None,
        recipients=None,
        clock: Optional[Callable[[], float]] = None,
        sleep=None,
    ):
        self.cfg = cfg
        self.provider = provider or OandaProvider(
            api_token=cfg.provider.api_token,
            environment=cfg.provider.environment,
            rest_timeout_s=cfg.provider.rest_timeout_s,
            rest_max_retries=cfg.provider.rest_max_retries,
            rest_backoff_s=cfg.provider.rest_backoff_s,
        )
        self.notifier = notifier or TelegramNotifier(
            token=cfg.telegram.token if cfg.telegram.enabled else "",
            parse_mode=cfg.alerts.parse_mode,
            disable_web_page_preview=cfg.telegram.disable_web_page_preview,
        )
        self.recipients = recipients or build_recipient_store(cfg)
        self._clock = clock or time.time
        self._sleep = sleep or asyncio.sleep

        self._latest: Optional[ScanResult] = None
        self._sent: Dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._tick_running = False
        self._tasks: Set[asyncio.Task] = set()
        self._metrics = {
            "scans_total": 0,
            "alerts_sent_total": 0,
            "alerts_suppressed_total": 0,
            "ticks_skipped_total": 0,
        }
        self.started_at = self._clock()

    # ---- boundary validation -------------------------------------------

    def resolve_timeframe(self, timeframe: Optional[str]) -> str:
        tf = (timeframe or self.cfg.scanner.default_timeframe).strip().upper()
        if tf not in self.cfg.scanner.available_timeframes:
            raise ValueError(f"Invalid timeframe: {tf} (available: {self.cfg.scanner.available_timeframes})")
        return tf

    def resolve_instrument(self, instrument: str) -> str:
        inst = (instrument or "").strip().upper()
        if inst not in self.cfg.scanner.instruments:
            raise ValueError(f"Invalid instrument: {inst}")
        return inst

    # ---- result cache ---------------------------------------------------

    def latest(self) -> Optional[ScanResult]:
        return self._latest

    def cache_age_s(self) -> Optional[float]:
        if self._latest is None:
            return None
        return self._clock() - self._latest.timestamp_ms / 1000.0

    def is_stale(self) -> bool:
        age = self.cache_age_s()
        return age is None or age > self.cfg.scanner.stale_after_s

    def _fresh(self, key: str) -> Optional[ScanResult]:
        res = self._latest
        if res is None or res.cache_key != key:
            return None
        age = self.cache_age_s()
        if age is None or age >= self.cfg.scanner.cache_ttl_s:
            return None
        return res

    async def scan(
        self,
        timeframe: Optional[str] = None,
        settings: Optional[ScanSettings] = None,
        *,
        force: bool = False,
    ) -> Tuple[ScanResult, bool]:
        """Latest snapshot if fresh for the same inputs, else a full pass. Returns (result, cached)."""
        tf = self.resolve_timeframe(timeframe)
        settings = (settings or self.cfg.strategy).validate()
        key = _stable_signature(tf, settings)

        if not force:
            hit = self._fresh(key)
            if hit is not None:
                return hit, True

        async with self._lock:
            if not force:
                # another caller may have completed the same scan while we waited
                hit = self._fresh(key)
                if hit is not None:
                    return hit, True
            result = await self._run_pass(tf, settings, key)
            # single assignment; readers never see a partial snapshot
            self._latest = result
            return result, False

    async def _analyze_safe(self, instrument: str, timeframe: str, settings: ScanSettings) -> InstrumentResult:
        try:
            return await analyze_instrument(self.provider, instrument, timeframe, settings, self.cfg.scanner)
        except Exception as e:
            log.warning("analyze_failed instrument=%s tf=%s err=%r", instrument, timeframe, e)
            return InstrumentResult(
                instrument,
                timeframe,
                STATE_ERROR,
                int(self._clock() * 1000),
                error=str(e) or repr(e),
            )

    async def _run_pass(self, timeframe: str, settings: ScanSettings, key: str) -> ScanResult:
        t0 = time.monotonic()
        instruments = list(self.cfg.scanner.instruments)
        batch_size = max(1, int(self.cfg.scanner.batch_size))
        log.info("scan_start timeframe=%s instruments=%d batch_size=%d", timeframe, len(instruments), batch_size)

        results: List[InstrumentResult] = []
        for start in range(0, len(instruments), batch_size):
            batch = instruments[start:start + batch_size]
            out = await asyncio.gather(*[self._analyze_safe(inst, timeframe, settings) for inst in batch])
            results.extend(out)
            if start + batch_size < len(instruments) and self.cfg.scanner.batch_delay_s > 0:
                await self._sleep(self.cfg.scanner.batch_delay_s)

        signals = sort_signals([s for r in results for s in r.signals])
        counts = count_grades(signals)
        errors = [r for r in results if r.state == STATE_ERROR]
        for r in errors[:10]:
            log.warning("scan_instrument_error instrument=%s err=%s", r.instrument, r.error)
        if len(errors) > 10:
            log.warning("scan_instrument_error_more count=%d", len(errors) - 10)

        self._metrics["scans_total"] += 1
        log.info(
            "scan_done timeframe=%s instruments=%d signals=%d a_plus=%d a=%d b=%d errors=%d duration=%.1fs",
            timeframe,
            len(results),
            len(signals),
            counts["A+"],
            counts["A"],
            counts["B"],
            len(errors),
            time.monotonic() - t0,
        )
        return ScanResult(
            timestamp_ms=int(self._clock() * 1000),
            timeframe=timeframe,
            signals=tuple(signals),
            instruments=tuple(results),
            settings=settings.signature(),
            grade_counts=counts,
            cache_key=key,
        )

    async def analyze(
        self,
        instrument: str,
        timeframe: Optional[str] = None,
        settings: Optional[ScanSettings] = None,
    ) -> InstrumentResult:
        inst = self.resolve_instrument(instrument)
        tf = self.resolve_timeframe(timeframe)
        settings = (settings or self.cfg.strategy).validate()
        return await self._analyze_safe(inst, tf, settings)

    # ---- alert dedup + fan-out -----------------------------------------

    def _purge_sent(self, now: float) -> None:
        cutoff = now - self.cfg.alerts.retention_s
        for key in [k for k, ts in self._sent.items() if ts < cutoff]:
            del self._sent[key]

    def in_cooldown(self, key: str, now: Optional[float] = None) -> bool:
        last = self._sent.get(key)
        if last is None:
            return False
        now = self._clock() if now is None else now
        return now - last < self.cfg.alerts.cooldown_s

    async def dispatch_alerts(self, result: ScanResult) -> int:
        """Send alert-grade signals to every active recipient; returns signals dispatched."""
        now = self._clock()
        self._purge_sent(now)

        eligible = [s for s in result.signals if s.grade in self.cfg.alerts.grades]
        if not eligible:
            return 0

        recipients = await self.recipients.active_recipients()
        if not recipients:
            log.info("alerts_skipped reason=no_recipients eligible=%d", len(eligible))
            return 0
        chat_ids = [r.chat_id for r in recipients]

        dispatched = 0
        for sig in eligible:
            key = sig.signal_key
            if self.in_cooldown(key, now):
                self._metrics["alerts_suppressed_total"] += 1
                log.info("alert_suppressed key=%s reason=cooldown", key)
                continue

            text = format_signal(sig, self.cfg.alerts)
            sent = await self.notifier.broadcast(text, chat_ids, delay_s=self.cfg.alerts.send_delay_s)
            self._sent[key] = now
            dispatched += 1
            self._metrics["alerts_sent_total"] += 1
            log.info(
                "alert_sent key=%s grade=%s score=%d recipients=%d delivered=%d",
                key,
                sig.grade,
                sig.score,
                len(chat_ids),
                sent,
            )

            admin = (self.cfg.telegram.admin_chat_id or "").strip()
            if admin:
                await self.notifier.send(admin, format_admin_summary(sig, sent))
        return dispatched

    # ---- scheduling -----------------------------------------------------

    def alert_settings(self) -> ScanSettings:
        return self.cfg.strategy.merged(min_grade=self.cfg.alerts.min_grade)

    async def run_once(self) -> int:
        result, _ = await self.scan(self.cfg.alerts.timeframe, self.alert_settings(), force=True)
        return await self.dispatch_alerts(result)

    async def tick(self) -> Optional[int]:
        """One scheduled run. Skipped when the previous tick is still in flight; waits behind any other scan."""
        if self._tick_running:
            self._metrics["ticks_skipped_total"] += 1
            log.info("scan_skipped reason=in_flight")
            return None
        self._tick_running = True
        try:
            return await self.run_once()
        except Exception as e:
            log.exception("scheduled_scan_failed err=%s", e)
            return None
        finally:
            self._tick_running = False

    async def run_forever(self) -> None:
        interval = float(self.cfg.scanner.scan_interval_s)
        log.info(
            "scheduler_start interval=%.0fs initial_delay=%.0fs instruments=%d",
            interval,
            self.cfg.scanner.initial_delay_s,
            len(self.cfg.scanner.instruments),
        )
        await self._sleep(self.cfg.scanner.initial_delay_s)
        while True:
            task = asyncio.create_task(self.tick())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            await self._sleep(interval)

    async def close(self) -> None:
        for closer in (self.provider, self.notifier, self.recipients):
            close = getattr(closer, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                log.warning("close_failed obj=%s err=%s", type(closer).__name__, e)

    @property
    def metrics(self) -> Dict[str, int]:
        return dict(self._metrics)
