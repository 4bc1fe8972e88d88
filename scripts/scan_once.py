from __future__ import annotations

import argparse
import asyncio
import json

from sweep_signal_bot.config import load_config
from sweep_signal_bot.runner import ScanRunner


async def _scan(cfg, timeframe, send: bool):
    runner = ScanRunner(cfg)
    try:
        result, _ = await runner.scan(timeframe, force=True)
        sent = await runner.dispatch_alerts(result) if send else 0
        return result, sent
    finally:
        await runner.close()


def main():
    p = argparse.ArgumentParser(description="Run a single scan pass and print the signals")
    p.add_argument("--config", required=True, help="Path to YAML config")
    p.add_argument("--timeframe", default=None, help="Override scanner.default_timeframe")
    p.add_argument("--send", action="store_true", help="Also dispatch alert-grade signals to Telegram")
    p.add_argument("--json", action="store_true", help="Dump the full scan result as JSON")
    args = p.parse_args()

    cfg = load_config(args.config)
    result, sent = asyncio.run(_scan(cfg, args.timeframe, args.send))

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return

    errors = [r for r in result.instruments if r.error]
    print(f"timeframe={result.timeframe} instruments={result.instruments_scanned} "
          f"signals={result.signals_found} errors={len(errors)} alerts_sent={sent}")
    print("grades:", result.grade_counts)
    for s in result.signals:
        print(f"  {s.grade:<2} {s.score:>3}  {s.instrument:<11} {s.direction:<5} {s.setup_label:<28} "
              f"entry={s.entry_price} sl={s.stop_loss} tp={s.runner} rr={s.reward_risk}")
    for r in errors:
        print(f"  ERROR {r.instrument}: {r.error}")


if __name__ == "__main__":
    main()
