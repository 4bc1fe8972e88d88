from __future__ import annotations

import argparse
import asyncio
import logging

from aiohttp import web

from .commands import CommandHandler
from .config import load_config
from .runner import ScanRunner
from .server import create_app

log = logging.getLogger("main")


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


async def serve(runner: ScanRunner, commands: CommandHandler) -> None:
    cfg = runner.cfg
    app = create_app(runner, commands)
    web_runner = web.AppRunner(app)
    await web_runner.setup()
    try:
        site = web.TCPSite(web_runner, cfg.server.host, int(cfg.server.port))
        await site.start()
        log.info(
            "server_started host=%s port=%s environment=%s instruments=%d",
            cfg.server.host,
            cfg.server.port,
            cfg.provider.environment,
            len(cfg.scanner.instruments),
        )

        if cfg.telegram.webhook_url:
            res = await runner.notifier.set_webhook(cfg.telegram.webhook_url.rstrip("/") + "/webhook")
            log.info("telegram_webhook_setup result=%s", res)
        if cfg.telegram.admin_chat_id:
            await runner.notifier.send(cfg.telegram.admin_chat_id, f"{cfg.app.name} started. Scanning every {int(cfg.scanner.scan_interval_s)}s.")

        await runner.run_forever()
    finally:
        await web_runner.cleanup()


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="SweepSignal - liquidity sweep scanner and alert bot")
    p.add_argument("--config", required=True, help="Path to YAML config")
    args = p.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except (OSError, ValueError) as e:
        _setup_logging("INFO")
        log.error("config_load_failed path=%s err=%s", args.config, e)
        return 1
    _setup_logging(cfg.app.log_level)

    async def _run() -> None:
        runner = ScanRunner(cfg)
        commands = CommandHandler(
            runner.notifier,
            runner.recipients,
            app_name=cfg.app.name,
            admin_chat_id=cfg.telegram.admin_chat_id,
        )
        try:
            await serve(runner, commands)
        finally:
            # Close shared HTTP sessions cleanly.
            await runner.close()

    try:
        asyncio.run(_run())
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        log.exception("fatal err=%s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
