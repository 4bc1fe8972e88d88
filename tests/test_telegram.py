import asyncio

from aiohttp import web
from aiohttp import test_utils

from sweep_signal_bot.notifier import telegram
from sweep_signal_bot.notifier.telegram import TelegramNotifier


def test_disabled_without_token():
    n = TelegramNotifier(token="  ")
    assert not n.enabled()
    assert asyncio.run(n.send("1", "hi")) is False


def test_broadcast_counts_acks(monkeypatch):
    payloads = []

    async def send_message(request):
        body = await request.json()
        payloads.append(body)
        if body["chat_id"] == "bad":
            return web.json_response({"ok": False, "description": "chat not found"}, status=400)
        return web.json_response({"ok": True})

    async def _run():
        app = web.Application()
        app.router.add_post("/bottok/sendMessage", send_message)
        async with test_utils.TestServer(app) as server:
            monkeypatch.setattr(telegram, "TELEGRAM_API", str(server.make_url("/")).rstrip("/"))
            n = TelegramNotifier(token="tok")
            try:
                return await n.broadcast("<b>hi</b>", ["1", "bad", "2"])
            finally:
                await n.close()

    assert asyncio.run(_run()) == 2
    assert [p["chat_id"] for p in payloads] == ["1", "bad", "2"]
    assert payloads[0]["parse_mode"] == "HTML"
    assert payloads[0]["disable_web_page_preview"] is True
