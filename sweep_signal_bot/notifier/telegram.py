from __future__ import annotations

import asyncio
import aiohttp
from typing import List, Optional
import logging

log = logging.getLogger("telegram")

TELEGRAM_API = "https://api.telegram.org"


class TelegramNotifier:
    def __init__(
        self,
        token: str,
        *,
        parse_mode: str = "HTML",
        disable_web_page_preview: bool = True,
        timeout_s: int = 15,
    ):
        self.token = (token or "").strip()
        self.parse_mode = parse_mode
        self.disable_web_page_preview = disable_web_page_preview
        self.timeout_s = timeout_s
        self._session: Optional[aiohttp.ClientSession] = None

    def enabled(self) -> bool:
        return bool(self.token)

    def _url(self, method: str) -> str:
        return f"{TELEGRAM_API}/bot{self.token}/{method}"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_s))
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def send(self, chat_id: str, text: str) -> bool:
        """Deliver one message. Returns the delivery ack; failures are logged, not raised."""
        if not self.enabled() or not str(chat_id).strip():
            return False
        payload = {
            "chat_id": str(chat_id).strip(),
            "text": text,
            "parse_mode": self.parse_mode,
            "disable_web_page_preview": self.disable_web_page_preview,
        }
        try:
            sess = await self._get_session()
            async with sess.post(self._url("sendMessage"), json=payload) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    log.warning("telegram_send_failed chat_id=%s status=%s body=%s", chat_id, resp.status, body[:2000])
                    return False
                return True
        except Exception as e:
            log.exception("telegram_send_exception chat_id=%s err=%s", chat_id, e)
            return False

    async def broadcast(self, text: str, chat_ids: List[str], *, delay_s: float = 0.0) -> int:
        sent = 0
        for i, chat_id in enumerate(chat_ids):
            if await self.send(chat_id, text):
                sent += 1
            if delay_s > 0 and i < len(chat_ids) - 1:
                await asyncio.sleep(delay_s)
        return sent

    async def set_webhook(self, url: str) -> Optional[dict]:
        if not self.enabled() or not url:
            return None
        try:
            sess = await self._get_session()
            async with sess.get(self._url("setWebhook"), params={"url": url}) as resp:
                return await resp.json(content_type=None)
        except Exception as e:
            log.warning("telegram_set_webhook_failed url=%s err=%s", url, e)
            return None
