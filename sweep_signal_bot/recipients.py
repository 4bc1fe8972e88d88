from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

import aiohttp

from .models import Recipient

log = logging.getLogger("recipients")


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    message: str
    display_name: str = ""


class StaticRecipientStore:
    """Recipients straight from config; no opt-in flow."""

    def __init__(self, chat_ids: List[str]):
        self._recipients = []
        for cid in chat_ids or []:
            scid = str(cid).strip()
            if scid and scid not in [r.chat_id for r in self._recipients]:
                self._recipients.append(Recipient(chat_id=scid, display_name=scid))

    async def active_recipients(self) -> List[Recipient]:
        return list(self._recipients)

    async def verify_code(self, code: str, chat_id: str) -> VerificationResult:
        return VerificationResult(False, "Account linking is not enabled on this bot.")

    async def status(self, chat_id: str) -> Optional[dict]:
        if any(r.chat_id == str(chat_id) for r in self._recipients):
            return {"email": "", "subscription_tier": "static", "subscription_status": "active"}
        return None

    async def close(self) -> None:
        return None


class SupabaseRecipientStore:
    """Pro subscribers with a linked Telegram chat, read over Supabase PostgREST."""

    def __init__(self, url: str, service_key: str, *, timeout_s: int = 10):
        self.base = (url or "").rstrip("/") + "/rest/v1"
        self.service_key = (service_key or "").strip()
        self.timeout_s = timeout_s
        self._session: Optional[aiohttp.ClientSession] = None

    def _headers(self) -> dict:
        return {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_s))
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _select(self, table: str, params: dict) -> list:
        sess = await self._get_session()
        async with sess.get(f"{self.base}/{table}", params=params, headers=self._headers()) as resp:
            if resp.status != 200:
                body = await resp.text()
                raise RuntimeError(f"Supabase select {table} failed: {resp.status} {body[:300]}")
            return await resp.json(content_type=None)

    async def _update(self, table: str, match: dict, values: dict) -> None:
        sess = await self._get_session()
        async with sess.patch(f"{self.base}/{table}", params=match, json=values, headers=self._headers()) as resp:
            if resp.status >= 300:
                body = await resp.text()
                raise RuntimeError(f"Supabase update {table} failed: {resp.status} {body[:300]}")

    async def active_recipients(self) -> List[Recipient]:
        try:
            rows = await self._select(
                "profiles",
                {
                    "select": "telegram_chat_id,email,full_name",
                    "subscription_tier": "eq.pro",
                    "subscription_status": "eq.active",
                    "telegram_chat_id": "not.is.null",
                },
            )
        except Exception as e:
            log.warning("recipients_fetch_failed err=%s", e)
            return []
        out = []
        for row in rows or []:
            cid = str(row.get("telegram_chat_id") or "").strip()
            if cid:
                out.append(Recipient(chat_id=cid, display_name=row.get("full_name") or row.get("email") or ""))
        return out

    async def verify_code(self, code: str, chat_id: str) -> VerificationResult:
        now_iso = datetime.now(timezone.utc).isoformat()
        try:
            rows = await self._select(
                "telegram_verifications",
                {
                    "select": "*,profiles(*)",
                    "code": f"eq.{code}",
                    "used": "eq.false",
                    "expires_at": f"gt.{now_iso}",
                },
            )
        except Exception as e:
            log.warning("verify_lookup_failed chat_id=%s err=%s", chat_id, e)
            return VerificationResult(False, "An error occurred. Please try again.")

        if not rows:
            return VerificationResult(False, "Invalid or expired code. Please generate a new one from the dashboard.")

        verification = rows[0]
        profile = verification.get("profiles") or {}
        if profile.get("subscription_tier") != "pro" or profile.get("subscription_status") != "active":
            return VerificationResult(False, "Telegram alerts are only available for Pro subscribers.")

        try:
            await self._update("telegram_verifications", {"id": f"eq.{verification['id']}"}, {"used": True})
            await self._update("profiles", {"id": f"eq.{verification['user_id']}"}, {"telegram_chat_id": str(chat_id)})
        except Exception as e:
            log.warning("verify_update_failed chat_id=%s err=%s", chat_id, e)
            return VerificationResult(False, "Error connecting your account. Please try again.")

        name = profile.get("full_name") or profile.get("email") or ""
        return VerificationResult(True, "Successfully connected!", display_name=name)

    async def status(self, chat_id: str) -> Optional[dict]:
        try:
            rows = await self._select(
                "profiles",
                {
                    "select": "email,subscription_tier,subscription_status",
                    "telegram_chat_id": f"eq.{chat_id}",
                },
            )
        except Exception as e:
            log.warning("status_lookup_failed chat_id=%s err=%s", chat_id, e)
            return None
        return rows[0] if rows else None


def build_recipient_store(cfg):
    if cfg.recipients.type == "supabase":
        return SupabaseRecipientStore(
            cfg.recipients.supabase_url,
            cfg.recipients.supabase_key,
            timeout_s=cfg.recipients.timeout_s,
        )
    return StaticRecipientStore(cfg.telegram.chat_ids)
