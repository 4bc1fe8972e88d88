from __future__ import annotations

import html
import logging
from typing import Optional

log = logging.getLogger("commands")

CODE_LENGTH = 6

START_TEXT = (
    "Welcome to <b>{name} Bot</b>!\n\n"
    "This bot sends real-time liquidity sweep signals to Pro subscribers.\n\n"
    "<b>Commands:</b>\n"
    "/connect CODE - Connect your Pro account\n"
    "/status - Check your connection status\n"
    "/help - Show this message"
)

HELP_TEXT = (
    "<b>{name} Bot Help</b>\n\n"
    "<b>Commands:</b>\n"
    "/start - Welcome message\n"
    "/connect CODE - Connect your Pro account\n"
    "/status - Check connection status\n"
    "/help - Show this message\n\n"
    "<b>How it works:</b>\n"
    "1. Subscribe to Pro\n"
    "2. Open the dashboard and choose Connect Telegram\n"
    "3. Send the 6-digit code here\n"
    "4. Receive real-time A and A+ signals"
)

BAD_CONNECT_TEXT = (
    "<b>Invalid format</b>\n\n"
    "Please use: <code>/connect CODE</code>\n\n"
    "Get your 6-digit code from the dashboard."
)

NOT_CONNECTED_TEXT = (
    "<b>Not Connected</b>\n\n"
    "Your Telegram is not linked to an account.\n\n"
    "Use /connect CODE with your code from the dashboard."
)


class CommandHandler:
    """Replies to bot commands arriving through the Telegram webhook."""

    def __init__(self, notifier, recipients, *, app_name: str = "SweepSignal", admin_chat_id: str = ""):
        self.notifier = notifier
        self.recipients = recipients
        self.app_name = app_name
        self.admin_chat_id = (admin_chat_id or "").strip()

    async def handle_update(self, update: dict) -> Optional[str]:
        """Process one update; returns the command handled, if any."""
        message = (update or {}).get("message")
        if not message:
            return None
        chat_id = str((message.get("chat") or {}).get("id", "")).strip()
        text = (message.get("text") or "").strip()
        sender = message.get("from") or {}
        username = sender.get("username") or sender.get("first_name") or "User"
        if not chat_id or not text.startswith("/"):
            return None

        name = html.escape(self.app_name, quote=False)
        if text == "/start":
            await self.notifier.send(chat_id, START_TEXT.format(name=name))
            return "start"
        if text.startswith("/connect"):
            await self._connect(chat_id, text, username)
            return "connect"
        if text == "/status":
            await self._status(chat_id)
            return "status"
        if text == "/help":
            await self.notifier.send(chat_id, HELP_TEXT.format(name=name))
            return "help"

        await self.notifier.send(chat_id, "Unknown command. Type /help for available commands.")
        return "unknown"

    async def _connect(self, chat_id: str, text: str, username: str) -> None:
        parts = text.split()
        if len(parts) != 2 or len(parts[1]) != CODE_LENGTH:
            await self.notifier.send(chat_id, BAD_CONNECT_TEXT)
            return

        result = await self.recipients.verify_code(parts[1], chat_id)
        if not result.success:
            await self.notifier.send(chat_id, html.escape(result.message, quote=False))
            return

        msg = (
            f"{html.escape(result.message, quote=False)}\n\n"
            "You'll now receive real-time alerts for A and A+ signals."
        )
        if result.display_name:
            msg += f"\n\nWelcome, {html.escape(result.display_name, quote=False)}!"
        await self.notifier.send(chat_id, msg)
        log.info("telegram_connected chat_id=%s user=%s", chat_id, username)
        if self.admin_chat_id:
            await self.notifier.send(
                self.admin_chat_id,
                f"New Telegram connection:\nUser: {html.escape(username, quote=False)}\nChat ID: {chat_id}",
            )

    async def _status(self, chat_id: str) -> None:
        profile = await self.recipients.status(chat_id)
        if not profile:
            await self.notifier.send(chat_id, NOT_CONNECTED_TEXT)
            return
        tier = str(profile.get("subscription_tier") or "").upper()
        await self.notifier.send(
            chat_id,
            "<b>Connected</b>\n\n"
            f"Email: {html.escape(str(profile.get('email') or '-'), quote=False)}\n"
            f"Tier: {html.escape(tier, quote=False)}\n"
            f"Status: {html.escape(str(profile.get('subscription_status') or '-'), quote=False)}",
        )
