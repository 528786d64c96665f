"""
Admin notifications over LINE push and Telegram. Fire-and-forget: senders return
True if delivered, False if skipped or failed, and never raise.
"""
import html
import logging
from typing import Optional

import httpx

from backoffice.config import settings
from backoffice.services.http_client import post_no_retry

logger = logging.getLogger(__name__)

LINE = "line"
TELEGRAM = "telegram"


async def push_line_message(
    to: str,
    text: str,
    token: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """Push a text message to one LINE user/group. Requires LINE_CHANNEL_ACCESS_TOKEN."""
    token = token if token is not None else settings.LINE_CHANNEL_ACCESS_TOKEN
    if not token:
        return False
    try:
        resp = await post_no_retry(
            settings.LINE_PUSH_URL,
            json={"to": to, "messages": [{"type": "text", "text": text}]},
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            timeout=10.0,
            transport=transport,
        )
    except httpx.HTTPError as e:
        logger.warning("LINE push to %s failed: %s", to, e)
        return False
    if not resp.is_success:
        logger.warning("LINE push to %s failed: %s - %s", to, resp.status_code, resp.text[:200])
        return False
    return True


async def send_telegram_message(
    chat_id: str,
    text: str,
    token: Optional[str] = None,
    parse_mode: str = "HTML",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """Send a message to one Telegram chat. Requires TELEGRAM_BOT_TOKEN."""
    token = token if token is not None else settings.TELEGRAM_BOT_TOKEN
    if not token:
        return False
    if parse_mode == "HTML":
        text = html.escape(text, quote=False)
    try:
        resp = await post_no_retry(
            f"{settings.TELEGRAM_API_BASE_URL.rstrip('/')}/bot{token}/sendMessage",
            json={"chat_id": chat_id, "text": text, "parse_mode": parse_mode},
            timeout=10.0,
            transport=transport,
        )
    except httpx.HTTPError as e:
        logger.warning("Telegram send to %s failed: %s", chat_id, e)
        return False
    if not resp.is_success:
        logger.warning("Telegram send to %s failed: %s - %s", chat_id, resp.status_code, resp.text[:200])
        return False
    return True


class AdminNotifier:
    """Sends one message to every configured admin recipient (LINE ids, then Telegram chats)."""

    def __init__(
        self,
        line_ids: Optional[list[str]] = None,
        telegram_chat_ids: Optional[list[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.line_ids = line_ids if line_ids is not None else settings.ADMIN_LINE_IDS
        self.telegram_chat_ids = telegram_chat_ids if telegram_chat_ids is not None else settings.ADMIN_TELEGRAM_CHAT_IDS
        self.transport = transport

    def recipients(self) -> list[tuple[str, str]]:
        return [(LINE, rid) for rid in self.line_ids] + [(TELEGRAM, cid) for cid in self.telegram_chat_ids]

    async def send(self, channel: str, recipient: str, text: str) -> bool:
        if channel == LINE:
            return await push_line_message(recipient, text, transport=self.transport)
        if channel == TELEGRAM:
            return await send_telegram_message(recipient, text, transport=self.transport)
        logger.warning("Unknown notification channel %s", channel)
        return False

    async def notify_admins(self, text: str) -> int:
        """Deliver text to each recipient; returns how many deliveries succeeded."""
        delivered = 0
        for channel, recipient in self.recipients():
            try:
                if await self.send(channel, recipient, text):
                    delivered += 1
            except Exception as e:
                logger.warning("Notification to %s:%s failed: %s", channel, recipient, e)
        return delivered
